"""
Search filter model and filter-string parsing helpers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from ..errors import MetadataFilterParseError


@dataclass(frozen=True)
class SearchFilters:
    """Post-filter conditions applied to candidate messages.

    Empty tuples and ``None`` bounds mean "no restriction". Date bounds are
    inclusive.
    """

    start: datetime | None = None
    end: datetime | None = None
    sources: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return (
            self.start is None
            and self.end is None
            and not self.sources
            and not self.categories
            and not self.roles
        )

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        if self.sources and metadata.get("source") not in self.sources:
            return False
        if self.categories and metadata.get("category") not in self.categories:
            return False
        if self.roles and metadata.get("role") not in self.roles:
            return False
        if self.start is not None or self.end is not None:
            created = parse_timestamp(metadata.get("created_at"))
            if created is None:
                return False
            if self.start is not None and created < self.start:
                return False
            if self.end is not None and created > self.end:
                return False
        return True

    def cache_token(self) -> str:
        """Stable textual form used in cache keys."""
        return "|".join(
            [
                self.start.isoformat() if self.start else "",
                self.end.isoformat() if self.end else "",
                ",".join(sorted(self.sources)),
                ",".join(sorted(self.categories)),
                ",".join(sorted(self.roles)),
            ]
        )


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or datetime, treating naive values as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def supported_filter_syntax() -> str:
    """Return a short help text for filter syntax."""
    return (
        "Supported filter syntax: "
        "`source=chat_id`, `source in (a, b)`, `category=value`, `role=user`, "
        "`after=2024-01-01`, `before=2024-12-31T23:59:59`; "
        "combine with comma or `and`."
    )


_LIST_FIELDS = {
    "source": "sources",
    "chat": "sources",
    "category": "categories",
    "role": "roles",
}
_DATE_FIELDS = {"after": "start", "since": "start", "before": "end", "until": "end"}

_IN_RE = re.compile(r"^([A-Za-z_]+)\s+in\s+(.+)$", re.IGNORECASE)
_EQ_RE = re.compile(r"^([A-Za-z_]+)\s*[=:]\s*(.+)$")


def parse_search_filters(raw_filters: str | None) -> SearchFilters:
    """Parse a raw filter string into a :class:`SearchFilters`."""
    if raw_filters is None or not raw_filters.strip():
        return SearchFilters()

    lists: dict[str, list[str]] = {"sources": [], "categories": [], "roles": []}
    bounds: dict[str, datetime | None] = {"start": None, "end": None}

    for condition in _split_conditions(raw_filters):
        field, values = _parse_condition(condition)
        if field in _DATE_FIELDS:
            if len(values) != 1:
                raise MetadataFilterParseError(f"`{field}` takes a single date: {condition!r}")
            parsed = parse_timestamp(values[0])
            if parsed is None:
                raise MetadataFilterParseError(f"Invalid date for `{field}`: {values[0]!r}")
            bounds[_DATE_FIELDS[field]] = parsed
        else:
            lists[_LIST_FIELDS[field]].extend(values)

    start, end = bounds["start"], bounds["end"]
    if start is not None and end is not None and start > end:
        raise MetadataFilterParseError("`after` must not be later than `before`.")

    return SearchFilters(
        start=start,
        end=end,
        sources=tuple(dict.fromkeys(lists["sources"])),
        categories=tuple(dict.fromkeys(lists["categories"])),
        roles=tuple(dict.fromkeys(lists["roles"])),
    )


def _parse_condition(condition: str) -> tuple[str, list[str]]:
    in_match = _IN_RE.match(condition)
    if in_match:
        field = _validate_field(in_match.group(1))
        values = [_unquote(item) for item in _strip_brackets(in_match.group(2)).split("\x1f")]
        values = [value for value in values if value]
        if not values:
            raise MetadataFilterParseError(f"`in` filter has no values: {condition!r}")
        return field, values

    eq_match = _EQ_RE.match(condition)
    if not eq_match:
        raise MetadataFilterParseError(f"Invalid filter syntax: {condition!r}")
    field = _validate_field(eq_match.group(1))
    value = _unquote(eq_match.group(2))
    if not value:
        raise MetadataFilterParseError(f"Missing filter value: {condition!r}")
    return field, [value]


def _validate_field(field: str) -> str:
    normalized = field.lower()
    if normalized not in _LIST_FIELDS and normalized not in _DATE_FIELDS:
        allowed = ", ".join(sorted({*_LIST_FIELDS, *_DATE_FIELDS}))
        raise MetadataFilterParseError(
            f"Unknown filter field {field!r}. Allowed fields: {allowed}"
        )
    return normalized


def _split_conditions(raw: str) -> list[str]:
    # Separators inside quotes or brackets belong to the value; mark list
    # separators with \x1f so `in (...)` lists survive the top-level split.
    current: list[str] = []
    quote: str | None = None
    depth = 0
    i = 0
    while i < len(raw):
        ch = raw[i]
        if quote is not None:
            if ch == quote:
                quote = None
            current.append(ch)
        elif ch in {"'", '"'}:
            quote = ch
            current.append(ch)
        elif ch in "([":
            depth += 1
            current.append(ch)
        elif ch in ")]":
            depth = max(depth - 1, 0)
            current.append(ch)
        elif ch == ",":
            current.append("\x1f" if depth > 0 else "\x1e")
        elif (
            depth == 0
            and raw[i : i + 3].lower() == "and"
            and (i == 0 or raw[i - 1].isspace())
            and (i + 3 == len(raw) or raw[i + 3].isspace())
        ):
            current.append("\x1e")
            i += 3
            continue
        else:
            current.append(ch)
        i += 1
    return [piece.strip() for piece in "".join(current).split("\x1e") if piece.strip()]


def _strip_brackets(raw: str) -> str:
    text = raw.strip()
    if (text.startswith("(") and text.endswith(")")) or (
        text.startswith("[") and text.endswith("]")
    ):
        return text[1:-1]
    return text


def _unquote(raw: str) -> str:
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        return text[1:-1]
    return text
