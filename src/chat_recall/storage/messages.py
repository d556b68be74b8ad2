"""
DuckDB message store: the source repository and lexical search stand-in.

The chat application owns the real message schema and full-text index; this
store mirrors the slice of it that the retrieval engine reads, so the engine
can be exercised end to end without the application.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from ..models import SearchHit
from ..sources import SourceItem
from ..text import normalize_text
from .duckdb import DuckDBStorage

if TYPE_CHECKING:
    from ..search.filters import SearchFilters


def _query_terms(query: str, max_terms: int = 8) -> list[str]:
    terms = re.findall(r"\w{3,}", normalize_text(query))
    unique_terms: list[str] = []
    for term in terms:
        if term not in unique_terms:
            unique_terms.append(term)
        if len(unique_terms) >= max_terms:
            break
    if unique_terms:
        return unique_terms
    fallback = normalize_text(query)
    return [fallback] if fallback else []


class DuckDBMessageStore:
    """Messages table sharing the connection of a :class:`DuckDBStorage`."""

    def __init__(self, storage: DuckDBStorage, *, snippet_length: int = 100) -> None:
        self.storage = storage
        self.snippet_length = snippet_length
        self.initialize()

    def initialize(self) -> None:
        with self.storage.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id VARCHAR PRIMARY KEY,
                    chat_id VARCHAR NOT NULL DEFAULT '',
                    role VARCHAR NOT NULL DEFAULT 'user',
                    category VARCHAR,
                    content VARCHAR NOT NULL,
                    created_at VARCHAR NOT NULL
                );
                """
            )

    def add_messages(self, items: Iterable[SourceItem]) -> int:
        rows = [
            (
                item.identifier,
                item.source,
                item.role,
                item.category,
                item.content,
                item.created_at or datetime.now(timezone.utc).isoformat(),
            )
            for item in items
        ]
        if not rows:
            return 0
        with self.storage.transaction() as cur:
            cur.executemany(
                """
                INSERT INTO messages (id, chat_id, role, category, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    chat_id = excluded.chat_id,
                    role = excluded.role,
                    category = excluded.category,
                    content = excluded.content,
                    created_at = excluded.created_at
                """,
                rows,
            )
        return len(rows)

    def delete_message(self, identifier: str) -> None:
        with self.storage.cursor() as cur:
            cur.execute("DELETE FROM messages WHERE id = ?", [identifier])

    def list_items(self) -> list[SourceItem]:
        with self.storage.cursor() as cur:
            rows = cur.execute(
                """
                SELECT id, content, chat_id, role, category, created_at
                FROM messages
                ORDER BY created_at DESC, id ASC
                """
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def get_items(self, identifiers: list[str]) -> dict[str, SourceItem]:
        if not identifiers:
            return {}
        placeholders = ", ".join(["?"] * len(identifiers))
        with self.storage.cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT id, content, chat_id, role, category, created_at
                FROM messages
                WHERE id IN ({placeholders})
                """,
                list(identifiers),
            ).fetchall()
        return {str(row[0]): self._row_to_item(row) for row in rows}

    def get_item(self, identifier: str) -> SourceItem | None:
        return self.get_items([identifier]).get(identifier)

    def lexical_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        """Term-overlap search scored as the fraction of query terms matched."""
        terms = _query_terms(query)
        if not terms:
            return []

        score_expr = " + ".join(
            ["CASE WHEN lower(content) LIKE '%' || ? || '%' THEN 1 ELSE 0 END"] * len(terms)
        )
        sql = f"""
            SELECT * FROM (
                SELECT id, content, chat_id, role, category, created_at,
                       ({score_expr}) AS matched
                FROM messages
            ) ranked
            WHERE matched > 0
            ORDER BY matched DESC, id ASC
        """
        params: list[Any] = list(terms)
        with self.storage.cursor() as cur:
            rows = cur.execute(sql, params).fetchall()

        hits: list[SearchHit] = []
        for row in rows:
            item = self._row_to_item(row)
            if filters is not None and not filters.matches(item.metadata):
                continue
            score = int(row[6]) / len(terms)
            hits.append(
                item.to_hit(
                    score,
                    snippet_length=self.snippet_length,
                    lexical_score=score,
                    matched_by="lexical",
                )
            )
            if len(hits) >= limit:
                break
        return hits

    @staticmethod
    def _row_to_item(row: tuple[Any, ...]) -> SourceItem:
        return SourceItem(
            identifier=str(row[0]),
            content=str(row[1]),
            source=str(row[2]),
            role=str(row[3]),
            category=str(row[4]) if row[4] is not None else None,
            created_at=str(row[5]),
        )
