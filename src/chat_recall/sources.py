"""
Collaborator interfaces: where messages come from and how they are searched lexically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from .models import SearchHit

if TYPE_CHECKING:
    from .search.filters import SearchFilters


@dataclass(frozen=True)
class SourceItem:
    """A message as seen by the retrieval engine."""

    identifier: str
    content: str
    source: str = ""
    role: str = "user"
    category: str | None = None
    created_at: str = ""

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "role": self.role,
            "category": self.category,
            "created_at": self.created_at,
        }

    def snippet(self, length: int = 100) -> str:
        if len(self.content) <= length:
            return self.content
        return self.content[:length] + "..."

    def to_hit(self, score: float, *, snippet_length: int = 100, **fields: Any) -> SearchHit:
        return SearchHit(
            identifier=self.identifier,
            score=score,
            snippet=self.snippet(snippet_length),
            content=self.content,
            source=self.source or None,
            role=self.role or None,
            category=self.category,
            created_at=self.created_at or None,
            **fields,
        )


class SourceRepository(Protocol):
    """Keyed access to the messages that feed the index."""

    def list_items(self) -> list[SourceItem]:
        """Return every indexable message."""

    def get_items(self, identifiers: list[str]) -> dict[str, SourceItem]:
        """Hydrate messages by identifier; missing ids are absent from the result."""

    def get_item(self, identifier: str) -> SourceItem | None:
        """Hydrate one message."""


class LexicalSearcher(Protocol):
    """Keyword search returning the same hit shape as semantic search."""

    def lexical_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        """Return ranked lexical hits with scores in [0, 1]."""
