"""
Storage interfaces and data models for index and cache persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import numpy as np


@dataclass(frozen=True)
class EmbeddingRecord:
    """A stored embedding with its precomputed norm."""

    identifier: str
    vector: np.ndarray
    norm: float
    source_version_hash: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class BucketAssignment:
    """Maps an identifier to its LSH bucket for one index generation."""

    bucket_id: str
    identifier: str
    signature: int
    generation: int


@dataclass(frozen=True)
class ProjectionState:
    """The fixed random hyperplanes used to sign vectors for one index."""

    seed: int
    bits: int
    dimension: int
    matrix: np.ndarray
    generation: int = 0


@dataclass(frozen=True)
class QueryEmbeddingCacheEntry:
    """A cached query vector for one provider."""

    query_hash: str
    query_text: str
    vector: np.ndarray
    provider_name: str
    created_at: float
    last_accessed: float
    access_count: int = 1


@dataclass(frozen=True)
class ResultCacheEntry:
    """A cached, serialized result set."""

    query_hash: str
    result_set: str
    search_mode: str
    result_count: int
    latency_ms: float
    created_at: float
    last_accessed: float
    access_count: int
    ttl: float
    query_text: str = ""
    tags: tuple[str, ...] = ()
    identifiers: tuple[str, ...] = ()

    @property
    def size_bytes(self) -> int:
        return len(self.result_set.encode("utf-8"))


@dataclass(frozen=True)
class SearchStatRecord:
    """One append-only search statistics row."""

    query_hash: str
    search_mode: str
    result_count: int
    latency_ms: float
    embedding_ms: float = 0.0
    vector_ms: float = 0.0
    cache_hit: bool = False


class StorageBackend(Protocol):
    """Protocol for persistence operations used by the index, caches and engine."""

    def initialize(self) -> None:
        """Initialize required tables/indexes."""

    def close(self) -> None:
        """Release the underlying connection."""

    def checkpoint(self) -> None:
        """Flush pending writes to durable storage."""

    # Vector index

    def load_embeddings(self) -> list[EmbeddingRecord]:
        """Return every stored embedding ordered by identifier."""

    def load_bucket_assignments(self) -> list[BucketAssignment]:
        """Return every stored bucket assignment."""

    def get_embedding(self, identifier: str) -> EmbeddingRecord | None:
        """Fetch a single embedding record."""

    def write_embeddings(
        self,
        records: list[EmbeddingRecord],
        assignments: list[BucketAssignment],
        projection: ProjectionState | None = None,
    ) -> None:
        """Upsert records and replace their assignments in one transaction.

        When *projection* is given it is persisted in the same transaction.
        """

    def delete_embedding(self, identifier: str) -> bool:
        """Delete a record and its assignment. Return True if a row was removed."""

    def replace_bucket_assignments(
        self, assignments: list[BucketAssignment], *, generation: int
    ) -> None:
        """Drop every assignment and insert *assignments* for a new generation."""

    def get_indexed_hashes(self) -> dict[str, str]:
        """Return ``{identifier: source_version_hash}`` for stored embeddings."""

    def load_projection(self) -> ProjectionState | None:
        """Return the persisted projection state, if any."""

    def save_projection(self, projection: ProjectionState) -> None:
        """Persist projection state (matrix and generation)."""

    # Query embedding cache

    def get_query_embedding(
        self, query_hash: str, provider_name: str
    ) -> QueryEmbeddingCacheEntry | None:
        """Fetch a cached query embedding."""

    def put_query_embedding(self, entry: QueryEmbeddingCacheEntry) -> None:
        """Insert or replace a cached query embedding."""

    def touch_query_embedding(
        self, query_hash: str, provider_name: str, accessed_at: float
    ) -> None:
        """Bump the access counters of a cached query embedding."""

    def purge_query_embeddings(self, *, expires_before: float, retain_before: float) -> int:
        """Delete aged or rarely used query embeddings. Return count deleted."""

    def clear_query_embeddings(self) -> None:
        """Delete every cached query embedding."""

    # Result cache

    def get_result_entry(self, query_hash: str) -> ResultCacheEntry | None:
        """Fetch a persisted result cache entry."""

    def put_result_entry(self, entry: ResultCacheEntry) -> None:
        """Insert or replace a persisted result cache entry."""

    def touch_result_entry(
        self, query_hash: str, *, access_count: int, accessed_at: float
    ) -> None:
        """Update access bookkeeping of a persisted result cache entry."""

    def list_result_entries(self) -> list[ResultCacheEntry]:
        """Return every persisted result cache entry."""

    def delete_result_entries(self, query_hashes: Iterable[str]) -> int:
        """Delete persisted result cache entries. Return count deleted."""

    def clear_result_entries(self) -> None:
        """Delete every persisted result cache entry."""

    # Statistics

    def record_search_stat(self, record: SearchStatRecord) -> None:
        """Append one search statistics row."""

    def record_cache_stats(
        self, *, hits: int, misses: int, entries: int, bytes_used: int, evictions: int
    ) -> None:
        """Append one cache statistics row."""

    def search_stats_summary(self) -> dict[str, Any]:
        """Aggregate search statistics."""
