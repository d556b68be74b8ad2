"""Storage backends for the retrieval engine."""

from .base import (
    BucketAssignment,
    EmbeddingRecord,
    ProjectionState,
    QueryEmbeddingCacheEntry,
    ResultCacheEntry,
    SearchStatRecord,
    StorageBackend,
)
from .duckdb import DuckDBStorage
from .messages import DuckDBMessageStore

__all__ = [
    "BucketAssignment",
    "EmbeddingRecord",
    "ProjectionState",
    "QueryEmbeddingCacheEntry",
    "ResultCacheEntry",
    "SearchStatRecord",
    "StorageBackend",
    "DuckDBStorage",
    "DuckDBMessageStore",
]
