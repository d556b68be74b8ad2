"""
Exception types raised by the retrieval engine.
"""

from __future__ import annotations


class VectorValidationError(ValueError):
    """Raised when a vector has the wrong dimension or non-finite components."""


class QueryValidationError(ValueError):
    """Raised when a search query is empty after normalization."""


class MetadataFilterParseError(ValueError):
    """Raised when filter syntax is invalid."""


class EmbeddingProviderError(RuntimeError):
    """Raised when an embedding provider cannot produce a vector."""


class StorageError(RuntimeError):
    """Raised when the persistent store fails a read or write."""


class SearchError(RuntimeError):
    """Raised when every leg of a hybrid search failed."""
