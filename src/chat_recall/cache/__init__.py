"""Query-embedding and result caches."""

from .embedding_cache import EmbeddingCache
from .result_cache import ResultCache

__all__ = ["EmbeddingCache", "ResultCache"]
