"""
chat-recall - hybrid semantic and lexical retrieval for chat archives.

Messages are embedded into a persistent vector index (exact search for small
indexes, random-projection LSH buckets for large ones); queries are embedded
through a cached provider, searched, fused with lexical matches and cached.

Example usage:
    >>> from chat_recall import DuckDBStorage, VectorIndex
    >>> storage = DuckDBStorage(":memory:")
    >>> index = VectorIndex(storage)
    >>> # await index.upsert("m1", [1.0, 0.0]); await index.search([1.0, 0.0])
"""

from .cache import EmbeddingCache, ResultCache
from .config import EngineConfig, resolve_db_path
from .embeddings import (
    EmbeddingProvider,
    FallbackEmbeddingProvider,
    GenAIEmbeddingProvider,
    LocalEmbeddingProvider,
    ProviderState,
    build_embedding_provider,
)
from .errors import (
    EmbeddingProviderError,
    MetadataFilterParseError,
    QueryValidationError,
    SearchError,
    StorageError,
    VectorValidationError,
)
from .index import ScoredIdentifier, VectorIndex, VectorItem, cosine_similarity
from .models import SearchHit
from .search import (
    FusionPolicy,
    IndexingReport,
    SearchFilters,
    SemanticSearchEngine,
    fuse_results,
    parse_search_filters,
)
from .sources import LexicalSearcher, SourceItem, SourceRepository
from .storage import DuckDBMessageStore, DuckDBStorage

__all__ = [
    # Index
    "VectorIndex",
    "VectorItem",
    "ScoredIdentifier",
    "cosine_similarity",
    # Search
    "SemanticSearchEngine",
    "IndexingReport",
    "SearchFilters",
    "parse_search_filters",
    "FusionPolicy",
    "fuse_results",
    "SearchHit",
    # Embeddings
    "EmbeddingProvider",
    "GenAIEmbeddingProvider",
    "LocalEmbeddingProvider",
    "FallbackEmbeddingProvider",
    "ProviderState",
    "build_embedding_provider",
    # Caches
    "EmbeddingCache",
    "ResultCache",
    # Storage and collaborators
    "DuckDBStorage",
    "DuckDBMessageStore",
    "SourceItem",
    "SourceRepository",
    "LexicalSearcher",
    # Configuration
    "EngineConfig",
    "resolve_db_path",
    # Errors
    "VectorValidationError",
    "QueryValidationError",
    "MetadataFilterParseError",
    "EmbeddingProviderError",
    "StorageError",
    "SearchError",
]
