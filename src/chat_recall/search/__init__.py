"""Search helpers: filters, rank fusion and the semantic search engine."""

from .filters import (
    SearchFilters,
    parse_search_filters,
    parse_timestamp,
    supported_filter_syntax,
)
from .ranker import FusedCandidate, FusionPolicy, fuse_results
from .semantic import IndexingReport, SemanticSearchEngine

__all__ = [
    "SearchFilters",
    "parse_search_filters",
    "parse_timestamp",
    "supported_filter_syntax",
    "FusedCandidate",
    "FusionPolicy",
    "fuse_results",
    "IndexingReport",
    "SemanticSearchEngine",
]
