"""Vector index: similarity math, LSH bucketing and the persistent index."""

from .lsh import RandomProjectionHasher
from .mirror import IndexMirror, MirrorEntry, MirrorSnapshot
from .similarity import cosine_scores, cosine_similarity, validate_vector, vector_norm
from .vector_index import MetadataPredicate, ScoredIdentifier, VectorIndex, VectorItem

__all__ = [
    "IndexMirror",
    "MetadataPredicate",
    "MirrorEntry",
    "MirrorSnapshot",
    "RandomProjectionHasher",
    "ScoredIdentifier",
    "VectorIndex",
    "VectorItem",
    "cosine_scores",
    "cosine_similarity",
    "validate_vector",
    "vector_norm",
]
