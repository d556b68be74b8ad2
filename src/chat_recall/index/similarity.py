"""
Vector validation and cosine similarity helpers.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from ..errors import VectorValidationError


def validate_vector(
    vector: Sequence[float] | np.ndarray,
    dimension: int | None = None,
) -> np.ndarray:
    """Return *vector* as a 1-D float64 array or raise :class:`VectorValidationError`.

    When *dimension* is given the vector must have exactly that length.
    """
    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise VectorValidationError(f"Vector must contain only numbers: {exc}") from exc
    if array.ndim != 1:
        raise VectorValidationError(f"Vector must be one-dimensional, got shape {array.shape}")
    if array.size == 0:
        raise VectorValidationError("Vector must be non-empty")
    if dimension is not None and array.shape[0] != dimension:
        raise VectorValidationError(
            f"Vector dimension mismatch: expected {dimension}, got {array.shape[0]}"
        )
    if not np.all(np.isfinite(array)):
        raise VectorValidationError("Vector must contain only finite numbers (no NaN/Infinity)")
    return array


def vector_norm(vector: np.ndarray) -> float:
    return float(math.sqrt(float(np.dot(vector, vector))))


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine of the angle between *a* and *b*, clamped to [-1, 1].

    Zero vectors have no direction and score 0.0 against everything.
    """
    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    if left.shape != right.shape:
        raise VectorValidationError(
            f"Vector dimension mismatch: {left.shape[0]} vs {right.shape[0]}"
        )
    magnitude = vector_norm(left) * vector_norm(right)
    if magnitude == 0.0:
        return 0.0
    return float(np.clip(np.dot(left, right) / magnitude, -1.0, 1.0))


def cosine_scores(
    matrix: np.ndarray,
    norms: np.ndarray,
    query: np.ndarray,
    query_norm: float,
) -> np.ndarray:
    """Cosine similarity of *query* against every row of *matrix*.

    *norms* are the precomputed row norms; rows with zero norm score 0.0.
    """
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    dots = matrix @ query
    denominators = norms * query_norm
    scores = np.zeros_like(dots)
    np.divide(dots, denominators, out=scores, where=denominators > 0)
    return np.clip(scores, -1.0, 1.0)
