"""Tests for cosine similarity, vector validation and LSH signatures."""

from __future__ import annotations

import math

import numpy as np
import pytest

from chat_recall.errors import VectorValidationError
from chat_recall.index import RandomProjectionHasher, cosine_similarity, validate_vector
from chat_recall.index.similarity import cosine_scores, vector_norm


def test_self_similarity_is_one() -> None:
    rng = np.random.default_rng(7)
    for _ in range(20):
        vector = rng.standard_normal(12)
        assert cosine_similarity(vector, vector) == pytest.approx(1.0, abs=1e-12)


def test_similarity_is_bounded() -> None:
    rng = np.random.default_rng(11)
    for _ in range(200):
        a = rng.standard_normal(5) * rng.uniform(1e-6, 1e6)
        b = rng.standard_normal(5) * rng.uniform(1e-6, 1e6)
        assert -1.0 <= cosine_similarity(a, b) <= 1.0
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


def test_zero_vector_scores_zero() -> None:
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_example_scores() -> None:
    assert cosine_similarity([1.0, 0.0], [0.9, 0.1]) == pytest.approx(0.9 / math.sqrt(0.82))


def test_cosine_scores_matches_pairwise() -> None:
    matrix = np.array([[1.0, 0.0], [0.9, 0.1], [-1.0, 0.0], [0.0, 0.0]])
    norms = np.array([vector_norm(row) for row in matrix])
    query = np.array([1.0, 0.0])
    scores = cosine_scores(matrix, norms, query, vector_norm(query))
    expected = [cosine_similarity(row, query) for row in matrix]
    assert scores.tolist() == pytest.approx(expected)


@pytest.mark.parametrize(
    "vector",
    [[], [1.0, float("nan")], [float("inf"), 0.0], [[1.0, 2.0]], ["a", "b"]],
)
def test_validate_vector_rejects_malformed(vector) -> None:
    with pytest.raises(VectorValidationError):
        validate_vector(vector)


def test_validate_vector_checks_dimension() -> None:
    assert validate_vector([1, 2, 3], 3).dtype == np.float64
    with pytest.raises(VectorValidationError, match="dimension mismatch"):
        validate_vector([1.0, 2.0], 3)


def test_projection_is_deterministic_for_a_seed() -> None:
    first = RandomProjectionHasher.create(seed=42, bits=16, dimension=8)
    second = RandomProjectionHasher.create(seed=42, bits=16, dimension=8)
    other = RandomProjectionHasher.create(seed=43, bits=16, dimension=8)
    assert np.array_equal(first.projection.matrix, second.projection.matrix)
    assert not np.array_equal(first.projection.matrix, other.projection.matrix)


def test_signature_bits_follow_hyperplane_signs() -> None:
    hasher = RandomProjectionHasher.create(seed=3, bits=8, dimension=4)
    vector = np.array([0.3, -1.2, 0.5, 2.0])
    signature = hasher.signature(vector)
    for bit, plane in enumerate(hasher.projection.matrix):
        assert bool(signature >> bit & 1) == (float(np.dot(plane, vector)) > 0)


def test_signature_ignores_magnitude_and_batches_agree() -> None:
    hasher = RandomProjectionHasher.create(seed=5, bits=16, dimension=6)
    rng = np.random.default_rng(0)
    matrix = rng.standard_normal((10, 6))
    batch = hasher.signatures(matrix)
    assert batch == [hasher.signature(row) for row in matrix]
    assert hasher.signature(matrix[0] * 10.0) == batch[0]


def test_bucket_id_is_fixed_width_hex() -> None:
    hasher = RandomProjectionHasher.create(seed=1, bits=16, dimension=2)
    assert hasher.bucket_id(0) == "0000"
    assert hasher.bucket_id(0xBEEF) == "beef"


def test_probe_signatures_cover_hamming_ball() -> None:
    hasher = RandomProjectionHasher.create(seed=1, bits=8, dimension=2)
    assert hasher.probe_signatures(0b1010, 0) == [0b1010]
    radius_one = hasher.probe_signatures(0b1010, 1)
    assert len(radius_one) == 1 + 8
    assert all(bin(probe ^ 0b1010).count("1") <= 1 for probe in radius_one)
    assert len(set(hasher.probe_signatures(0, 2))) == 1 + 8 + 28
