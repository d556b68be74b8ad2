"""
Random-projection locality-sensitive hashing.

Bit ``i`` of a signature is set when the vector lies on the positive side of
hyperplane ``i``. Vectors separated by a small angle agree on most bits, so
they tend to share a bucket, but recall is probabilistic: two close vectors
can straddle a hyperplane and land in different buckets. ``probe_radius``
widens the lookup to buckets whose signatures differ in that many bits.

The hyperplanes are drawn once per index from a seeded generator and
persisted; signatures computed against different hyperplanes are not
comparable.
"""

from __future__ import annotations

from itertools import combinations

import numpy as np

from ..storage.base import ProjectionState


class RandomProjectionHasher:
    """Computes bucket signatures against a fixed projection matrix."""

    def __init__(self, projection: ProjectionState) -> None:
        if projection.matrix.shape != (projection.bits, projection.dimension):
            raise ValueError(
                "Projection matrix shape does not match bits x dimension: "
                f"{projection.matrix.shape} vs ({projection.bits}, {projection.dimension})"
            )
        self.projection = projection
        self._weights = np.left_shift(
            np.uint64(1), np.arange(projection.bits, dtype=np.uint64)
        )

    @classmethod
    def create(cls, *, seed: int, bits: int, dimension: int) -> RandomProjectionHasher:
        rng = np.random.default_rng(seed)
        matrix = rng.standard_normal((bits, dimension))
        return cls(ProjectionState(seed=seed, bits=bits, dimension=dimension, matrix=matrix))

    @property
    def bits(self) -> int:
        return self.projection.bits

    @property
    def dimension(self) -> int:
        return self.projection.dimension

    def signature(self, vector: np.ndarray) -> int:
        return self.signatures(vector.reshape(1, -1))[0]

    def signatures(self, matrix: np.ndarray) -> list[int]:
        if matrix.shape[0] == 0:
            return []
        positive = (matrix @ self.projection.matrix.T) > 0
        packed = (positive.astype(np.uint64) * self._weights).sum(axis=1, dtype=np.uint64)
        return [int(value) for value in packed]

    def bucket_id(self, signature: int) -> str:
        width = (self.bits + 3) // 4
        return f"{signature:0{width}x}"

    def probe_signatures(self, signature: int, radius: int = 0) -> list[int]:
        """Signatures within Hamming distance *radius* of *signature*, nearest first."""
        probes = [signature]
        for distance in range(1, min(radius, self.bits) + 1):
            for positions in combinations(range(self.bits), distance):
                flipped = signature
                for position in positions:
                    flipped ^= 1 << position
                probes.append(flipped)
        return probes
