"""
Persistent vector index with exact and LSH-bucketed cosine search.

Below ``bucket_threshold`` records every query is scored against the whole
index. Above it, the query is hashed with the index's random projection and
only records in the matching bucket(s) are scored. Bucketed search has
probabilistic recall: a close neighbour that falls on the other side of a
hyperplane is missed unless ``probe_radius`` reaches its bucket. When the
lookup finds no candidates at all the index falls back to a full scan.

Every write is persisted before the in-memory mirror changes, so a failed
write leaves the mirror exactly as it was.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

import numpy as np

from ..config import EngineConfig
from ..errors import VectorValidationError
from ..storage.base import BucketAssignment, EmbeddingRecord, StorageBackend
from .lsh import RandomProjectionHasher
from .mirror import IndexMirror, MirrorEntry, MirrorSnapshot
from .similarity import cosine_scores, validate_vector, vector_norm

logger = logging.getLogger(__name__)

MetadataPredicate = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True)
class VectorItem:
    """One write submitted to :meth:`VectorIndex.batch_upsert`."""

    identifier: str
    vector: Sequence[float] | np.ndarray
    metadata: Mapping[str, Any] = field(default_factory=dict)
    source_version_hash: str = ""


@dataclass(frozen=True)
class ScoredIdentifier:
    identifier: str
    score: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


class VectorIndex:
    """Cosine-similarity index over one :class:`StorageBackend`.

    Writes (``upsert``, ``batch_upsert``, ``delete``, ``rebuild_buckets``,
    ``load``) are serialized by a single lock. Searches read an immutable
    :class:`MirrorSnapshot` and never wait on writers once the mirror is
    loaded.
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        config: EngineConfig | None = None,
        mirror: IndexMirror | None = None,
    ) -> None:
        self.storage = storage
        self.config = config or EngineConfig()
        self._mirror = mirror if mirror is not None else IndexMirror()
        self._hasher: RandomProjectionHasher | None = None
        self._projection_checked = False
        self._generation = 0
        self._needs_load = not self._mirror.loaded
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        storage: StorageBackend,
        *,
        config: EngineConfig | None = None,
    ) -> VectorIndex:
        index = cls(storage, config=config)
        await index.load()
        return index

    def __len__(self) -> int:
        return len(self._mirror)

    @property
    def dimension(self) -> int | None:
        if self._hasher is None:
            return None
        return self._hasher.dimension

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def loaded(self) -> bool:
        return self._mirror.loaded and not self._needs_load

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Rebuild the mirror from storage."""
        async with self._write_lock:
            await self._load_locked()

    async def _load_locked(self) -> None:
        projection = await asyncio.to_thread(self.storage.load_projection)
        records = await asyncio.to_thread(self.storage.load_embeddings)
        assignments = await asyncio.to_thread(self.storage.load_bucket_assignments)

        if projection is not None:
            self._hasher = RandomProjectionHasher(projection)
            self._generation = projection.generation
        self._projection_checked = True

        current = {
            assignment.identifier: assignment
            for assignment in assignments
            if assignment.generation == self._generation
        }
        entries: list[MirrorEntry] = []
        dirty: list[str] = []
        for record in records:
            assignment = current.get(record.identifier)
            if assignment is None:
                dirty.append(record.identifier)
            entries.append(
                MirrorEntry(
                    identifier=record.identifier,
                    vector=record.vector,
                    norm=record.norm,
                    metadata=dict(record.metadata),
                    source_version_hash=record.source_version_hash,
                    bucket_id=assignment.bucket_id if assignment else None,
                    signature=assignment.signature if assignment else None,
                )
            )
        self._mirror.reset(entries, dirty)
        self._needs_load = False
        logger.info(
            "Loaded vector index: %d records, %d dirty, generation %d",
            len(entries),
            len(dirty),
            self._generation,
        )

    async def _ensure_loaded(self) -> None:
        if not self._needs_load:
            return
        async with self._write_lock:
            if self._needs_load:
                await self._load_locked()

    async def _ensure_projection_locked(self) -> None:
        if self._hasher is not None or self._projection_checked:
            return
        projection = await asyncio.to_thread(self.storage.load_projection)
        if projection is not None:
            self._hasher = RandomProjectionHasher(projection)
            self._generation = projection.generation
        self._projection_checked = True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        identifier: str,
        vector: Sequence[float] | np.ndarray,
        metadata: Mapping[str, Any] | None = None,
        *,
        source_version_hash: str = "",
    ) -> None:
        await self.batch_upsert(
            [
                VectorItem(
                    identifier=identifier,
                    vector=vector,
                    metadata=metadata or {},
                    source_version_hash=source_version_hash,
                )
            ]
        )

    async def batch_upsert(self, items: Iterable[VectorItem]) -> int:
        """Validate, persist and mirror *items* as one unit.

        Either every item is written or none is. Returns the number of
        distinct identifiers written.
        """
        pending = list(items)
        if not pending:
            return 0
        async with self._write_lock:
            await self._ensure_projection_locked()

            dimension = self.dimension
            validated: dict[str, tuple[np.ndarray, VectorItem]] = {}
            for item in pending:
                if not item.identifier:
                    raise VectorValidationError("Identifier must be a non-empty string")
                try:
                    array = validate_vector(item.vector, dimension)
                except VectorValidationError as exc:
                    raise VectorValidationError(f"{item.identifier}: {exc}") from exc
                dimension = array.shape[0]
                validated[item.identifier] = (array, item)

            hasher = self._hasher
            new_projection = None
            if hasher is None:
                hasher = RandomProjectionHasher.create(
                    seed=self.config.projection_seed,
                    bits=self.config.signature_bits,
                    dimension=dimension,
                )
                new_projection = hasher.projection

            identifiers = list(validated)
            matrix = np.vstack([validated[key][0] for key in identifiers])
            signatures = hasher.signatures(matrix)
            records: list[EmbeddingRecord] = []
            assignments: list[BucketAssignment] = []
            entries: list[MirrorEntry] = []
            for identifier, signature in zip(identifiers, signatures):
                array, item = validated[identifier]
                norm = vector_norm(array)
                bucket_id = hasher.bucket_id(signature)
                metadata = dict(item.metadata)
                records.append(
                    EmbeddingRecord(
                        identifier=identifier,
                        vector=array,
                        norm=norm,
                        source_version_hash=item.source_version_hash,
                        metadata=metadata,
                    )
                )
                assignments.append(
                    BucketAssignment(
                        bucket_id=bucket_id,
                        identifier=identifier,
                        signature=signature,
                        generation=self._generation,
                    )
                )
                entries.append(
                    MirrorEntry(
                        identifier=identifier,
                        vector=array,
                        norm=norm,
                        metadata=metadata,
                        source_version_hash=item.source_version_hash,
                        bucket_id=bucket_id,
                        signature=signature,
                    )
                )

            await asyncio.to_thread(
                self.storage.write_embeddings, records, assignments, new_projection
            )

            if new_projection is not None:
                self._hasher = hasher
                logger.info(
                    "Created projection: %d bits over %d dimensions (seed %d)",
                    hasher.bits,
                    hasher.dimension,
                    hasher.projection.seed,
                )
            if self._mirror.loaded:
                for entry in entries:
                    self._mirror.put(entry)
                await self._maybe_rebuild_locked()
            else:
                self._needs_load = True
            logger.debug("Upserted %d vectors", len(entries))
            return len(entries)

    async def delete(self, identifier: str) -> bool:
        """Remove *identifier*; returns False when it was not indexed."""
        async with self._write_lock:
            removed = await asyncio.to_thread(self.storage.delete_embedding, identifier)
            if self._mirror.loaded:
                self._mirror.remove(identifier)
            if removed:
                logger.debug("Deleted vector %s", identifier)
            return removed

    async def rebuild_buckets(self, cancel_event: asyncio.Event | None = None) -> bool:
        """Recompute every bucket assignment under a new generation.

        Signatures are computed chunk by chunk from a snapshot; the event is
        checked between chunks and nothing is persisted before the last chunk
        completes. Returns False when cancelled.
        """
        async with self._write_lock:
            if self._needs_load:
                await self._load_locked()
            return await self._rebuild_locked(cancel_event)

    async def _rebuild_locked(self, cancel_event: asyncio.Event | None = None) -> bool:
        snapshot = self._mirror.snapshot()
        hasher = self._hasher
        if hasher is None or len(snapshot) == 0:
            return True

        chunk_size = max(self.config.rebuild_chunk_size, 1)
        signatures: list[int] = []
        for start in range(0, len(snapshot), chunk_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    "Bucket rebuild cancelled after %d of %d records",
                    start,
                    len(snapshot),
                )
                return False
            chunk = snapshot.matrix[start : start + chunk_size]
            signatures.extend(await asyncio.to_thread(hasher.signatures, chunk))

        generation = self._generation + 1
        assignments = [
            BucketAssignment(
                bucket_id=hasher.bucket_id(signature),
                identifier=identifier,
                signature=signature,
                generation=generation,
            )
            for identifier, signature in zip(snapshot.identifiers, signatures)
        ]
        await asyncio.to_thread(
            self.storage.replace_bucket_assignments, assignments, generation=generation
        )
        self._generation = generation
        self._mirror.apply_buckets(
            {
                assignment.identifier: (assignment.signature, assignment.bucket_id)
                for assignment in assignments
            }
        )
        logger.info(
            "Rebuilt %d bucket assignments (generation %d)", len(assignments), generation
        )
        return True

    async def _maybe_rebuild_locked(self) -> None:
        size = len(self._mirror)
        if size == 0:
            return
        dirty_fraction = len(self._mirror.dirty) / size
        if dirty_fraction > self.config.rebuild_threshold:
            logger.info(
                "Dirty fraction %.2f exceeds %.2f; rebuilding buckets",
                dirty_fraction,
                self.config.rebuild_threshold,
            )
            await self._rebuild_locked()

    async def optimize(self) -> None:
        """Rebuild stale buckets if needed and checkpoint storage."""
        async with self._write_lock:
            if self._needs_load:
                await self._load_locked()
            await self._maybe_rebuild_locked()
            await asyncio.to_thread(self.storage.checkpoint)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        query_vector: Sequence[float] | np.ndarray,
        top_k: int = 10,
        min_score: float = 0.0,
        predicate: MetadataPredicate | None = None,
    ) -> list[ScoredIdentifier]:
        """Return up to *top_k* identifiers ordered by ``(-score, identifier)``.

        Raises :class:`VectorValidationError` for a malformed or zero-norm
        query. An empty index returns ``[]``.
        """
        await self._ensure_loaded()
        snapshot = self._mirror.snapshot()
        if len(snapshot) == 0 or top_k <= 0:
            return []

        query = validate_vector(query_vector, snapshot.dimension)
        query_norm = vector_norm(query)
        if query_norm == 0.0:
            raise VectorValidationError("Query vector must have a non-zero norm")

        positions = self._candidate_positions(snapshot, query)
        return self._score(snapshot, positions, query, query_norm, top_k, min_score, predicate)

    def _candidate_positions(
        self, snapshot: MirrorSnapshot, query: np.ndarray
    ) -> list[int] | None:
        """Positions to score, or None for a full scan."""
        hasher = self._hasher
        if len(snapshot) < self.config.bucket_threshold or hasher is None:
            return None
        signature = hasher.signature(query)
        bucket_ids = [
            hasher.bucket_id(probe)
            for probe in hasher.probe_signatures(signature, self.config.probe_radius)
        ]
        positions = set(snapshot.bucket_positions(bucket_ids))
        positions.update(snapshot.dirty_positions)
        if not positions:
            logger.debug("No bucket candidates for query; falling back to full scan")
            return None
        return sorted(positions)

    @staticmethod
    def _score(
        snapshot: MirrorSnapshot,
        positions: list[int] | None,
        query: np.ndarray,
        query_norm: float,
        top_k: int,
        min_score: float,
        predicate: MetadataPredicate | None,
    ) -> list[ScoredIdentifier]:
        if positions is None:
            candidate_positions = np.arange(len(snapshot))
            scores = cosine_scores(snapshot.matrix, snapshot.norms, query, query_norm)
        else:
            candidate_positions = np.asarray(positions, dtype=np.int64)
            scores = cosine_scores(
                snapshot.matrix[candidate_positions],
                snapshot.norms[candidate_positions],
                query,
                query_norm,
            )

        scored: list[ScoredIdentifier] = []
        for position, score in zip(candidate_positions.tolist(), scores.tolist()):
            if score < min_score:
                continue
            metadata = snapshot.metadata[position]
            if predicate is not None and not predicate(metadata):
                continue
            scored.append(
                ScoredIdentifier(
                    identifier=snapshot.identifiers[position],
                    score=float(score),
                    metadata=metadata,
                )
            )
        scored.sort(key=lambda hit: (-hit.score, hit.identifier))
        return scored[:top_k]

    async def get(self, identifier: str) -> EmbeddingRecord | None:
        if self._mirror.loaded and not self._needs_load:
            entry = self._mirror.get(identifier)
            if entry is None:
                return None
            return EmbeddingRecord(
                identifier=entry.identifier,
                vector=entry.vector,
                norm=entry.norm,
                source_version_hash=entry.source_version_hash,
                metadata=dict(entry.metadata),
            )
        return await asyncio.to_thread(self.storage.get_embedding, identifier)

    async def contains(self, identifier: str) -> bool:
        return await self.get(identifier) is not None

    def stats(self) -> dict[str, Any]:
        snapshot = self._mirror.snapshot()
        return {
            "size": len(snapshot),
            "dimension": self.dimension,
            "buckets": len(snapshot.buckets),
            "dirty": len(snapshot.dirty_positions),
            "generation": self._generation,
            "loaded": self.loaded,
            "bucketed_search": len(snapshot) >= self.config.bucket_threshold,
            "signature_bits": self._hasher.bits if self._hasher else self.config.signature_bits,
        }
