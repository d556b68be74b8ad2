"""
In-memory mirror of the persisted vector index.

Writers mutate the mirror under the index write lock. Readers never touch the
mutable state directly: they take a :class:`MirrorSnapshot`, an immutable
view rebuilt lazily after each change, so a search running concurrently with
a write sees either the state before the write or the state after it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import numpy as np


@dataclass(frozen=True)
class MirrorEntry:
    identifier: str
    vector: np.ndarray
    norm: float
    metadata: Mapping[str, Any] = field(default_factory=dict)
    source_version_hash: str = ""
    bucket_id: str | None = None
    signature: int | None = None


@dataclass(frozen=True)
class MirrorSnapshot:
    """Immutable, array-backed view of the index at one version."""

    version: int
    identifiers: tuple[str, ...]
    matrix: np.ndarray
    norms: np.ndarray
    metadata: tuple[Mapping[str, Any], ...]
    buckets: Mapping[str, tuple[int, ...]]
    dirty_positions: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.identifiers)

    @property
    def dimension(self) -> int | None:
        if not self.identifiers:
            return None
        return int(self.matrix.shape[1])

    def bucket_positions(self, bucket_ids: Iterable[str]) -> list[int]:
        positions: set[int] = set()
        for bucket_id in bucket_ids:
            positions.update(self.buckets.get(bucket_id, ()))
        return sorted(positions)


_EMPTY_SNAPSHOT = MirrorSnapshot(
    version=-1,
    identifiers=(),
    matrix=np.zeros((0, 0), dtype=np.float64),
    norms=np.zeros(0, dtype=np.float64),
    metadata=(),
    buckets=MappingProxyType({}),
    dirty_positions=(),
)


class IndexMirror:
    """Mutable identifier -> entry map plus bucket membership and dirty tracking.

    The mirror carries no locking of its own; the owning index serializes all
    mutations.
    """

    def __init__(self) -> None:
        self.loaded = False
        self._entries: dict[str, MirrorEntry] = {}
        self._dirty: set[str] = set()
        self._version = 0
        self._snapshot: MirrorSnapshot = _EMPTY_SNAPSHOT

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    @property
    def version(self) -> int:
        return self._version

    @property
    def dirty(self) -> frozenset[str]:
        return frozenset(self._dirty)

    def get(self, identifier: str) -> MirrorEntry | None:
        return self._entries.get(identifier)

    def entries(self) -> list[MirrorEntry]:
        return [self._entries[key] for key in sorted(self._entries)]

    def reset(self, entries: Iterable[MirrorEntry], dirty: Iterable[str] = ()) -> None:
        self._entries = {entry.identifier: entry for entry in entries}
        self._dirty = {identifier for identifier in dirty if identifier in self._entries}
        self.loaded = True
        self._bump()

    def put(self, entry: MirrorEntry) -> None:
        self._entries[entry.identifier] = entry
        if entry.bucket_id is None:
            self._dirty.add(entry.identifier)
        else:
            self._dirty.discard(entry.identifier)
        self._bump()

    def remove(self, identifier: str) -> bool:
        removed = self._entries.pop(identifier, None) is not None
        self._dirty.discard(identifier)
        if removed:
            self._bump()
        return removed

    def apply_buckets(self, signatures: Mapping[str, tuple[int, str]]) -> None:
        """Replace bucket membership with ``{identifier: (signature, bucket_id)}``."""
        for identifier, entry in list(self._entries.items()):
            assigned = signatures.get(identifier)
            if assigned is None:
                self._entries[identifier] = replace(entry, signature=None, bucket_id=None)
                self._dirty.add(identifier)
            else:
                self._entries[identifier] = replace(entry, signature=assigned[0], bucket_id=assigned[1])
                self._dirty.discard(identifier)
        self._bump()

    def snapshot(self) -> MirrorSnapshot:
        if self._snapshot.version == self._version:
            return self._snapshot
        entries = self.entries()
        if entries:
            matrix = np.vstack([entry.vector for entry in entries])
        else:
            matrix = np.zeros((0, 0), dtype=np.float64)
        buckets: dict[str, list[int]] = {}
        dirty_positions: list[int] = []
        for position, entry in enumerate(entries):
            if entry.bucket_id is not None:
                buckets.setdefault(entry.bucket_id, []).append(position)
            if entry.identifier in self._dirty:
                dirty_positions.append(position)
        matrix.setflags(write=False)
        self._snapshot = MirrorSnapshot(
            version=self._version,
            identifiers=tuple(entry.identifier for entry in entries),
            matrix=matrix,
            norms=np.array([entry.norm for entry in entries], dtype=np.float64),
            metadata=tuple(MappingProxyType(dict(entry.metadata)) for entry in entries),
            buckets=MappingProxyType({key: tuple(value) for key, value in buckets.items()}),
            dirty_positions=tuple(dirty_positions),
        )
        return self._snapshot

    def _bump(self) -> None:
        self._version += 1

