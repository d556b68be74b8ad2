"""
Result cache for ranked search results.

Entries live in a memory tier bounded by a byte budget. An entry that has
been read often enough is mirrored to the persistent tier so it survives a
restart; one-off queries stay in memory only. Every read re-checks the TTL.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import replace
from typing import Any, Callable, Iterable

from pydantic import TypeAdapter

from ..config import EngineConfig
from ..models import SearchHit
from ..storage.base import ResultCacheEntry, StorageBackend
from ..text import normalize_text, query_hash

logger = logging.getLogger(__name__)

_HITS_ADAPTER = TypeAdapter(list[SearchHit])

EntryPredicate = Callable[[ResultCacheEntry], bool]


class ResultCache:
    """Memory + persistent cache of serialized result lists."""

    def __init__(
        self,
        storage: StorageBackend | None = None,
        *,
        ttl: float = 30 * 60.0,
        max_bytes: int = 50 * 1024 * 1024,
        min_access_for_persistence: int = 2,
        eviction_fraction: float = 0.2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.ttl = ttl
        self.max_bytes = max_bytes
        self.min_access_for_persistence = min_access_for_persistence
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        self._memory: dict[str, ResultCacheEntry] = {}
        self._persisted: set[str] = set()
        self._bytes = 0
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @classmethod
    def from_config(
        cls,
        storage: StorageBackend | None,
        config: EngineConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> ResultCache:
        return cls(
            storage,
            ttl=config.result_cache_ttl,
            max_bytes=config.result_cache_max_bytes,
            min_access_for_persistence=config.result_cache_min_access_for_persistence,
            eviction_fraction=config.result_cache_eviction_fraction,
            clock=clock,
        )

    @staticmethod
    def make_key(mode: str, query: str, filters: Any = None, limit: int = 20) -> str:
        """Stable key for a search request; *filters* needs a ``cache_token()``."""
        token = filters.cache_token() if filters is not None else ""
        return query_hash(mode, normalize_text(query), token, str(limit))

    @property
    def bytes_used(self) -> int:
        return self._bytes

    def __len__(self) -> int:
        return len(self._memory)

    async def get(self, key: str) -> list[SearchHit] | None:
        now = self._clock()
        async with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if self._is_expired(entry, now):
                    self._drop(key)
                    self.misses += 1
                    return None
                entry = replace(entry, access_count=entry.access_count + 1, last_accessed=now)
                self._memory[key] = entry
                self.hits += 1

        if entry is None and self.storage is not None:
            entry = await asyncio.to_thread(self.storage.get_result_entry, key)
            if entry is not None and self._is_expired(entry, now):
                await asyncio.to_thread(self.storage.delete_result_entries, [key])
                entry = None
            elif entry is not None:
                entry = replace(entry, access_count=entry.access_count + 1, last_accessed=now)
                async with self._lock:
                    self._persisted.add(key)
                    self._insert(key, entry)
                    self.hits += 1

        if entry is None:
            async with self._lock:
                self.misses += 1
            return None

        await self._sync_persistent(key, entry)
        return _HITS_ADAPTER.validate_json(entry.result_set)

    async def set(
        self,
        key: str,
        results: list[SearchHit],
        *,
        ttl: float | None = None,
        tags: Iterable[str] = (),
        search_mode: str = "hybrid",
        latency_ms: float = 0.0,
        query_text: str = "",
    ) -> None:
        now = self._clock()
        entry = ResultCacheEntry(
            query_hash=key,
            result_set=_HITS_ADAPTER.dump_json(results).decode("utf-8"),
            search_mode=search_mode,
            result_count=len(results),
            latency_ms=latency_ms,
            created_at=now,
            last_accessed=now,
            access_count=1,
            ttl=self.ttl if ttl is None else ttl,
            query_text=query_text,
            tags=tuple(tags),
            identifiers=tuple(hit.identifier for hit in results),
        )
        async with self._lock:
            replaced_persisted = key in self._persisted
            self._insert(key, entry)
        if replaced_persisted and self.storage is not None:
            await asyncio.to_thread(self.storage.put_result_entry, entry)

    async def invalidate(
        self,
        key: str | None = None,
        *,
        predicate: EntryPredicate | None = None,
        tag: str | None = None,
        identifier: str | None = None,
    ) -> int:
        """Remove entries matching any of the given criteria from both tiers.

        Returns the number of distinct keys removed.
        """
        if key is None and predicate is None and tag is None and identifier is None:
            raise ValueError("invalidate() needs a key, predicate, tag or identifier; use clear()")

        def matches(entry: ResultCacheEntry) -> bool:
            return (
                (key is not None and entry.query_hash == key)
                or (tag is not None and tag in entry.tags)
                or (identifier is not None and identifier in entry.identifiers)
                or (predicate is not None and predicate(entry))
            )

        async with self._lock:
            removed = {k for k, entry in self._memory.items() if matches(entry)}
            for k in removed:
                self._drop(k)

        if self.storage is not None:
            stored = await asyncio.to_thread(self.storage.list_result_entries)
            stale = [entry.query_hash for entry in stored if matches(entry)]
            if stale:
                await asyncio.to_thread(self.storage.delete_result_entries, stale)
                async with self._lock:
                    self._persisted.difference_update(stale)
            removed.update(stale)

        if removed:
            logger.debug("Invalidated %d cached result sets", len(removed))
        return len(removed)

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = {k for k, entry in self._memory.items() if self._is_expired(entry, now)}
            for k in expired:
                self._drop(k)
        if self.storage is not None:
            stored = await asyncio.to_thread(self.storage.list_result_entries)
            stale = [entry.query_hash for entry in stored if self._is_expired(entry, now)]
            if stale:
                await asyncio.to_thread(self.storage.delete_result_entries, stale)
                async with self._lock:
                    self._persisted.difference_update(stale)
            expired.update(stale)
        return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._memory.clear()
            self._persisted.clear()
            self._bytes = 0
        if self.storage is not None:
            await asyncio.to_thread(self.storage.clear_result_entries)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._memory),
            "bytes": self._bytes,
            "max_bytes": self.max_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "evictions": self.evictions,
            "persisted": len(self._persisted),
        }

    async def record_stats(self) -> None:
        """Append the current counters to the ``cache_stats`` table."""
        if self.storage is None:
            return
        await asyncio.to_thread(
            self.storage.record_cache_stats,
            hits=self.hits,
            misses=self.misses,
            entries=len(self._memory),
            bytes_used=self._bytes,
            evictions=self.evictions,
        )

    # ------------------------------------------------------------------
    # Internals; callers hold the lock
    # ------------------------------------------------------------------

    def _is_expired(self, entry: ResultCacheEntry, now: float) -> bool:
        return now - entry.created_at >= entry.ttl

    def _drop(self, key: str) -> None:
        entry = self._memory.pop(key, None)
        if entry is not None:
            self._bytes -= entry.size_bytes

    def _insert(self, key: str, entry: ResultCacheEntry) -> None:
        self._drop(key)
        self._memory[key] = entry
        self._bytes += entry.size_bytes
        if self._bytes > self.max_bytes:
            self._evict(protect=key, now=entry.last_accessed)

    def _evict(self, *, protect: str, now: float) -> None:
        # The protected entry alone may exceed the budget; it is kept.
        while self._bytes > self.max_bytes:
            candidates = [k for k in self._memory if k != protect]
            if not candidates:
                break
            candidates.sort(key=lambda k: (self._eviction_score(self._memory[k], now), k))
            batch = candidates[: max(1, math.ceil(len(candidates) * self.eviction_fraction))]
            for k in batch:
                self._drop(k)
            self.evictions += len(batch)
            logger.debug("Evicted %d result sets, %d bytes in use", len(batch), self._bytes)

    @staticmethod
    def _eviction_score(entry: ResultCacheEntry, now: float) -> float:
        idle = max(now - entry.last_accessed, 1e-3)
        return entry.access_count / idle

    async def _sync_persistent(self, key: str, entry: ResultCacheEntry) -> None:
        if self.storage is None or entry.access_count < self.min_access_for_persistence:
            return
        if key in self._persisted:
            await asyncio.to_thread(
                self.storage.touch_result_entry,
                key,
                access_count=entry.access_count,
                accessed_at=entry.last_accessed,
            )
            return
        await asyncio.to_thread(self.storage.put_result_entry, entry)
        async with self._lock:
            self._persisted.add(key)
