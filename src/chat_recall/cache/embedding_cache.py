"""
Two-tier cache of query embeddings keyed by normalized query and provider.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable

import numpy as np

from ..config import EngineConfig
from ..embeddings import EmbeddingProvider
from ..index.similarity import validate_vector
from ..storage.base import QueryEmbeddingCacheEntry, StorageBackend
from ..text import normalize_text, query_hash

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


class EmbeddingCache:
    """Memoizes query -> vector per provider.

    The memory tier is an LRU bounded by entry count; when it overflows the
    oldest 20% are dropped at once. Every embedding is also written to the
    persistent tier, which is purged of entries older than ``ttl`` and of
    single-use entries older than ``retention``.
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        ttl: float = 30 * 24 * 3600.0,
        retention: float = 7 * 24 * 3600.0,
        max_entries: int = 1_000,
        purge_interval: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.ttl = ttl
        self.retention = retention
        self.max_entries = max(max_entries, 1)
        self.purge_interval = purge_interval
        self._clock = clock
        self._memory: OrderedDict[CacheKey, QueryEmbeddingCacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._inserts_since_purge = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @classmethod
    def from_config(
        cls,
        storage: StorageBackend,
        config: EngineConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> EmbeddingCache:
        return cls(
            storage,
            ttl=config.embedding_cache_ttl,
            retention=config.embedding_cache_retention,
            max_entries=config.embedding_cache_max_entries,
            purge_interval=config.embedding_cache_purge_interval,
            clock=clock,
        )

    async def get_or_embed(
        self,
        text: str,
        provider: EmbeddingProvider,
        *,
        timeout: float | None = None,
    ) -> np.ndarray:
        """Return the cached vector for *text* or embed and cache it.

        A provider call that outlives *timeout* raises :class:`asyncio.TimeoutError`
        and nothing is cached.
        """
        normalized = normalize_text(text)
        key: CacheKey = (query_hash(normalized), provider.name)
        now = self._clock()

        async with self._lock:
            entry = self._memory.get(key)
            if entry is not None and not self._is_fresh(entry, now):
                del self._memory[key]
                entry = None
            if entry is not None:
                entry = self._accessed(entry, now)
                self._memory[key] = entry
                self._memory.move_to_end(key)
                self.hits += 1

        if entry is None:
            stored = await asyncio.to_thread(self.storage.get_query_embedding, *key)
            if stored is not None and self._is_fresh(stored, now):
                entry = self._accessed(stored, now)
                async with self._lock:
                    self._remember(key, entry)
                    self.hits += 1

        if entry is not None:
            await asyncio.to_thread(self.storage.touch_query_embedding, *key, now)
            return entry.vector.copy()

        async with self._lock:
            self.misses += 1
        raw = await asyncio.wait_for(provider.generate_embedding(normalized), timeout=timeout)
        vector = validate_vector(raw, provider.get_dimensions())
        entry = QueryEmbeddingCacheEntry(
            query_hash=key[0],
            query_text=normalized,
            vector=vector,
            provider_name=provider.name,
            created_at=now,
            last_accessed=now,
            access_count=1,
        )
        await asyncio.to_thread(self.storage.put_query_embedding, entry)

        async with self._lock:
            self._remember(key, entry)
            self._inserts_since_purge += 1
            due = self.purge_interval > 0 and self._inserts_since_purge >= self.purge_interval
            if due:
                self._inserts_since_purge = 0
        if due:
            await self.purge()
        return vector.copy()

    async def purge(self) -> int:
        """Drop expired and stale single-use entries from both tiers."""
        now = self._clock()
        async with self._lock:
            expired = [key for key, entry in self._memory.items() if not self._is_fresh(entry, now)]
            for key in expired:
                del self._memory[key]
        removed = await asyncio.to_thread(
            self.storage.purge_query_embeddings,
            expires_before=now - self.ttl,
            retain_before=now - self.retention,
        )
        if removed:
            logger.info("Purged %d cached query embeddings", removed)
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._memory.clear()
            self._inserts_since_purge = 0
        await asyncio.to_thread(self.storage.clear_query_embeddings)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._memory),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "evictions": self.evictions,
        }

    def _is_fresh(self, entry: QueryEmbeddingCacheEntry, now: float) -> bool:
        return now - entry.created_at < self.ttl

    @staticmethod
    def _accessed(entry: QueryEmbeddingCacheEntry, now: float) -> QueryEmbeddingCacheEntry:
        return replace(entry, last_accessed=now, access_count=entry.access_count + 1)

    def _remember(self, key: CacheKey, entry: QueryEmbeddingCacheEntry) -> None:
        self._memory[key] = entry
        self._memory.move_to_end(key)
        if len(self._memory) <= self.max_entries:
            return
        drop = max(1, math.ceil(len(self._memory) * 0.2))
        for _ in range(drop):
            self._memory.popitem(last=False)
        self.evictions += drop
        logger.debug("Evicted %d query embeddings from memory", drop)
