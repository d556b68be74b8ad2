"""
Semantic and hybrid search engine.

Embeds queries (through the query-embedding cache when one is configured),
searches the vector index, hydrates hits from the source repository and
fuses them with lexical results. Ranked results are cached per request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

from ..cache import EmbeddingCache, ResultCache
from ..config import EngineConfig
from ..embeddings import EmbeddingProvider
from ..errors import QueryValidationError, SearchError, StorageError, VectorValidationError
from ..index import ScoredIdentifier, VectorIndex, VectorItem, validate_vector
from ..models import SearchHit, SearchMode
from ..sources import LexicalSearcher, SourceItem, SourceRepository
from ..storage.base import SearchStatRecord
from ..text import content_hash, normalize_text
from .filters import SearchFilters
from .ranker import fuse_results

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexingReport:
    """Summary output for an indexing run."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    removed: int = 0
    cancelled: bool = False


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


class SemanticSearchEngine:
    """Embed queries, search the vector index, fuse with lexical results."""

    def __init__(
        self,
        index: VectorIndex,
        provider: EmbeddingProvider,
        repository: SourceRepository,
        *,
        lexical: LexicalSearcher | None = None,
        embedding_cache: EmbeddingCache | None = None,
        result_cache: ResultCache | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.index = index
        self.provider = provider
        self.repository = repository
        self.lexical = lexical
        self.embedding_cache = embedding_cache
        self.result_cache = result_cache
        self.config = config or index.config
        self.storage = index.storage

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_all(self, cancel_event: asyncio.Event | None = None) -> IndexingReport:
        """Embed every message whose content changed since it was last indexed.

        Chunks of ``batch_size`` run one after another; cancellation is
        honoured between chunks. One item failing to embed is counted and
        never aborts its chunk. Embeddings of messages that were deleted or
        shrank below ``min_content_length`` are removed.
        """
        items = await asyncio.to_thread(self.repository.list_items)
        indexed = await asyncio.to_thread(self.storage.get_indexed_hashes)

        stale: list[tuple[SourceItem, str]] = []
        skipped = 0
        live: set[str] = set()
        for item in items:
            if len(normalize_text(item.content)) < self.config.min_content_length:
                if item.identifier not in indexed:
                    skipped += 1
                continue
            live.add(item.identifier)
            digest = content_hash(item.content)
            if indexed.get(item.identifier) == digest:
                skipped += 1
                continue
            stale.append((item, digest))

        removed = 0
        for identifier in sorted(set(indexed) - live):
            if await self.index.delete(identifier):
                removed += 1

        processed = 0
        failed = 0
        cancelled = False
        batch_size = self.config.batch_size
        for start in range(0, len(stale), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info("Indexing cancelled after %d of %d items", start, len(stale))
                break
            chunk = stale[start : start + batch_size]
            ok, chunk_failed = await self._index_chunk(chunk)
            processed += ok
            failed += chunk_failed

        if (processed or removed) and self.result_cache is not None:
            await self.result_cache.clear()

        report = IndexingReport(
            processed=processed,
            failed=failed,
            skipped=skipped,
            removed=removed,
            cancelled=cancelled,
        )
        logger.info(
            "Indexing finished: %d processed, %d failed, %d skipped, %d removed",
            report.processed,
            report.failed,
            report.skipped,
            report.removed,
        )
        return report

    async def _index_chunk(self, chunk: list[tuple[SourceItem, str]]) -> tuple[int, int]:
        vectors = await self._embed_documents([item.content for item, _ in chunk])
        expected = self.index.dimension or self.provider.get_dimensions()
        writes: list[VectorItem] = []
        failed = 0
        for (item, digest), vector in zip(chunk, vectors):
            if vector is None:
                failed += 1
                continue
            try:
                array = validate_vector(vector, expected)
            except VectorValidationError as exc:
                logger.warning("Discarding embedding for %s: %s", item.identifier, exc)
                failed += 1
                continue
            writes.append(
                VectorItem(
                    identifier=item.identifier,
                    vector=array,
                    metadata=item.metadata,
                    source_version_hash=digest,
                )
            )
        written = await self.index.batch_upsert(writes)
        return written, failed

    async def _embed_documents(self, texts: list[str]) -> list[list[float] | None]:
        timeout = self.config.embedding_timeout
        try:
            vectors = await asyncio.wait_for(
                self.provider.batch_generate_embeddings(texts), timeout=timeout
            )
            if len(vectors) != len(texts):
                raise ValueError(f"expected {len(texts)} embeddings, got {len(vectors)}")
            return list(vectors)
        except Exception as exc:
            logger.warning(
                "Batch embedding of %d texts failed (%s); retrying individually",
                len(texts),
                exc,
            )
        return list(await asyncio.gather(*(self._embed_document(text) for text in texts)))

    async def _embed_document(self, text: str) -> list[float] | None:
        try:
            return await asyncio.wait_for(
                self.provider.generate_embedding(text, task_type="RETRIEVAL_DOCUMENT"),
                timeout=self.config.embedding_timeout,
            )
        except Exception as exc:
            logger.warning("Embedding failed: %s: %s", type(exc).__name__, exc)
            return None

    async def reindex_item(self, identifier: str) -> bool:
        """Re-embed one message if its content changed. Returns True when rewritten."""
        item = await asyncio.to_thread(self.repository.get_item, identifier)
        if item is None or len(normalize_text(item.content)) < self.config.min_content_length:
            await self.remove_item(identifier)
            return False
        digest = content_hash(item.content)
        current = await self.index.get(identifier)
        if current is not None and current.source_version_hash == digest:
            return False
        written, failed = await self._index_chunk([(item, digest)])
        if failed:
            logger.warning("Could not re-embed %s; keeping the previous embedding", identifier)
            return False
        if self.result_cache is not None:
            await self.result_cache.invalidate(identifier=identifier)
        return written > 0

    async def remove_item(self, identifier: str) -> bool:
        removed = await self.index.delete(identifier)
        if self.result_cache is not None:
            await self.result_cache.invalidate(identifier=identifier)
        return removed

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def semantic_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        normalized = self._normalize_query(query)
        started = time.perf_counter()
        key = ResultCache.make_key("semantic", normalized, filters, limit)
        cached = await self._cached(key)
        if cached is not None:
            await self._record_stat(key, "semantic", len(cached), _elapsed_ms(started), cache_hit=True)
            return cached

        hits, embedding_ms, vector_ms = await self._semantic_hits(normalized, filters, limit)
        latency_ms = _elapsed_ms(started)
        await self._store(key, hits, "semantic", latency_ms, query)
        await self._record_stat(
            key,
            "semantic",
            len(hits),
            latency_ms,
            embedding_ms=embedding_ms,
            vector_ms=vector_ms,
        )
        return hits

    async def hybrid_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        """Run semantic and lexical search concurrently and fuse the results.

        A failing semantic leg degrades to lexical-only results (unboosted);
        a failing lexical leg degrades to boosted semantic results. Degraded
        results are not cached. :class:`SearchError` is raised only when both
        legs fail.
        """
        normalized = self._normalize_query(query)
        started = time.perf_counter()
        key = ResultCache.make_key("hybrid", normalized, filters, limit)
        cached = await self._cached(key)
        if cached is not None:
            await self._record_stat(key, "hybrid", len(cached), _elapsed_ms(started), cache_hit=True)
            return cached

        semantic_outcome, lexical_outcome = await asyncio.gather(
            self._semantic_hits(normalized, filters, limit),
            self._lexical_hits(query, filters, limit),
            return_exceptions=True,
        )
        for outcome in (semantic_outcome, lexical_outcome):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        semantic_failed = isinstance(semantic_outcome, Exception)
        lexical_failed = isinstance(lexical_outcome, Exception)
        if semantic_failed and lexical_failed:
            raise SearchError(
                f"Semantic and lexical search both failed: {semantic_outcome}; {lexical_outcome}"
            ) from semantic_outcome
        if semantic_failed:
            logger.warning(
                "Semantic search failed, continuing with lexical results only: %s",
                semantic_outcome,
            )
            semantic_hits: list[SearchHit] = []
            embedding_ms = vector_ms = 0.0
        else:
            semantic_hits, embedding_ms, vector_ms = semantic_outcome
        if lexical_failed:
            logger.warning(
                "Lexical search failed, continuing with semantic results only: %s",
                lexical_outcome,
            )
            lexical_hits: list[SearchHit] = []
        else:
            lexical_hits = lexical_outcome

        fused = fuse_results(
            semantic_hits,
            lexical_hits,
            semantic_boost=self.config.semantic_boost,
            policy=self.config.fusion_policy,
            limit=limit,
        )
        latency_ms = _elapsed_ms(started)
        if not (semantic_failed or lexical_failed):
            await self._store(key, fused, "hybrid", latency_ms, query)
        await self._record_stat(
            key,
            "hybrid",
            len(fused),
            latency_ms,
            embedding_ms=embedding_ms,
            vector_ms=vector_ms,
        )
        return fused

    async def lexical_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        normalized = self._normalize_query(query)
        started = time.perf_counter()
        hits = await self._lexical_hits(query, filters, limit)
        key = ResultCache.make_key("lexical", normalized, filters, limit)
        await self._record_stat(key, "lexical", len(hits), _elapsed_ms(started))
        return hits

    async def find_similar(self, identifier: str, limit: int = 5) -> list[SearchHit]:
        """Messages closest to *identifier*'s own embedding, excluding itself."""
        started = time.perf_counter()
        record = await self.index.get(identifier)
        if record is None or record.norm == 0.0:
            return []
        vector_started = time.perf_counter()
        candidates = await self.index.search(
            record.vector,
            top_k=limit + 1,
            min_score=self.config.similarity_threshold,
        )
        vector_ms = _elapsed_ms(vector_started)
        candidates = [c for c in candidates if c.identifier != identifier][:limit]
        hits = await self._hydrate(candidates, None, limit)
        await self._record_stat(
            identifier, "similar", len(hits), _elapsed_ms(started), vector_ms=vector_ms
        )
        return hits

    async def stats(self) -> dict[str, Any]:
        provider: dict[str, Any] = {
            "name": self.provider.name,
            "dimensions": self.provider.get_dimensions(),
        }
        last_state = getattr(self.provider, "last_state", None)
        if last_state is not None:
            provider["last_state"] = last_state.value
            provider["fallback_count"] = getattr(self.provider, "fallback_count", 0)
        return {
            "index": self.index.stats(),
            "provider": provider,
            "embedding_cache": self.embedding_cache.stats() if self.embedding_cache else None,
            "result_cache": self.result_cache.stats() if self.result_cache else None,
            "searches": await asyncio.to_thread(self.storage.search_stats_summary),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_query(query: str) -> str:
        normalized = normalize_text(query or "")
        if not normalized:
            raise QueryValidationError("Query must contain at least one word character")
        return normalized

    async def _embed_query(self, normalized: str) -> Any:
        if self.embedding_cache is not None:
            return await self.embedding_cache.get_or_embed(
                normalized, self.provider, timeout=self.config.embedding_timeout
            )
        return await asyncio.wait_for(
            self.provider.generate_embedding(normalized),
            timeout=self.config.embedding_timeout,
        )

    async def _semantic_hits(
        self,
        normalized: str,
        filters: SearchFilters | None,
        limit: int,
    ) -> tuple[list[SearchHit], float, float]:
        started = time.perf_counter()
        vector = await self._embed_query(normalized)
        embedding_ms = _elapsed_ms(started)

        started = time.perf_counter()
        predicate = filters.matches if filters is not None and not filters.is_empty else None
        candidates = await self.index.search(
            vector,
            top_k=max(limit, 1) * self.config.candidate_multiplier,
            min_score=self.config.similarity_threshold,
            predicate=predicate,
        )
        vector_ms = _elapsed_ms(started)
        hits = await self._hydrate(candidates, filters, limit)
        return hits, embedding_ms, vector_ms

    async def _hydrate(
        self,
        candidates: Iterable[ScoredIdentifier],
        filters: SearchFilters | None,
        limit: int,
    ) -> list[SearchHit]:
        ranked = list(candidates)
        if not ranked or limit <= 0:
            return []
        items = await asyncio.to_thread(
            self.repository.get_items, [candidate.identifier for candidate in ranked]
        )
        hits: list[SearchHit] = []
        for candidate in ranked:
            item = items.get(candidate.identifier)
            if item is None:
                continue
            if filters is not None and not filters.matches(item.metadata):
                continue
            hits.append(
                item.to_hit(
                    candidate.score,
                    snippet_length=self.config.snippet_length,
                    semantic_score=candidate.score,
                    matched_by="semantic",
                )
            )
            if len(hits) >= limit:
                break
        return hits

    async def _lexical_hits(
        self,
        query: str,
        filters: SearchFilters | None,
        limit: int,
    ) -> list[SearchHit]:
        if self.lexical is None:
            return []
        return await asyncio.to_thread(self.lexical.lexical_search, query, filters, limit)

    async def _cached(self, key: str) -> list[SearchHit] | None:
        if self.result_cache is None:
            return None
        return await self.result_cache.get(key)

    async def _store(
        self,
        key: str,
        hits: list[SearchHit],
        mode: SearchMode,
        latency_ms: float,
        query: str,
    ) -> None:
        if self.result_cache is None:
            return
        await self.result_cache.set(
            key,
            hits,
            tags=(mode,),
            search_mode=mode,
            latency_ms=latency_ms,
            query_text=query,
        )

    async def _record_stat(
        self,
        key: str,
        mode: SearchMode,
        result_count: int,
        latency_ms: float,
        *,
        embedding_ms: float = 0.0,
        vector_ms: float = 0.0,
        cache_hit: bool = False,
    ) -> None:
        record = SearchStatRecord(
            query_hash=key,
            search_mode=mode,
            result_count=result_count,
            latency_ms=latency_ms,
            embedding_ms=embedding_ms,
            vector_ms=vector_ms,
            cache_hit=cache_hit,
        )
        try:
            await asyncio.to_thread(self.storage.record_search_stat, record)
        except StorageError as exc:
            logger.warning("Could not record search statistics: %s", exc)
