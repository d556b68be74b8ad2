"""Tests for indexing and semantic/hybrid search."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace

import pytest

from chat_recall.cache import EmbeddingCache, ResultCache
from chat_recall.config import EngineConfig
from chat_recall.errors import QueryValidationError, SearchError
from chat_recall.index import VectorIndex
from chat_recall.models import SearchHit
from chat_recall.search import SearchFilters, SemanticSearchEngine
from chat_recall.sources import SourceItem
from chat_recall.storage import DuckDBMessageStore, DuckDBStorage
from conftest import SAMPLE_MESSAGES, FailingProvider, FakeClock, TopicEmbeddingProvider


class StubLexical:
    def __init__(self, hits: list[SearchHit]) -> None:
        self.hits = hits

    def lexical_search(self, query, filters=None, limit=20) -> list[SearchHit]:
        return self.hits[:limit]


class BrokenLexical:
    def lexical_search(self, query, filters=None, limit=20) -> list[SearchHit]:
        raise RuntimeError("full-text index unavailable")


class CancellingProvider(TopicEmbeddingProvider):
    """Sets the cancel event once the first chunk has been embedded."""

    def __init__(self, event: asyncio.Event) -> None:
        super().__init__()
        self.event = event

    async def batch_generate_embeddings(self, texts, *, task_type="RETRIEVAL_DOCUMENT"):
        vectors = await super().batch_generate_embeddings(texts, task_type=task_type)
        self.event.set()
        return vectors


async def _engine(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    provider,
    *,
    clock: FakeClock | None = None,
    lexical=None,
    cached: bool = True,
    **config,
) -> SemanticSearchEngine:
    engine_config = EngineConfig(**config)
    index = await VectorIndex.open(storage, config=engine_config)
    clock = clock or FakeClock()
    return SemanticSearchEngine(
        index,
        provider,
        messages,
        lexical=lexical if lexical is not None else messages,
        embedding_cache=EmbeddingCache(storage, clock=clock, purge_interval=0) if cached else None,
        result_cache=ResultCache(storage, clock=clock) if cached else None,
        config=engine_config,
    )


async def _indexed_engine(storage, messages, provider, **kwargs) -> SemanticSearchEngine:
    engine = await _engine(storage, messages, provider, **kwargs)
    await engine.index_all()
    return engine


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_index_all_embeds_changed_messages_once(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _engine(storage, messages, topic_provider)

    first = await engine.index_all()
    assert (first.processed, first.failed, first.skipped, first.removed) == (4, 0, 1, 0)
    assert not first.cancelled
    assert len(engine.index) == 4
    assert not await engine.index.contains("m5")

    second = await engine.index_all()
    assert (second.processed, second.skipped) == (0, 5)
    assert len(topic_provider.batch_calls) == 1


@pytest.mark.asyncio
async def test_index_all_removes_deleted_messages(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)
    messages.delete_message("m4")

    report = await engine.index_all()

    assert report.removed == 1
    assert not await engine.index.contains("m4")


@pytest.mark.asyncio
async def test_batch_failure_falls_back_to_single_embeddings(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    topic_provider.fail_batch = True
    topic_provider.fail_words = {"password"}
    engine = await _engine(storage, messages, topic_provider)

    report = await engine.index_all()

    assert (report.processed, report.failed) == (3, 1)
    assert len(topic_provider.single_calls) == 4
    assert not await engine.index.contains("m4")


@pytest.mark.asyncio
async def test_hanging_embedding_counts_as_failure(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    topic_provider.hang_words = {"shipping"}
    engine = await _engine(storage, messages, topic_provider, embedding_timeout=0.1)

    report = await engine.index_all()

    assert (report.processed, report.failed) == (3, 1)
    assert not await engine.index.contains("m3")


@pytest.mark.asyncio
async def test_index_all_stops_between_chunks_when_cancelled(
    storage: DuckDBStorage, messages: DuckDBMessageStore
) -> None:
    event = asyncio.Event()
    provider = CancellingProvider(event)
    engine = await _engine(storage, messages, provider, batch_size=2)

    report = await engine.index_all(cancel_event=event)

    assert report.cancelled
    assert report.processed == 2
    assert len(provider.batch_calls) == 1


# ---------------------------------------------------------------------------
# Semantic search
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_semantic_search_ranks_by_similarity(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    hits = await engine.semantic_search("refund?")

    assert [hit.identifier for hit in hits] == ["m1", "m2"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[0].semantic_score == pytest.approx(1.0)
    assert hits[0].matched_by == "semantic"
    assert hits[0].source == "support"
    assert hits[1].content.startswith("Refund requests")


@pytest.mark.asyncio
async def test_semantic_search_applies_filters(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    hits = await engine.semantic_search("refund", SearchFilters(roles=("assistant",)))

    assert [hit.identifier for hit in hits] == ["m2"]


@pytest.mark.asyncio
async def test_empty_query_is_rejected(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    with pytest.raises(QueryValidationError):
        await engine.semantic_search("!!!")
    with pytest.raises(QueryValidationError):
        await engine.hybrid_search("   ")


@pytest.mark.asyncio
async def test_repeated_search_is_served_from_result_cache(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    first = await engine.semantic_search("refund")
    second = await engine.semantic_search("Refund!")

    assert first == second
    assert engine.result_cache.stats()["hits"] == 1
    assert topic_provider.single_calls == ["refund"]


@pytest.mark.asyncio
async def test_hits_for_deleted_messages_are_dropped(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider, cached=False)
    messages.delete_message("m2")

    hits = await engine.semantic_search("refund")

    assert [hit.identifier for hit in hits] == ["m1"]


# ---------------------------------------------------------------------------
# Hybrid search
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hybrid_search_combines_both_legs(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    hits = await engine.hybrid_search("refund")

    assert [hit.identifier for hit in hits] == ["m1", "m2"]
    assert all(hit.matched_by == "semantic+lexical" for hit in hits)
    assert hits[0].score == pytest.approx((1.2 + 1.0) / 2)
    assert hits[0].lexical_score == pytest.approx(1.0)
    assert len(engine.result_cache) == 1


@pytest.mark.asyncio
async def test_hybrid_search_returns_lexical_hits_when_semantic_fails(
    storage: DuckDBStorage, messages: DuckDBMessageStore
) -> None:
    lexical = StubLexical(
        [
            SearchHit(identifier="m1", score=0.9),
            SearchHit(identifier="m2", score=0.7),
            SearchHit(identifier="m3", score=0.2),
        ]
    )
    engine = await _engine(storage, messages, FailingProvider(), lexical=lexical)

    hits = await engine.hybrid_search("refund")

    assert [(hit.identifier, hit.score) for hit in hits] == [
        ("m1", 0.9),
        ("m2", 0.7),
        ("m3", 0.2),
    ]
    assert all(hit.matched_by == "lexical" for hit in hits)
    assert len(engine.result_cache) == 0


@pytest.mark.asyncio
async def test_hybrid_search_returns_boosted_semantic_hits_when_lexical_fails(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(
        storage, messages, topic_provider, lexical=BrokenLexical()
    )

    hits = await engine.hybrid_search("refund")

    assert [hit.identifier for hit in hits] == ["m1", "m2"]
    assert hits[0].score == pytest.approx(1.2)
    assert hits[0].matched_by == "semantic"
    assert len(engine.result_cache) == 0


@pytest.mark.asyncio
async def test_hybrid_search_raises_when_both_legs_fail(
    storage: DuckDBStorage, messages: DuckDBMessageStore
) -> None:
    engine = await _engine(storage, messages, FailingProvider(), lexical=BrokenLexical())

    with pytest.raises(SearchError):
        await engine.hybrid_search("refund")


@pytest.mark.asyncio
async def test_lexical_search_passes_through(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _engine(storage, messages, topic_provider)

    hits = await engine.lexical_search("shipping delivery")

    assert [hit.identifier for hit in hits] == ["m3"]
    assert hits[0].score == pytest.approx(1.0)
    assert topic_provider.single_calls == []


# ---------------------------------------------------------------------------
# Similar messages and maintenance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_similar_excludes_the_message_itself(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    similar = await engine.find_similar("m1")

    assert [hit.identifier for hit in similar] == ["m2"]
    assert await engine.find_similar("unknown") == []


@pytest.mark.asyncio
async def test_reindex_item_picks_up_edits_and_invalidates_results(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)
    assert [hit.identifier for hit in await engine.semantic_search("shipping")] == ["m3"]

    assert not await engine.reindex_item("m3")

    messages.add_messages(
        [
            SourceItem(
                identifier="m3",
                content="Reset your password from the login screen.",
                source="logistics",
                role="assistant",
                created_at="2024-04-10T08:00:00+00:00",
            )
        ]
    )
    assert await engine.reindex_item("m3")

    assert await engine.semantic_search("shipping") == []
    password_hits = await engine.semantic_search("password")
    assert {hit.identifier for hit in password_hits} == {"m3", "m4"}


@pytest.mark.asyncio
async def test_remove_item_drops_embedding(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    assert await engine.remove_item("m4")
    assert not await engine.remove_item("m4")
    assert await engine.semantic_search("password") == []


@pytest.mark.asyncio
async def test_stats_report_index_caches_and_searches(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)
    await engine.semantic_search("refund")
    await engine.semantic_search("refund")
    await engine.hybrid_search("delivery")

    stats = await engine.stats()

    assert stats["index"]["size"] == 4
    assert stats["provider"]["name"] == "topic"
    assert stats["result_cache"]["hits"] == 1
    assert stats["searches"]["total_searches"] == 3
    assert stats["searches"]["cache_hits"] == 1
    assert stats["searches"]["by_mode"] == {"hybrid": 1, "semantic": 2}


# ---------------------------------------------------------------------------
# Edge cases
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_index_all_removes_messages_that_became_too_short(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)
    messages.add_messages([replace(SAMPLE_MESSAGES[0], content="ok")])

    report = await engine.index_all()

    assert (report.processed, report.skipped, report.removed) == (0, 4, 1)
    assert not await engine.index.contains("m1")
    hits = await engine.semantic_search("refund money")
    assert [hit.identifier for hit in hits] == ["m2"]


@pytest.mark.asyncio
async def test_zero_limit_returns_no_hits(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    engine = await _indexed_engine(storage, messages, topic_provider)

    assert await engine.semantic_search("refund", limit=0) == []
    assert await engine.hybrid_search("refund", limit=0) == []
    assert await engine.semantic_search("refund", limit=1) != []


@pytest.mark.asyncio
async def test_hanging_query_embedding_degrades_to_lexical_within_timeout(
    storage: DuckDBStorage,
    messages: DuckDBMessageStore,
    topic_provider: TopicEmbeddingProvider,
) -> None:
    topic_provider.hang_words = {"refund"}
    engine = await _engine(storage, messages, topic_provider, embedding_timeout=0.2)

    started = time.perf_counter()
    hits = await engine.hybrid_search("refund")
    elapsed = time.perf_counter() - started

    assert elapsed < 2.0
    assert [hit.identifier for hit in hits] == ["m1", "m2"]
    assert all(hit.matched_by == "lexical" for hit in hits)
    assert engine.embedding_cache.stats()["entries"] == 0
