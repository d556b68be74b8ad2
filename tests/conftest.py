from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterator

import pytest

from chat_recall.errors import EmbeddingProviderError
from chat_recall.sources import SourceItem
from chat_recall.storage import DuckDBMessageStore, DuckDBStorage
from chat_recall.text import normalize_text

TOPICS: dict[str, int] = {
    "refund": 0,
    "money": 0,
    "shipping": 1,
    "delivery": 1,
    "password": 2,
    "login": 2,
}


class TopicEmbeddingProvider:
    """Deterministic 4-d embedding: one axis per topic plus a small bias."""

    def __init__(self, name: str = "topic") -> None:
        self.name = name
        self.single_calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.fail_batch = False
        self.fail_words: set[str] = set()
        self.hang_words: set[str] = set()

    def get_dimensions(self) -> int:
        return 4

    def vector(self, text: str) -> list[float]:
        vector = [0.0, 0.0, 0.0, 0.05]
        for word in normalize_text(text).split():
            axis = TOPICS.get(word)
            if axis is not None:
                vector[axis] += 1.0
        return vector

    async def _embed(self, text: str) -> list[float]:
        words = set(normalize_text(text).split())
        if words & self.hang_words:
            await asyncio.sleep(5)
        if words & self.fail_words:
            raise EmbeddingProviderError(f"cannot embed {text!r}")
        return self.vector(text)

    async def generate_embedding(
        self, text: str, *, task_type: str = "RETRIEVAL_QUERY"
    ) -> list[float]:
        self.single_calls.append(text)
        return await self._embed(text)

    async def batch_generate_embeddings(
        self, texts: list[str], *, task_type: str = "RETRIEVAL_DOCUMENT"
    ) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        if self.fail_batch:
            raise EmbeddingProviderError("batch endpoint unavailable")
        return [await self._embed(text) for text in texts]


class FailingProvider:
    name = "failing"

    def get_dimensions(self) -> int:
        return 4

    async def generate_embedding(self, text: str, *, task_type: str = "RETRIEVAL_QUERY"):
        raise EmbeddingProviderError("provider is down")

    async def batch_generate_embeddings(self, texts, *, task_type: str = "RETRIEVAL_DOCUMENT"):
        raise EmbeddingProviderError("provider is down")


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


SAMPLE_MESSAGES = [
    SourceItem(
        identifier="m1",
        content="How do I get a refund for my order?",
        source="support",
        role="user",
        category="billing",
        created_at="2024-03-01T10:00:00+00:00",
    ),
    SourceItem(
        identifier="m2",
        content="Refund requests are answered within five days, money back guaranteed.",
        source="support",
        role="assistant",
        category="billing",
        created_at="2024-03-01T10:01:00+00:00",
    ),
    SourceItem(
        identifier="m3",
        content="Shipping takes two weeks and delivery is tracked.",
        source="logistics",
        role="assistant",
        category="shipping",
        created_at="2024-04-10T08:00:00+00:00",
    ),
    SourceItem(
        identifier="m4",
        content="I forgot my password and the login page keeps failing.",
        source="accounts",
        role="user",
        category="account",
        created_at="2024-05-20T12:00:00+00:00",
    ),
    SourceItem(
        identifier="m5",
        content="ok",
        source="support",
        role="user",
        created_at="2024-05-21T12:00:00+00:00",
    ),
]


@pytest.fixture
def storage(tmp_path: Path) -> Iterator[DuckDBStorage]:
    store = DuckDBStorage(str(tmp_path / "index.duckdb"))
    yield store
    store.close()


@pytest.fixture
def messages(storage: DuckDBStorage) -> DuckDBMessageStore:
    store = DuckDBMessageStore(storage)
    store.add_messages(SAMPLE_MESSAGES)
    return store


@pytest.fixture
def topic_provider() -> TopicEmbeddingProvider:
    return TopicEmbeddingProvider()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
