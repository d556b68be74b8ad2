"""
Embedding providers for semantic search.

``GenAIEmbeddingProvider`` wraps the Google GenAI embedding API with a
configurable model, dimensionality and batch size. ``LocalEmbeddingProvider``
is a deterministic feature-hashing embedding that needs no network.
``FallbackEmbeddingProvider`` tries the remote provider on every call and
falls back to the local one for that call only when the remote fails.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import logging
import os
from typing import Any, Protocol

import numpy as np
from google.genai import Client as GenAIClient

from .errors import EmbeddingProviderError
from .text import normalize_text

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "gemini-embedding-001"
_DEFAULT_DIM = 768
_DEFAULT_BATCH_SIZE = 50
_DEFAULT_TIMEOUT = 30.0


class EmbeddingProvider(Protocol):
    """Text to fixed-length vectors. Every vector has ``get_dimensions()`` entries."""

    name: str

    async def generate_embedding(
        self, text: str, *, task_type: str = "RETRIEVAL_QUERY"
    ) -> list[float]: ...

    async def batch_generate_embeddings(
        self, texts: list[str], *, task_type: str = "RETRIEVAL_DOCUMENT"
    ) -> list[list[float]]: ...

    def get_dimensions(self) -> int: ...


class GenAIEmbeddingProvider:
    """Generate text embeddings via Google GenAI."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        batch_size: int | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or os.getenv("CHAT_RECALL_EMBEDDING_MODEL", _DEFAULT_MODEL)
        self.dim = dim or int(os.getenv("CHAT_RECALL_EMBEDDING_DIM", str(_DEFAULT_DIM)))
        self.batch_size = batch_size or int(
            os.getenv("CHAT_RECALL_EMBEDDING_BATCH_SIZE", str(_DEFAULT_BATCH_SIZE))
        )
        self.name = f"genai:{self.model}:{self.dim}"

        if client is not None:
            self._client = client
        else:
            resolved_key = api_key or os.getenv("GOOGLE_API_KEY")
            if resolved_key is None:
                raise ValueError(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(api_key=resolved_key)

    def get_dimensions(self) -> int:
        return self.dim

    async def batch_generate_embeddings(
        self,
        texts: list[str],
        *,
        task_type: str = "RETRIEVAL_DOCUMENT",
    ) -> list[list[float]]:
        """Embed a list of texts in batches.

        Returns a list of embedding vectors in the same order as *texts*.
        """
        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            result = await self._client.aio.models.embed_content(
                model=self.model,
                contents=batch,
                config={
                    "task_type": task_type,
                    "output_dimensionality": self.dim,
                },
            )
            embeddings = result.embeddings or []
            if len(embeddings) != len(batch):
                raise EmbeddingProviderError(
                    f"Expected {len(batch)} embeddings from {self.model}, got {len(embeddings)}"
                )
            for emb in embeddings:
                all_embeddings.append(list(emb.values))
        return all_embeddings

    async def generate_embedding(
        self,
        text: str,
        *,
        task_type: str = "RETRIEVAL_QUERY",
    ) -> list[float]:
        """Embed a single text for retrieval."""
        result = await self._client.aio.models.embed_content(
            model=self.model,
            contents=[text],
            config={
                "task_type": task_type,
                "output_dimensionality": self.dim,
            },
        )
        if not result.embeddings:
            raise EmbeddingProviderError(f"{self.model} returned no embedding")
        return list(result.embeddings[0].values)


class LocalEmbeddingProvider:
    """Signed feature hashing over word unigrams and bigrams, L2-normalized.

    Deterministic across processes and platforms. Texts sharing words land
    close together; it captures no meaning beyond vocabulary overlap.
    """

    def __init__(self, dim: int = _DEFAULT_DIM) -> None:
        if dim < 1:
            raise ValueError("dim must be >= 1")
        self.dim = dim
        self.name = f"local-hash:{dim}"

    def get_dimensions(self) -> int:
        return self.dim

    def embed(self, text: str) -> list[float]:
        vector = np.zeros(self.dim, dtype=np.float64)
        tokens = normalize_text(text).split()
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "big")
            sign = 1.0 if value & 1 else -1.0
            vector[(value >> 1) % self.dim] += sign
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector.tolist()

    async def generate_embedding(
        self, text: str, *, task_type: str = "RETRIEVAL_QUERY"
    ) -> list[float]:
        return self.embed(text)

    async def batch_generate_embeddings(
        self, texts: list[str], *, task_type: str = "RETRIEVAL_DOCUMENT"
    ) -> list[list[float]]:
        return [self.embed(text) for text in texts]


class ProviderState(str, enum.Enum):
    REMOTE_CONFIGURED = "remote-configured"
    REMOTE_FAILED = "remote-failed"
    LOCAL_FALLBACK = "local-fallback"


class FallbackEmbeddingProvider:
    """Remote provider with a per-call local fallback.

    A failed or timed-out remote call is answered by the local provider, but
    the next call goes to the remote provider again. Only when the local
    provider also fails is :class:`EmbeddingProviderError` raised.
    """

    def __init__(
        self,
        remote: EmbeddingProvider,
        local: EmbeddingProvider | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self.remote = remote
        self.local = local or LocalEmbeddingProvider(remote.get_dimensions())
        if self.local.get_dimensions() != remote.get_dimensions():
            raise ValueError(
                "Local fallback dimensions must match the remote provider: "
                f"{self.local.get_dimensions()} != {remote.get_dimensions()}"
            )
        self.timeout = timeout
        self.name = remote.name
        self.last_state = ProviderState.REMOTE_CONFIGURED
        self.fallback_count = 0

    def get_dimensions(self) -> int:
        return self.remote.get_dimensions()

    async def generate_embedding(
        self, text: str, *, task_type: str = "RETRIEVAL_QUERY"
    ) -> list[float]:
        try:
            vector = await asyncio.wait_for(
                self.remote.generate_embedding(text, task_type=task_type),
                timeout=self.timeout,
            )
        except Exception as exc:
            self._remote_failed(exc)
            try:
                return await self.local.generate_embedding(text, task_type=task_type)
            except Exception as local_exc:
                raise EmbeddingProviderError(
                    f"Remote and local embedding both failed: {local_exc}"
                ) from local_exc
        self.last_state = ProviderState.REMOTE_CONFIGURED
        return vector

    async def batch_generate_embeddings(
        self, texts: list[str], *, task_type: str = "RETRIEVAL_DOCUMENT"
    ) -> list[list[float]]:
        try:
            vectors = await asyncio.wait_for(
                self.remote.batch_generate_embeddings(texts, task_type=task_type),
                timeout=self.timeout,
            )
        except Exception as exc:
            self._remote_failed(exc)
            try:
                return await self.local.batch_generate_embeddings(texts, task_type=task_type)
            except Exception as local_exc:
                raise EmbeddingProviderError(
                    f"Remote and local embedding both failed: {local_exc}"
                ) from local_exc
        self.last_state = ProviderState.REMOTE_CONFIGURED
        return vectors

    def _remote_failed(self, exc: BaseException) -> None:
        self.last_state = ProviderState.REMOTE_FAILED
        logger.warning(
            "Remote embedding via %s failed (%s: %s); using %s for this call",
            self.remote.name,
            type(exc).__name__,
            exc,
            self.local.name,
        )
        self.fallback_count += 1
        self.last_state = ProviderState.LOCAL_FALLBACK


def build_embedding_provider(
    *,
    api_key: str | None = None,
    model: str | None = None,
    dim: int | None = None,
    timeout: float = _DEFAULT_TIMEOUT,
    local_only: bool = False,
) -> EmbeddingProvider:
    """Remote-with-fallback when a GenAI key is available, local otherwise."""
    resolved_dim = dim or int(os.getenv("CHAT_RECALL_EMBEDDING_DIM", str(_DEFAULT_DIM)))
    resolved_key = api_key or os.getenv("GOOGLE_API_KEY")
    if local_only or not resolved_key:
        logger.info("Using local embeddings (%d dimensions)", resolved_dim)
        return LocalEmbeddingProvider(resolved_dim)
    remote = GenAIEmbeddingProvider(api_key=resolved_key, model=model, dim=resolved_dim)
    return FallbackEmbeddingProvider(remote, timeout=timeout)
