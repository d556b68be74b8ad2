"""
Configuration helpers for the retrieval engine.

Every setting can be overridden through a ``CHAT_RECALL_*`` environment
variable. Explicit arguments win over the environment, which wins over the
defaults below.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any


DEFAULT_DB_PATH = "~/.chat_recall/index.duckdb"
ENV_DB_PATH = "CHAT_RECALL_DB_PATH"
ENV_PREFIX = "CHAT_RECALL_"


def resolve_db_path(override_path: str | None = None) -> str:
    """
    Resolve the DuckDB path from CLI override, env var, or default.

    Precedence:
    1) explicit override_path
    2) CHAT_RECALL_DB_PATH
    3) default path
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    resolved = Path(raw_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for the vector index, caches and search engine."""

    # Vector index
    bucket_threshold: int = 10_000
    signature_bits: int = 16
    probe_radius: int = 0
    projection_seed: int = 1337
    rebuild_threshold: float = 0.1
    rebuild_chunk_size: int = 5_000

    # Semantic search
    batch_size: int = 50
    embedding_timeout: float = 30.0
    similarity_threshold: float = 0.3
    semantic_boost: float = 1.2
    fusion_policy: str = "average"
    candidate_multiplier: int = 4
    min_content_length: int = 10
    snippet_length: int = 100

    # Query embedding cache
    embedding_cache_ttl: float = 30 * 24 * 3600.0
    embedding_cache_retention: float = 7 * 24 * 3600.0
    embedding_cache_max_entries: int = 1_000
    embedding_cache_purge_interval: int = 50

    # Result cache
    result_cache_ttl: float = 30 * 60.0
    result_cache_max_bytes: int = 50 * 1024 * 1024
    result_cache_min_access_for_persistence: int = 2
    result_cache_eviction_fraction: float = 0.2

    def __post_init__(self) -> None:
        if self.semantic_boost <= 1.0:
            raise ValueError("semantic_boost must be greater than 1.0")
        if not 0.0 < self.rebuild_threshold <= 1.0:
            raise ValueError("rebuild_threshold must be in (0, 1]")
        if not 0.0 < self.result_cache_eviction_fraction <= 1.0:
            raise ValueError("result_cache_eviction_fraction must be in (0, 1]")
        if self.signature_bits < 1 or self.signature_bits > 64:
            raise ValueError("signature_bits must be between 1 and 64")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Build a config from ``CHAT_RECALL_*`` variables plus explicit overrides."""
        values: dict[str, Any] = {}
        for field in fields(cls):
            raw = os.getenv(f"{ENV_PREFIX}{field.name.upper()}")
            if raw is None or not raw.strip():
                continue
            values[field.name] = _coerce(raw.strip(), field.default)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
