"""Tests for configuration resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from chat_recall.config import EngineConfig, resolve_db_path


def test_from_env_coerces_values_by_field_type(monkeypatch) -> None:
    monkeypatch.setenv("CHAT_RECALL_BUCKET_THRESHOLD", "500")
    monkeypatch.setenv("CHAT_RECALL_SEMANTIC_BOOST", "1.5")
    monkeypatch.setenv("CHAT_RECALL_FUSION_POLICY", "max")
    monkeypatch.setenv("CHAT_RECALL_BATCH_SIZE", "  ")

    config = EngineConfig.from_env(similarity_threshold=0.5)

    assert config.bucket_threshold == 500
    assert config.semantic_boost == pytest.approx(1.5)
    assert config.fusion_policy == "max"
    assert config.batch_size == 50
    assert config.similarity_threshold == pytest.approx(0.5)


def test_explicit_overrides_win_over_environment(monkeypatch) -> None:
    monkeypatch.setenv("CHAT_RECALL_BATCH_SIZE", "10")

    assert EngineConfig.from_env(batch_size=7).batch_size == 7
    assert EngineConfig.from_env(batch_size=None).batch_size == 10


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        EngineConfig(semantic_boost=1.0)
    with pytest.raises(ValueError):
        EngineConfig(signature_bits=65)


def test_resolve_db_path_precedence(tmp_path: Path, monkeypatch) -> None:
    env_path = tmp_path / "env" / "index.duckdb"
    monkeypatch.setenv("CHAT_RECALL_DB_PATH", str(env_path))

    assert resolve_db_path() == str(env_path.resolve())
    assert env_path.parent.is_dir()

    override = tmp_path / "override.duckdb"
    assert resolve_db_path(str(override)) == str(override.resolve())
