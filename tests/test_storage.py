"""Tests for DuckDB persistence and the message store."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from chat_recall.errors import StorageError
from chat_recall.search import SearchFilters
from chat_recall.storage import (
    BucketAssignment,
    DuckDBMessageStore,
    DuckDBStorage,
    EmbeddingRecord,
    ProjectionState,
    SearchStatRecord,
)
from chat_recall.storage.duckdb import (
    decode_signature,
    decode_vector,
    encode_signature,
    encode_vector,
)


def _record(identifier: str, values: list[float], digest: str = "h1") -> EmbeddingRecord:
    vector = np.asarray(values, dtype=np.float64)
    return EmbeddingRecord(
        identifier=identifier,
        vector=vector,
        norm=float(np.linalg.norm(vector)),
        source_version_hash=digest,
        metadata={"role": "user", "source": "support"},
    )


def test_vector_and_signature_encoding() -> None:
    vector = np.array([0.1, -2.5, 3.0e-12])
    assert np.array_equal(decode_vector(encode_vector(vector)), vector)
    assert len(encode_signature(0xBEEF)) == 8
    assert decode_signature(encode_signature(2**63 + 5)) == 2**63 + 5


def test_write_and_load_embeddings(storage: DuckDBStorage) -> None:
    storage.write_embeddings(
        [_record("a", [1.0, 0.0]), _record("b", [0.0, 2.0])],
        [BucketAssignment(bucket_id="1", identifier="a", signature=1, generation=0)],
    )

    loaded = storage.load_embeddings()
    assert [record.identifier for record in loaded] == ["a", "b"]
    assert loaded[1].norm == pytest.approx(2.0)
    assert loaded[0].metadata == {"role": "user", "source": "support"}
    assert storage.get_indexed_hashes() == {"a": "h1", "b": "h1"}
    assert storage.count_embeddings() == 2
    assert storage.load_bucket_assignments()[0].identifier == "a"


def test_update_keeps_created_at(storage: DuckDBStorage) -> None:
    storage.write_embeddings([_record("a", [1.0, 0.0])], [])
    created = storage.get_embedding("a").created_at

    storage.write_embeddings([_record("a", [0.0, 1.0], digest="h2")], [])

    updated = storage.get_embedding("a")
    assert updated.created_at == created
    assert updated.source_version_hash == "h2"
    assert updated.vector.tolist() == [0.0, 1.0]


def test_delete_removes_bucket_assignment(storage: DuckDBStorage) -> None:
    storage.write_embeddings(
        [_record("a", [1.0, 0.0])],
        [BucketAssignment(bucket_id="1", identifier="a", signature=1, generation=0)],
    )

    assert storage.delete_embedding("a")
    assert not storage.delete_embedding("a")
    assert storage.get_embedding("a") is None
    assert storage.load_bucket_assignments() == []


def test_projection_is_written_with_first_embeddings(tmp_path: Path) -> None:
    path = str(tmp_path / "projection.duckdb")
    matrix = np.arange(6, dtype=np.float64).reshape(3, 2)
    store = DuckDBStorage(path)
    store.write_embeddings(
        [_record("a", [1.0, 0.0])],
        [],
        ProjectionState(seed=7, bits=3, dimension=2, matrix=matrix),
    )
    store.replace_bucket_assignments([], generation=4)
    store.close()

    reopened = DuckDBStorage(path)
    projection = reopened.load_projection()
    reopened.close()

    assert projection is not None
    assert (projection.seed, projection.bits, projection.dimension) == (7, 3, 2)
    assert projection.generation == 4
    assert np.array_equal(projection.matrix, matrix)


def test_failed_transaction_rolls_back(storage: DuckDBStorage) -> None:
    storage.write_embeddings([_record("a", [1.0, 0.0])], [])
    with pytest.raises(StorageError):
        with storage.transaction() as cur:
            cur.execute("DELETE FROM embeddings")
            cur.execute("SELECT * FROM missing_table")
    assert storage.count_embeddings() == 1


def test_search_stats_summary(storage: DuckDBStorage) -> None:
    storage.record_search_stat(
        SearchStatRecord(query_hash="q1", search_mode="semantic", result_count=2, latency_ms=4.0)
    )
    storage.record_search_stat(
        SearchStatRecord(
            query_hash="q1",
            search_mode="semantic",
            result_count=2,
            latency_ms=2.0,
            cache_hit=True,
        )
    )

    summary = storage.search_stats_summary()

    assert summary["total_searches"] == 2
    assert summary["avg_latency_ms"] == pytest.approx(3.0)
    assert summary["cache_hits"] == 1
    assert summary["by_mode"] == {"semantic": 2}


def test_lexical_search_scores_term_overlap(messages: DuckDBMessageStore) -> None:
    hits = messages.lexical_search("refund money")

    assert [hit.identifier for hit in hits] == ["m2", "m1"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[1].score == pytest.approx(0.5)
    assert hits[1].matched_by == "lexical"


def test_lexical_search_applies_filters_and_limit(messages: DuckDBMessageStore) -> None:
    filtered = messages.lexical_search("refund", SearchFilters(roles=("user",)))
    assert [hit.identifier for hit in filtered] == ["m1"]

    assert len(messages.lexical_search("refund", limit=1)) == 1
    assert messages.lexical_search("!!") == []


def test_message_store_hydration(messages: DuckDBMessageStore) -> None:
    items = messages.get_items(["m1", "missing", "m3"])

    assert set(items) == {"m1", "m3"}
    assert items["m3"].category == "shipping"
    assert messages.get_item("m5").category is None
    assert [item.identifier for item in messages.list_items()][0] == "m5"
