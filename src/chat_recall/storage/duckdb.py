"""
DuckDB storage backend for index and cache persistence.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

import duckdb
import numpy as np

from ..errors import StorageError
from .base import (
    BucketAssignment,
    EmbeddingRecord,
    ProjectionState,
    QueryEmbeddingCacheEntry,
    ResultCacheEntry,
    SearchStatRecord,
)

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


def encode_vector(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype="<f8").tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f8").astype(np.float64)


def encode_signature(signature: int) -> bytes:
    return int(signature).to_bytes(8, "big")


def decode_signature(blob: bytes) -> int:
    return int.from_bytes(blob, "big")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DuckDBStorage:
    """DuckDB-backed persistence for embeddings, buckets, caches and statistics.

    Each operation runs on its own cursor so that calls issued from worker
    threads (``asyncio.to_thread``) never share a connection handle.
    """

    def __init__(
        self,
        db_path: str,
        *,
        read_only: bool = False,
        initialize: bool = True,
    ) -> None:
        if db_path == IN_MEMORY:
            self.db_path = IN_MEMORY
        else:
            self.db_path = str(Path(db_path).expanduser().resolve())
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.read_only = read_only
        self._conn = duckdb.connect(self.db_path, read_only=read_only)
        if initialize and not read_only:
            self.initialize()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self._conn.close()

    @contextmanager
    def cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        try:
            cur = self._conn.cursor()
        except duckdb.Error as exc:
            raise StorageError(f"Failed to open cursor on {self.db_path}: {exc}") from exc
        try:
            yield cur
        except duckdb.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self.cursor() as cur:
            cur.begin()
            try:
                yield cur
            except BaseException:
                cur.rollback()
                raise
            cur.commit()

    def initialize(self) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS embeddings (
                    identifier VARCHAR PRIMARY KEY,
                    vector BLOB NOT NULL,
                    norm DOUBLE NOT NULL,
                    dimension INTEGER NOT NULL,
                    source_version_hash VARCHAR NOT NULL DEFAULT '',
                    metadata_json VARCHAR NOT NULL DEFAULT '{}',
                    created_at VARCHAR NOT NULL,
                    updated_at VARCHAR NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS bucket_assignments (
                    identifier VARCHAR NOT NULL,
                    bucket_id VARCHAR NOT NULL,
                    signature BLOB NOT NULL,
                    generation INTEGER NOT NULL
                );
                """
            )
            # No unique key on identifier: assignments are deleted and reinserted
            # within one transaction, which DuckDB's unique indexes reject.
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_bucket_id ON bucket_assignments(bucket_id);"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS index_projection (
                    id INTEGER PRIMARY KEY,
                    seed BIGINT NOT NULL,
                    bits INTEGER NOT NULL,
                    dimension INTEGER NOT NULL,
                    matrix BLOB NOT NULL,
                    generation INTEGER NOT NULL DEFAULT 0,
                    created_at VARCHAR NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS query_embedding_cache (
                    query_hash VARCHAR NOT NULL,
                    provider_name VARCHAR NOT NULL,
                    query_text VARCHAR NOT NULL,
                    vector BLOB NOT NULL,
                    created_at DOUBLE NOT NULL,
                    last_accessed DOUBLE NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (query_hash, provider_name)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS result_cache (
                    query_hash VARCHAR PRIMARY KEY,
                    query_text VARCHAR NOT NULL DEFAULT '',
                    search_mode VARCHAR NOT NULL,
                    result_set BLOB NOT NULL,
                    result_count INTEGER NOT NULL,
                    latency_ms DOUBLE NOT NULL,
                    created_at DOUBLE NOT NULL,
                    last_accessed DOUBLE NOT NULL,
                    access_count INTEGER NOT NULL,
                    ttl DOUBLE NOT NULL,
                    tags_json VARCHAR NOT NULL DEFAULT '[]',
                    identifiers_json VARCHAR NOT NULL DEFAULT '[]'
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS search_stats (
                    created_at VARCHAR NOT NULL,
                    query_hash VARCHAR NOT NULL,
                    search_mode VARCHAR NOT NULL,
                    result_count INTEGER NOT NULL,
                    latency_ms DOUBLE NOT NULL,
                    embedding_ms DOUBLE NOT NULL,
                    vector_ms DOUBLE NOT NULL,
                    cache_hit BOOLEAN NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_stats (
                    created_at VARCHAR NOT NULL,
                    cache_hits BIGINT NOT NULL,
                    cache_misses BIGINT NOT NULL,
                    entries INTEGER NOT NULL,
                    bytes_used BIGINT NOT NULL,
                    evictions BIGINT NOT NULL
                );
                """
            )

    def checkpoint(self) -> None:
        with self.cursor() as cur:
            cur.execute("CHECKPOINT")

    # ------------------------------------------------------------------
    # Vector index
    # ------------------------------------------------------------------

    def load_embeddings(self) -> list[EmbeddingRecord]:
        with self.cursor() as cur:
            rows = cur.execute(
                """
                SELECT identifier, vector, norm, source_version_hash, metadata_json,
                       created_at, updated_at
                FROM embeddings
                ORDER BY identifier
                """
            ).fetchall()
        return [self._row_to_embedding(row) for row in rows]

    def get_embedding(self, identifier: str) -> EmbeddingRecord | None:
        with self.cursor() as cur:
            row = cur.execute(
                """
                SELECT identifier, vector, norm, source_version_hash, metadata_json,
                       created_at, updated_at
                FROM embeddings
                WHERE identifier = ?
                """,
                [identifier],
            ).fetchone()
        if row is None:
            return None
        return self._row_to_embedding(row)

    def load_bucket_assignments(self) -> list[BucketAssignment]:
        with self.cursor() as cur:
            rows = cur.execute(
                "SELECT bucket_id, identifier, signature, generation FROM bucket_assignments"
            ).fetchall()
        return [
            BucketAssignment(
                bucket_id=str(row[0]),
                identifier=str(row[1]),
                signature=decode_signature(row[2]),
                generation=int(row[3]),
            )
            for row in rows
        ]

    def write_embeddings(
        self,
        records: list[EmbeddingRecord],
        assignments: list[BucketAssignment],
        projection: ProjectionState | None = None,
    ) -> None:
        if not records:
            return
        now = _utc_now()
        with self.transaction() as cur:
            if projection is not None:
                self._upsert_projection(cur, projection)
            cur.executemany(
                """
                INSERT INTO embeddings (
                    identifier, vector, norm, dimension, source_version_hash,
                    metadata_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identifier) DO UPDATE SET
                    vector = excluded.vector,
                    norm = excluded.norm,
                    dimension = excluded.dimension,
                    source_version_hash = excluded.source_version_hash,
                    metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        record.identifier,
                        encode_vector(record.vector),
                        float(record.norm),
                        int(record.vector.shape[0]),
                        record.source_version_hash,
                        json.dumps(record.metadata, sort_keys=True, default=str),
                        record.created_at or now,
                        record.updated_at or now,
                    )
                    for record in records
                ],
            )
            identifiers = [record.identifier for record in records]
            self._delete_assignments(cur, identifiers)
            if assignments:
                self._insert_assignments(cur, assignments)

    def delete_embedding(self, identifier: str) -> bool:
        with self.transaction() as cur:
            row = cur.execute(
                "SELECT COUNT(*) FROM embeddings WHERE identifier = ?", [identifier]
            ).fetchone()
            cur.execute("DELETE FROM bucket_assignments WHERE identifier = ?", [identifier])
            cur.execute("DELETE FROM embeddings WHERE identifier = ?", [identifier])
        return bool(row and int(row[0]) > 0)

    def replace_bucket_assignments(
        self, assignments: list[BucketAssignment], *, generation: int
    ) -> None:
        with self.transaction() as cur:
            cur.execute("DELETE FROM bucket_assignments")
            if assignments:
                self._insert_assignments(cur, assignments)
            cur.execute("UPDATE index_projection SET generation = ?", [generation])

    def get_indexed_hashes(self) -> dict[str, str]:
        with self.cursor() as cur:
            rows = cur.execute(
                "SELECT identifier, source_version_hash FROM embeddings"
            ).fetchall()
        return {str(row[0]): str(row[1]) for row in rows}

    def load_projection(self) -> ProjectionState | None:
        with self.cursor() as cur:
            row = cur.execute(
                "SELECT seed, bits, dimension, matrix, generation FROM index_projection WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        bits = int(row[1])
        dimension = int(row[2])
        matrix = decode_vector(row[3]).reshape(bits, dimension)
        return ProjectionState(
            seed=int(row[0]),
            bits=bits,
            dimension=dimension,
            matrix=matrix,
            generation=int(row[4]),
        )

    def save_projection(self, projection: ProjectionState) -> None:
        with self.cursor() as cur:
            self._upsert_projection(cur, projection)

    @staticmethod
    def _upsert_projection(cur: duckdb.DuckDBPyConnection, projection: ProjectionState) -> None:
        cur.execute(
            """
            INSERT INTO index_projection (id, seed, bits, dimension, matrix, generation, created_at)
            VALUES (1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET generation = excluded.generation
            """,
            [
                projection.seed,
                projection.bits,
                projection.dimension,
                encode_vector(projection.matrix.reshape(-1)),
                projection.generation,
                _utc_now(),
            ],
        )

    def count_embeddings(self) -> int:
        with self.cursor() as cur:
            row = cur.execute("SELECT COUNT(*) FROM embeddings").fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Query embedding cache
    # ------------------------------------------------------------------

    def get_query_embedding(
        self, query_hash: str, provider_name: str
    ) -> QueryEmbeddingCacheEntry | None:
        with self.cursor() as cur:
            row = cur.execute(
                """
                SELECT query_hash, query_text, vector, provider_name, created_at,
                       last_accessed, access_count
                FROM query_embedding_cache
                WHERE query_hash = ? AND provider_name = ?
                """,
                [query_hash, provider_name],
            ).fetchone()
        if row is None:
            return None
        return QueryEmbeddingCacheEntry(
            query_hash=str(row[0]),
            query_text=str(row[1]),
            vector=decode_vector(row[2]),
            provider_name=str(row[3]),
            created_at=float(row[4]),
            last_accessed=float(row[5]),
            access_count=int(row[6]),
        )

    def put_query_embedding(self, entry: QueryEmbeddingCacheEntry) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO query_embedding_cache (
                    query_hash, provider_name, query_text, vector, created_at,
                    last_accessed, access_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(query_hash, provider_name) DO UPDATE SET
                    query_text = excluded.query_text,
                    vector = excluded.vector,
                    created_at = excluded.created_at,
                    last_accessed = excluded.last_accessed,
                    access_count = excluded.access_count
                """,
                [
                    entry.query_hash,
                    entry.provider_name,
                    entry.query_text,
                    encode_vector(entry.vector),
                    entry.created_at,
                    entry.last_accessed,
                    entry.access_count,
                ],
            )

    def touch_query_embedding(
        self, query_hash: str, provider_name: str, accessed_at: float
    ) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE query_embedding_cache
                SET access_count = access_count + 1, last_accessed = ?
                WHERE query_hash = ? AND provider_name = ?
                """,
                [accessed_at, query_hash, provider_name],
            )

    def purge_query_embeddings(self, *, expires_before: float, retain_before: float) -> int:
        where = "created_at < ? OR (access_count <= 1 AND created_at < ?)"
        with self.transaction() as cur:
            row = cur.execute(
                f"SELECT COUNT(*) FROM query_embedding_cache WHERE {where}",
                [expires_before, retain_before],
            ).fetchone()
            cur.execute(
                f"DELETE FROM query_embedding_cache WHERE {where}",
                [expires_before, retain_before],
            )
        return int(row[0]) if row else 0

    def clear_query_embeddings(self) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM query_embedding_cache")

    # ------------------------------------------------------------------
    # Result cache
    # ------------------------------------------------------------------

    _RESULT_COLUMNS = """
        query_hash, query_text, search_mode, result_set, result_count, latency_ms,
        created_at, last_accessed, access_count, ttl, tags_json, identifiers_json
    """

    def get_result_entry(self, query_hash: str) -> ResultCacheEntry | None:
        with self.cursor() as cur:
            row = cur.execute(
                f"SELECT {self._RESULT_COLUMNS} FROM result_cache WHERE query_hash = ?",
                [query_hash],
            ).fetchone()
        if row is None:
            return None
        return self._row_to_result_entry(row)

    def put_result_entry(self, entry: ResultCacheEntry) -> None:
        with self.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO result_cache ({self._RESULT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(query_hash) DO UPDATE SET
                    query_text = excluded.query_text,
                    search_mode = excluded.search_mode,
                    result_set = excluded.result_set,
                    result_count = excluded.result_count,
                    latency_ms = excluded.latency_ms,
                    created_at = excluded.created_at,
                    last_accessed = excluded.last_accessed,
                    access_count = excluded.access_count,
                    ttl = excluded.ttl,
                    tags_json = excluded.tags_json,
                    identifiers_json = excluded.identifiers_json
                """,
                [
                    entry.query_hash,
                    entry.query_text,
                    entry.search_mode,
                    entry.result_set.encode("utf-8"),
                    entry.result_count,
                    entry.latency_ms,
                    entry.created_at,
                    entry.last_accessed,
                    entry.access_count,
                    entry.ttl,
                    json.dumps(list(entry.tags)),
                    json.dumps(list(entry.identifiers)),
                ],
            )

    def touch_result_entry(
        self, query_hash: str, *, access_count: int, accessed_at: float
    ) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE result_cache
                SET access_count = ?, last_accessed = ?
                WHERE query_hash = ?
                """,
                [access_count, accessed_at, query_hash],
            )

    def list_result_entries(self) -> list[ResultCacheEntry]:
        with self.cursor() as cur:
            rows = cur.execute(
                f"SELECT {self._RESULT_COLUMNS} FROM result_cache ORDER BY query_hash"
            ).fetchall()
        return [self._row_to_result_entry(row) for row in rows]

    def delete_result_entries(self, query_hashes: Iterable[str]) -> int:
        hashes = sorted(set(query_hashes))
        if not hashes:
            return 0
        placeholders = ", ".join(["?"] * len(hashes))
        with self.transaction() as cur:
            row = cur.execute(
                f"SELECT COUNT(*) FROM result_cache WHERE query_hash IN ({placeholders})",
                hashes,
            ).fetchone()
            cur.execute(
                f"DELETE FROM result_cache WHERE query_hash IN ({placeholders})",
                hashes,
            )
        return int(row[0]) if row else 0

    def clear_result_entries(self) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM result_cache")

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def record_search_stat(self, record: SearchStatRecord) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO search_stats (
                    created_at, query_hash, search_mode, result_count, latency_ms,
                    embedding_ms, vector_ms, cache_hit
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    _utc_now(),
                    record.query_hash,
                    record.search_mode,
                    record.result_count,
                    record.latency_ms,
                    record.embedding_ms,
                    record.vector_ms,
                    record.cache_hit,
                ],
            )

    def record_cache_stats(
        self, *, hits: int, misses: int, entries: int, bytes_used: int, evictions: int
    ) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO cache_stats (
                    created_at, cache_hits, cache_misses, entries, bytes_used, evictions
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [_utc_now(), hits, misses, entries, bytes_used, evictions],
            )

    def search_stats_summary(self) -> dict[str, Any]:
        with self.cursor() as cur:
            row = cur.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(AVG(latency_ms), 0),
                    COALESCE(SUM(CASE WHEN cache_hit THEN 1 ELSE 0 END), 0)
                FROM search_stats
                """
            ).fetchone()
            modes = cur.execute(
                """
                SELECT search_mode, COUNT(*)
                FROM search_stats
                GROUP BY search_mode
                ORDER BY search_mode
                """
            ).fetchall()
        total = int(row[0]) if row else 0
        return {
            "total_searches": total,
            "avg_latency_ms": float(row[1]) if row else 0.0,
            "cache_hits": int(row[2]) if row else 0,
            "by_mode": {str(mode): int(count) for mode, count in modes},
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _delete_assignments(cur: duckdb.DuckDBPyConnection, identifiers: list[str]) -> None:
        if not identifiers:
            return
        placeholders = ", ".join(["?"] * len(identifiers))
        cur.execute(
            f"DELETE FROM bucket_assignments WHERE identifier IN ({placeholders})",
            identifiers,
        )

    @staticmethod
    def _insert_assignments(
        cur: duckdb.DuckDBPyConnection, assignments: list[BucketAssignment]
    ) -> None:
        cur.executemany(
            """
            INSERT INTO bucket_assignments (identifier, bucket_id, signature, generation)
            VALUES (?, ?, ?, ?)
            """,
            [
                (
                    assignment.identifier,
                    assignment.bucket_id,
                    encode_signature(assignment.signature),
                    assignment.generation,
                )
                for assignment in assignments
            ],
        )

    @staticmethod
    def _row_to_embedding(row: tuple[Any, ...]) -> EmbeddingRecord:
        return EmbeddingRecord(
            identifier=str(row[0]),
            vector=decode_vector(row[1]),
            norm=float(row[2]),
            source_version_hash=str(row[3]),
            metadata=json.loads(str(row[4])),
            created_at=str(row[5]),
            updated_at=str(row[6]),
        )

    @staticmethod
    def _row_to_result_entry(row: tuple[Any, ...]) -> ResultCacheEntry:
        raw_results = row[3]
        if isinstance(raw_results, (bytes, bytearray, memoryview)):
            raw_results = bytes(raw_results).decode("utf-8")
        return ResultCacheEntry(
            query_hash=str(row[0]),
            query_text=str(row[1]),
            search_mode=str(row[2]),
            result_set=str(raw_results),
            result_count=int(row[4]),
            latency_ms=float(row[5]),
            created_at=float(row[6]),
            last_accessed=float(row[7]),
            access_count=int(row[8]),
            ttl=float(row[9]),
            tags=tuple(json.loads(str(row[10]))),
            identifiers=tuple(json.loads(str(row[11]))),
        )
