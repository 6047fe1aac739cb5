"""Vector index adapter backed by a sqlite-vec ``vec0`` table.

vec0 rows are keyed by integer rowid, so every vec table is paired with a
chunk map (see notesync.db.vectors.chunk_map_table_name) translating string
chunk ids to rowids and holding the chunk metadata used for filtering.
Upserts and deletes are idempotent, which makes at-least-once delivery from
the retry queue safe.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from notesync.db.connection import connection_lock
from notesync.db.vectors import (
    chunk_map_table_name,
    ensure_vec_table,
    model_to_slug,
    vec_table_name,
)

logger = logging.getLogger(__name__)

# Nearest-neighbour candidates fetched per requested result when a metadata
# filter is applied after the KNN scan.
_FILTER_OVERFETCH = 4


class VectorIndexError(RuntimeError):
    """The vector index rejected or failed an operation."""


@dataclass
class VectorRecord:
    """One chunk vector to write: ``id`` is the chunk id (``<workId>#chunk<N>``)."""

    id: str
    values: list[float]
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A nearest-neighbour hit. ``score`` is cosine similarity (higher is closer)."""

    id: str
    score: float
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class VectorIndex(Protocol):
    """Capability interface consumed by the processor and the search service."""

    def upsert(self, records: list[VectorRecord]) -> None:
        ...

    def query(
        self, vector: list[float], top_k: int, filter: dict | None = None
    ) -> list[VectorMatch]:
        ...

    def delete(self, ids: list[str]) -> None:
        ...

    def list_chunk_ids(self, work_id: str) -> list[str]:
        ...


class SqliteVecIndex:
    """VectorIndex over ``vec_chunks_<slug>`` and ``chunk_map_<slug>``.

    Args:
        conn: Open connection with sqlite-vec loaded (see Database.connect()).
        model: LiteLLM embedding model string; selects the per-model tables.
        dimensions: Vector length, used when the vec table is first created.
    """

    def __init__(self, conn: sqlite3.Connection, model: str, dimensions: int) -> None:
        self._conn = conn
        self.model = model
        self.dimensions = dimensions
        slug = model_to_slug(model)
        self.table = vec_table_name(slug)
        self.map_table = chunk_map_table_name(slug)
        with connection_lock(conn):
            ensure_vec_table(conn, slug, dimensions)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, records: list[VectorRecord]) -> None:
        """Insert or replace *records* in one transaction.

        vec0 has no UPDATE of the vector column, so an existing chunk keeps
        its rowid and its vector row is deleted and re-inserted.

        Raises:
            VectorIndexError: On any SQLite / sqlite-vec failure (nothing is
                written in that case).
        """
        if not records:
            return
        with connection_lock(self._conn):
            try:
                for record in records:
                    self._upsert_one(record)
                self._conn.commit()
            except (sqlite3.Error, ValueError) as exc:
                self._conn.rollback()
                raise VectorIndexError(
                    f"Vector upsert into {self.table} failed: {exc}"
                ) from exc
        logger.debug("Upserted %d vectors into %s", len(records), self.table)

    def _upsert_one(self, record: VectorRecord) -> None:
        chunk_index = int(record.metadata.get("chunk_index", 0))
        work_id = str(record.metadata.get("work_id", record.id.split("#", 1)[0]))
        metadata = json.dumps(record.metadata, sort_keys=True)
        row = self._conn.execute(
            f"SELECT vec_rowid FROM {self.map_table} WHERE chunk_id = ?",  # noqa: S608
            (record.id,),
        ).fetchone()
        if row is None:
            cur = self._conn.execute(
                f"INSERT INTO {self.map_table} (chunk_id, work_id, chunk_index, metadata) "  # noqa: S608
                "VALUES (?, ?, ?, ?)",
                (record.id, work_id, chunk_index, metadata),
            )
            vec_rowid = cur.lastrowid
        else:
            vec_rowid = row["vec_rowid"]
            self._conn.execute(
                f"UPDATE {self.map_table} SET work_id = ?, chunk_index = ?, metadata = ? "  # noqa: S608
                "WHERE vec_rowid = ?",
                (work_id, chunk_index, metadata, vec_rowid),
            )
            self._conn.execute(
                f"DELETE FROM {self.table} WHERE rowid = ?", (vec_rowid,)  # noqa: S608
            )
        self._conn.execute(
            f"INSERT INTO {self.table}(rowid, embedding) VALUES (?, ?)",  # noqa: S608
            (vec_rowid, json.dumps(record.values)),
        )

    def delete(self, ids: list[str]) -> None:
        """Delete chunk ids from the index. Absent ids are ignored.

        Raises:
            VectorIndexError: On SQLite failure.
        """
        if not ids:
            return
        placeholders = ",".join("?" * len(ids))
        with connection_lock(self._conn):
            try:
                rowids = [
                    r["vec_rowid"]
                    for r in self._conn.execute(
                        f"SELECT vec_rowid FROM {self.map_table} "  # noqa: S608
                        f"WHERE chunk_id IN ({placeholders})",
                        list(ids),
                    ).fetchall()
                ]
                if rowids:
                    rowid_placeholders = ",".join("?" * len(rowids))
                    self._conn.execute(
                        f"DELETE FROM {self.table} WHERE rowid IN ({rowid_placeholders})",  # noqa: S608
                        rowids,
                    )
                    self._conn.execute(
                        f"DELETE FROM {self.map_table} "  # noqa: S608
                        f"WHERE vec_rowid IN ({rowid_placeholders})",
                        rowids,
                    )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise VectorIndexError(f"Vector delete from {self.table} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_chunk_ids(self, work_id: str) -> list[str]:
        """Return every indexed chunk id of *work_id*, ordered by chunk index."""
        with connection_lock(self._conn):
            try:
                rows = self._conn.execute(
                    f"SELECT chunk_id FROM {self.map_table} "  # noqa: S608
                    "WHERE work_id = ? ORDER BY chunk_index",
                    (work_id,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise VectorIndexError(f"Listing chunks of {work_id} failed: {exc}") from exc
        return [r["chunk_id"] for r in rows]

    def query(
        self, vector: list[float], top_k: int, filter: dict | None = None
    ) -> list[VectorMatch]:
        """Nearest-neighbour search, best-first.

        Args:
            vector: Query embedding.
            top_k: Maximum number of matches to return.
            filter: Optional metadata equality filter (e.g. ``{"category": "ops"}``),
                applied to the KNN candidates.

        Raises:
            VectorIndexError: On SQLite / sqlite-vec failure (e.g. a vector of
                the wrong dimension).
        """
        if top_k < 1:
            return []
        filter = {k: v for k, v in (filter or {}).items() if v is not None}
        k = top_k * _FILTER_OVERFETCH if filter else top_k
        with connection_lock(self._conn):
            try:
                rows = self._conn.execute(
                    f"""
                    SELECT m.chunk_id, m.metadata, v.distance
                    FROM (
                        SELECT rowid, distance FROM {self.table}
                        WHERE embedding MATCH ? AND k = ?
                        ORDER BY distance
                    ) v
                    JOIN {self.map_table} m ON m.vec_rowid = v.rowid
                    ORDER BY v.distance, m.chunk_id
                    """,  # noqa: S608
                    (json.dumps(vector), k),
                ).fetchall()
            except sqlite3.Error as exc:
                raise VectorIndexError(f"Vector query on {self.table} failed: {exc}") from exc

        matches: list[VectorMatch] = []
        for row in rows:
            metadata = json.loads(row["metadata"] or "{}")
            if any(metadata.get(key) != value for key, value in filter.items()):
                continue
            matches.append(
                VectorMatch(id=row["chunk_id"], score=1.0 - row["distance"], metadata=metadata)
            )
            if len(matches) >= top_k:
                break
        return matches

    def count(self) -> int:
        """Number of indexed chunks."""
        with connection_lock(self._conn):
            return self._conn.execute(
                f"SELECT COUNT(*) FROM {self.map_table}"  # noqa: S608
            ).fetchone()[0]
