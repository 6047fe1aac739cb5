"""Relational store access for work notes, persons and departments.

The sync engine only reads records and writes ``embedded_at`` through the
guarded update; the mutation methods exist so callers (and tests) can keep the
FTS5 tables in step with the source rows.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

from notesync.db.connection import connection_lock
from notesync.db.models import (
    Department,
    Person,
    RecordSnapshot,
    SearchFilters,
    WorkNote,
)

# Keyset cursor over work notes: (created_at, work_id) of the last row seen.
PageCursor = tuple[str, str]

_SNAPSHOT_COLUMNS = """
    wn.work_id, wn.title, wn.content_raw, wn.category,
    wn.created_at, wn.updated_at, wn.embedded_at,
    wnp.person_id, p.current_dept
"""


def utc_now() -> str:
    """Current UTC time as a fixed-width ISO 8601 string (sorts lexically)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class WorkNoteRepository:
    """Data access layer for the source-of-truth tables.

    Wraps an open connection (see notesync.db.connection.Database). The
    connection is owned by the caller and must be closed after use. Every
    method holds the connection lock for its statements only.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Work notes
    # ------------------------------------------------------------------

    def save_work_note(self, note: WorkNote) -> WorkNote:
        """Insert or update *note*, bump ``updated_at`` and mark it unembedded.

        Returns:
            The stored WorkNote with its timestamps filled in.
        """
        with connection_lock(self._conn):
            existing = self._conn.execute(
                "SELECT created_at, updated_at FROM work_notes WHERE work_id = ?",
                (note.work_id,),
            ).fetchone()
            if existing is None:
                created_at = note.created_at or utc_now()
                updated_at = created_at
                self._conn.execute(
                    """
                    INSERT INTO work_notes
                        (work_id, title, content_raw, category, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (note.work_id, note.title, note.content_raw, note.category,
                     created_at, updated_at),
                )
            else:
                created_at = existing["created_at"]
                updated_at = _next_timestamp(existing["updated_at"])
                self._conn.execute(
                    """
                    UPDATE work_notes
                    SET title = ?, content_raw = ?, category = ?,
                        updated_at = ?, embedded_at = NULL
                    WHERE work_id = ?
                    """,
                    (note.title, note.content_raw, note.category, updated_at, note.work_id),
                )
            # Keep FTS5 in sync explicitly
            self._conn.execute("DELETE FROM notes_fts WHERE work_id = ?", (note.work_id,))
            self._conn.execute(
                "INSERT INTO notes_fts (work_id, title, content_raw) VALUES (?, ?, ?)",
                (note.work_id, note.title, note.content_raw),
            )
            self._conn.commit()

        return WorkNote(
            work_id=note.work_id,
            title=note.title,
            content_raw=note.content_raw,
            category=note.category,
            created_at=created_at,
            updated_at=updated_at,
            embedded_at=None,
        )

    def get_work_note(self, work_id: str) -> WorkNote | None:
        """Return a work note by ID, or None if not found."""
        with connection_lock(self._conn):
            row = self._conn.execute(
                """
                SELECT work_id, title, content_raw, category, created_at, updated_at, embedded_at
                FROM work_notes WHERE work_id = ?
                """,
                (work_id,),
            ).fetchone()
        return _row_to_work_note(row) if row else None

    def delete_work_note(self, work_id: str) -> bool:
        """Delete a work note, its person links and FTS entry. Returns True if it existed."""
        with connection_lock(self._conn):
            cur = self._conn.execute("DELETE FROM work_notes WHERE work_id = ?", (work_id,))
            self._conn.execute("DELETE FROM notes_fts WHERE work_id = ?", (work_id,))
            self._conn.commit()
        return cur.rowcount > 0

    def count_work_notes(self) -> int:
        with connection_lock(self._conn):
            return self._conn.execute("SELECT COUNT(*) FROM work_notes").fetchone()[0]

    # ------------------------------------------------------------------
    # Persons / departments
    # ------------------------------------------------------------------

    def save_person(self, person: Person) -> Person:
        """Insert or replace a person and refresh its FTS entry."""
        updated_at = utc_now()
        with connection_lock(self._conn):
            self._conn.execute(
                """
                INSERT INTO persons
                    (person_id, name, current_dept, current_position, phone_ext,
                     employment_status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(person_id) DO UPDATE SET
                    name = excluded.name,
                    current_dept = excluded.current_dept,
                    current_position = excluded.current_position,
                    phone_ext = excluded.phone_ext,
                    employment_status = excluded.employment_status,
                    updated_at = excluded.updated_at
                """,
                (person.person_id, person.name, person.current_dept, person.current_position,
                 person.phone_ext, person.employment_status, updated_at),
            )
            self._conn.execute("DELETE FROM persons_fts WHERE person_id = ?", (person.person_id,))
            self._conn.execute(
                """
                INSERT INTO persons_fts (person_id, name, current_dept, current_position)
                VALUES (?, ?, ?, ?)
                """,
                (person.person_id, person.name, person.current_dept or "",
                 person.current_position or ""),
            )
            self._conn.commit()
        return Person(**{**person.__dict__, "updated_at": updated_at})

    def get_person(self, person_id: str) -> Person | None:
        with connection_lock(self._conn):
            row = self._conn.execute(
                """
                SELECT person_id, name, current_dept, current_position, phone_ext,
                       employment_status, updated_at
                FROM persons WHERE person_id = ?
                """,
                (person_id,),
            ).fetchone()
        return Person(**dict(row)) if row else None

    def save_department(self, dept: Department) -> Department:
        """Insert or replace a department and refresh its FTS entry."""
        updated_at = utc_now()
        with connection_lock(self._conn):
            self._conn.execute(
                """
                INSERT INTO departments (dept_name, description, is_active, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(dept_name) DO UPDATE SET
                    description = excluded.description,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (dept.dept_name, dept.description, int(dept.is_active), updated_at),
            )
            self._conn.execute("DELETE FROM departments_fts WHERE dept_key = ?", (dept.dept_name,))
            self._conn.execute(
                "INSERT INTO departments_fts (dept_key, dept_name, description) VALUES (?, ?, ?)",
                (dept.dept_name, dept.dept_name, dept.description),
            )
            self._conn.commit()
        return Department(
            dept_name=dept.dept_name,
            description=dept.description,
            is_active=dept.is_active,
            updated_at=updated_at,
        )

    def get_department(self, dept_name: str) -> Department | None:
        with connection_lock(self._conn):
            row = self._conn.execute(
                "SELECT dept_name, description, is_active, updated_at FROM departments "
                "WHERE dept_name = ?",
                (dept_name,),
            ).fetchone()
        if row is None:
            return None
        return Department(
            dept_name=row["dept_name"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            updated_at=row["updated_at"],
        )

    def link_person(self, work_id: str, person_id: str) -> None:
        """Associate a person with a work note (idempotent)."""
        with connection_lock(self._conn):
            self._conn.execute(
                "INSERT OR IGNORE INTO work_note_person (work_id, person_id) VALUES (?, ?)",
                (work_id, person_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Snapshots for the embedding processor
    # ------------------------------------------------------------------

    def get_record_snapshot(self, work_id: str) -> RecordSnapshot | None:
        """Return the current snapshot of *work_id* (including ``updated_at``), or None."""
        return self.get_record_snapshots_batch([work_id]).get(work_id)

    def get_record_snapshots_batch(self, work_ids: list[str]) -> dict[str, RecordSnapshot]:
        """Fetch snapshots for all *work_ids* in one query (no per-record round trips).

        Missing ids are simply absent from the returned mapping. ``dept_name``
        is the current department of the first linked person (by person_id).
        """
        if not work_ids:
            return {}
        placeholders = ",".join("?" * len(work_ids))
        with connection_lock(self._conn):
            rows = self._conn.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM work_notes wn
                LEFT JOIN work_note_person wnp ON wnp.work_id = wn.work_id
                LEFT JOIN persons p ON p.person_id = wnp.person_id
                WHERE wn.work_id IN ({placeholders})
                ORDER BY wn.work_id, wnp.person_id
                """,  # noqa: S608
                list(work_ids),
            ).fetchall()

        grouped: dict[str, list[sqlite3.Row]] = {}
        for row in rows:
            grouped.setdefault(row["work_id"], []).append(row)

        snapshots: dict[str, RecordSnapshot] = {}
        for work_id, group in grouped.items():
            first = group[0]
            person_rows = [r for r in group if r["person_id"] is not None]
            snapshots[work_id] = RecordSnapshot(
                work_id=work_id,
                title=first["title"],
                content_raw=first["content_raw"],
                category=first["category"],
                created_at=first["created_at"],
                updated_at=first["updated_at"],
                embedded_at=first["embedded_at"],
                person_ids=tuple(r["person_id"] for r in person_rows),
                dept_name=person_rows[0]["current_dept"] if person_rows else None,
            )
        return snapshots

    def set_embedded_at_if_updated_at_matches(
        self, work_id: str, expected_updated_at: str, embedded_at: str
    ) -> bool:
        """Guarded update: set ``embedded_at`` only if ``updated_at`` is unchanged.

        Returns:
            True if the row was updated, False if the record changed or vanished.
        """
        with connection_lock(self._conn):
            cur = self._conn.execute(
                """
                UPDATE work_notes SET embedded_at = ?
                WHERE work_id = ? AND updated_at = ?
                """,
                (embedded_at, work_id, expected_updated_at),
            )
            self._conn.commit()
        return cur.rowcount == 1

    def list_record_ids_page(
        self, cursor: PageCursor | None, page_size: int
    ) -> tuple[list[str], PageCursor | None]:
        """Return the next page of work ids in creation order and the cursor after it.

        The returned cursor is None once a short (or empty) page is returned.
        """
        return self._page("", cursor, page_size)

    def list_pending_ids_page(
        self, cursor: PageCursor | None, page_size: int
    ) -> tuple[list[str], PageCursor | None]:
        """Like list_record_ids_page(), restricted to records with ``embedded_at IS NULL``."""
        return self._page("embedded_at IS NULL", cursor, page_size)

    def _page(
        self, condition: str, cursor: PageCursor | None, page_size: int
    ) -> tuple[list[str], PageCursor | None]:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        conditions = [condition] if condition else []
        params: list = []
        if cursor is not None:
            conditions.append("(created_at, work_id) > (?, ?)")
            params.extend(cursor)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(page_size)
        with connection_lock(self._conn):
            rows = self._conn.execute(
                f"""
                SELECT work_id, created_at FROM work_notes
                {where}
                ORDER BY created_at, work_id
                LIMIT ?
                """,  # noqa: S608
                params,
            ).fetchall()
        ids = [r["work_id"] for r in rows]
        next_cursor = (rows[-1]["created_at"], rows[-1]["work_id"]) if len(rows) == page_size else None
        return ids, next_cursor

    def get_embedding_stats(self) -> dict[str, int]:
        """Return {'total', 'embedded', 'pending'} counts over all work notes."""
        with connection_lock(self._conn):
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(embedded_at) AS embedded
                FROM work_notes
                """
            ).fetchone()
        total, embedded = row["total"], row["embedded"]
        return {"total": total, "embedded": embedded, "pending": total - embedded}

    # ------------------------------------------------------------------
    # Search support
    # ------------------------------------------------------------------

    def filter_work_note_ids(
        self, work_ids: list[str], filters: SearchFilters | None = None
    ) -> dict[str, WorkNote]:
        """Return the subset of *work_ids* that exist and pass *filters*, keyed by id."""
        if not work_ids:
            return {}
        filters = filters or SearchFilters()
        placeholders = ",".join("?" * len(work_ids))
        conditions = [f"wn.work_id IN ({placeholders})"]
        params: list = list(work_ids)
        conditions_sql, filter_params = work_note_filter_sql(filters)
        conditions.extend(conditions_sql)
        params.extend(filter_params)
        with connection_lock(self._conn):
            rows = self._conn.execute(
                f"""
                SELECT wn.work_id, wn.title, wn.content_raw, wn.category,
                       wn.created_at, wn.updated_at, wn.embedded_at
                FROM work_notes wn
                WHERE {' AND '.join(conditions)}
                """,  # noqa: S608
                params,
            ).fetchall()
        return {r["work_id"]: _row_to_work_note(r) for r in rows}


# ------------------------------------------------------------------
# Shared SQL helpers
# ------------------------------------------------------------------


def work_note_filter_sql(filters: SearchFilters) -> tuple[list[str], list]:
    """Translate *filters* into WHERE fragments over alias ``wn``.

    Person and department filters use EXISTS sub-queries so a note linked to
    several matching persons is never duplicated.
    """
    conditions: list[str] = []
    params: list = []
    if filters.category:
        conditions.append("wn.category = ?")
        params.append(filters.category)
    if filters.date_from:
        conditions.append("wn.created_at >= ?")
        params.append(filters.date_from)
    if filters.date_to:
        conditions.append("substr(wn.created_at, 1, length(?)) <= ?")
        params.extend([filters.date_to, filters.date_to])
    if filters.person_id:
        conditions.append(
            "EXISTS (SELECT 1 FROM work_note_person f1 "
            "WHERE f1.work_id = wn.work_id AND f1.person_id = ?)"
        )
        params.append(filters.person_id)
    if filters.dept_name:
        conditions.append(
            "EXISTS (SELECT 1 FROM work_note_person f2 "
            "JOIN persons fp ON fp.person_id = f2.person_id "
            "WHERE f2.work_id = wn.work_id AND fp.current_dept = ?)"
        )
        params.append(filters.dept_name)
    return conditions, params


def _next_timestamp(previous: str) -> str:
    """Return now, or 1µs after *previous* if the clock has not advanced past it."""
    now = utc_now()
    if now > previous:
        return now
    bumped = datetime.fromisoformat(previous) + timedelta(microseconds=1)
    return bumped.isoformat(timespec="microseconds")


def _row_to_work_note(row: sqlite3.Row) -> WorkNote:
    return WorkNote(
        work_id=row["work_id"],
        title=row["title"],
        content_raw=row["content_raw"],
        category=row["category"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        embedded_at=row["embedded_at"],
    )
