"""Forward-only migration runner for the notesync database schema.

Vec tables (vec_chunks_*) and their chunk maps are NOT migration-managed,
use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS work_notes (
    work_id         TEXT PRIMARY KEY,
    title           TEXT NOT NULL,
    content_raw     TEXT NOT NULL DEFAULT '',
    category        TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    embedded_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_work_notes_created
ON work_notes(created_at, work_id);

CREATE INDEX IF NOT EXISTS idx_work_notes_pending
ON work_notes(created_at, work_id) WHERE embedded_at IS NULL;

CREATE TABLE IF NOT EXISTS persons (
    person_id         TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    current_dept      TEXT,
    current_position  TEXT,
    phone_ext         TEXT,
    employment_status TEXT NOT NULL DEFAULT 'active',
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS departments (
    dept_name       TEXT PRIMARY KEY,
    description     TEXT NOT NULL DEFAULT '',
    is_active       INTEGER NOT NULL DEFAULT 1,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_note_person (
    work_id         TEXT NOT NULL REFERENCES work_notes(work_id) ON DELETE CASCADE,
    person_id       TEXT NOT NULL REFERENCES persons(person_id) ON DELETE CASCADE,
    PRIMARY KEY (work_id, person_id)
);

CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts
USING fts5(work_id UNINDEXED, title, content_raw, tokenize='trigram');

CREATE VIRTUAL TABLE IF NOT EXISTS persons_fts
USING fts5(person_id UNINDEXED, name, current_dept, current_position, tokenize='trigram');

CREATE VIRTUAL TABLE IF NOT EXISTS departments_fts
USING fts5(dept_key UNINDEXED, dept_name, description, tokenize='trigram');
"""

# No foreign key to work_notes: 'delete' operations outlive their record.
_V2_SQL = """
CREATE TABLE IF NOT EXISTS embedding_retry_queue (
    id              TEXT PRIMARY KEY,
    work_id         TEXT NOT NULL,
    operation_type  TEXT NOT NULL CHECK (operation_type IN ('create', 'update', 'delete')),
    attempt_count   INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL DEFAULT 3,
    next_retry_at   TEXT,
    status          TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'retrying', 'dead_letter')),
    error_message   TEXT,
    error_details   TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    dead_letter_at  TEXT,
    CHECK (attempt_count <= max_attempts),
    CHECK ((status = 'dead_letter') = (next_retry_at IS NULL))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_retry_queue_active
ON embedding_retry_queue(work_id, operation_type)
WHERE status IN ('pending', 'retrying');

CREATE INDEX IF NOT EXISTS idx_retry_queue_next_retry
ON embedding_retry_queue(status, next_retry_at)
WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS idx_retry_queue_dead_letter
ON embedding_retry_queue(dead_letter_at)
WHERE status = 'dead_letter';
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here, use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 for a fresh database)."""
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ).fetchone()
    if row is None:
        return 0
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    return version or 0
