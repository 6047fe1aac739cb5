"""Tests for the Database connection layer."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from notesync.db.connection import Database, SyncConnection, connection_lock


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".notesync.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    conn = Database(tmp_path / ".notesync.db").connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_enabled(tmp_path):
    conn = Database(tmp_path / ".notesync.db").connect()
    result = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    conn.close()
    assert result == 1


def test_wal_journal_mode(tmp_path):
    conn = Database(tmp_path / ".notesync.db").connect()
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_row_factory_set(tmp_path):
    conn = Database(tmp_path / ".notesync.db").connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_connection_is_shareable_across_threads(tmp_path):
    conn = Database(tmp_path / ".notesync.db").connect()
    assert isinstance(conn, SyncConnection)
    results = []

    def _worker():
        with connection_lock(conn):
            results.append(conn.execute("SELECT 1").fetchone()[0])

    thread = threading.Thread(target=_worker)
    thread.start()
    thread.join()
    conn.close()
    assert results == [1]


def test_connection_lock_is_reentrant(tmp_path):
    conn = Database(tmp_path / ".notesync.db").connect()
    with connection_lock(conn):
        with connection_lock(conn):
            assert conn.execute("SELECT 2").fetchone()[0] == 2
    conn.close()


def test_connection_lock_noop_for_plain_connection():
    import sqlite3

    conn = sqlite3.connect(":memory:")
    with connection_lock(conn):
        assert conn.execute("SELECT 3").fetchone()[0] == 3
    conn.close()


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / ".notesync.db")
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    with pytest.raises(Exception):
        conn.execute("SELECT 1")


def test_context_manager_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / ".notesync.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1
