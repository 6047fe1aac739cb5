"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import contextlib
import sqlite3
import threading
from pathlib import Path
from typing import ContextManager

import sqlite_vec

# Seconds SQLite waits on a locked database before raising OperationalError.
DEFAULT_BUSY_TIMEOUT = 5.0


class SyncConnection(sqlite3.Connection):
    """sqlite3 connection shared across worker threads.

    ``lock`` serialises statement groups issued by the adapters; it is held
    only for the duration of a database call, never across provider calls.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.lock = threading.RLock()


def connection_lock(conn: sqlite3.Connection) -> ContextManager:
    """Return the shared lock of *conn*, or a no-op context for plain connections."""
    lock = getattr(conn, "lock", None)
    return lock if lock is not None else contextlib.nullcontext()


class Database:
    """Per-project SQLite database with sqlite-vec vector search support."""

    def __init__(self, db_path: Path | str, timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
            timeout: Busy timeout in seconds for locked databases.
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._conn: SyncConnection | None = None

    def connect(self) -> SyncConnection:
        """Open a connection, load sqlite-vec, and return the connection."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            check_same_thread=False,
            factory=SyncConnection,
        )
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def __enter__(self) -> SyncConnection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
