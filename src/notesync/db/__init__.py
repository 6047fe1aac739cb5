"""notesync database layer."""

from notesync.db.connection import Database, connection_lock
from notesync.db.migrations import MIGRATIONS, run_migrations
from notesync.db.repository import WorkNoteRepository
from notesync.db.schema import initialize
from notesync.db.vectors import (
    chunk_map_table_name,
    ensure_vec_table,
    model_to_slug,
    vec_table_name,
)

__all__ = [
    "Database",
    "connection_lock",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "WorkNoteRepository",
    "chunk_map_table_name",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
