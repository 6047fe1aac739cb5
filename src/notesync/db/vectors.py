"""Per-model sqlite-vec virtual table management."""

from __future__ import annotations

import re
import sqlite3


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
        "openai/text-embedding-3-large" -> "openai_text_embedding_3_large"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(model_slug: str) -> str:
    """Return the full vec table name for a model slug."""
    return f"vec_chunks_{model_slug}"


def chunk_map_table_name(model_slug: str) -> str:
    """Return the chunk-id map table paired with the vec table for *model_slug*.

    vec0 keys rows by integer rowid; the map translates the string chunk ids
    (``<workId>#chunk<N>``) and carries the chunk metadata used for filtering.
    """
    return f"chunk_map_{model_slug}"


def ensure_vec_table(conn: sqlite3.Connection, model_slug: str, dimensions: int) -> str:
    """Create vec_chunks_{model_slug} and its chunk map if they don't already exist.

    The vec table uses cosine distance so ``1 - distance`` is a cosine similarity.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        model_slug: Sanitized model identifier (use model_to_slug() to generate).
        dimensions: Embedding vector dimensions (e.g. 1536 for text-embedding-3-small).

    Returns:
        The table name (vec_chunks_{model_slug}).
    """
    if not re.fullmatch(r"[a-z0-9_]+", model_slug):
        raise ValueError(
            f"Invalid model_slug '{model_slug}', use model_to_slug() to sanitize."
        )
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    table = vec_table_name(model_slug)
    map_table = chunk_map_table_name(model_slug)
    existing = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()

    if existing is None:
        conn.execute(
            f"CREATE VIRTUAL TABLE {table} USING vec0("
            f"embedding float[{dimensions}] distance_metric=cosine)"
        )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {map_table} (
            vec_rowid   INTEGER PRIMARY KEY AUTOINCREMENT,
            chunk_id    TEXT NOT NULL UNIQUE,
            work_id     TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            metadata    TEXT NOT NULL DEFAULT '{{}}'
        )
        """
    )
    conn.execute(
        f"CREATE INDEX IF NOT EXISTS idx_{map_table}_work ON {map_table}(work_id)"
    )
    conn.commit()

    return table


def list_vec_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the names of all vec_chunks_* tables."""
    return [
        r[0]
        for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'vec_chunks_%' "
            "AND sql LIKE 'CREATE VIRTUAL TABLE%'"
        ).fetchall()
    ]
