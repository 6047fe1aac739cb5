"""Wire the sync engine components from a NotesyncConfig.

Used by the CLI and by applications embedding notesync: one shared SQLite
connection, the default adapters, the retry queue, the processor and the
hybrid search service.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from notesync.config import NotesyncConfig
from notesync.db.connection import Database
from notesync.db.repository import WorkNoteRepository
from notesync.db.schema import initialize
from notesync.index.lexical import Fts5LexicalSearch
from notesync.index.vector_index import SqliteVecIndex
from notesync.ingest.chunker import Chunker
from notesync.ingest.embedding_client import EmbeddingClient, LiteLLMEmbeddingClient
from notesync.ingest.processor import EmbeddingProcessor
from notesync.queue.retry_queue import Clock, RetryQueue
from notesync.search.hybrid import HybridSearchService


@dataclass
class Engine:
    conn: sqlite3.Connection
    repo: WorkNoteRepository
    index: SqliteVecIndex
    lexical: Fts5LexicalSearch
    queue: RetryQueue
    processor: EmbeddingProcessor
    search: HybridSearchService

    def close(self) -> None:
        self.search.close()
        self.processor.close()
        self.conn.close()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def build_embedder(cfg: NotesyncConfig) -> EmbeddingClient:
    """Return the LiteLLM client configured by the ``embedding:`` section."""
    return LiteLLMEmbeddingClient(
        model=cfg.embedding.model,
        dimensions=cfg.embedding.dimensions,
        timeout=cfg.embedding.timeout,
        num_retries=cfg.embedding.num_retries,
    )


def build_engine(
    cfg: NotesyncConfig,
    *,
    db_path: Path | str | None = None,
    embedder: EmbeddingClient | None = None,
    clock: Clock | None = None,
) -> Engine:
    """Open the database (running migrations) and assemble every component.

    Args:
        cfg: Loaded configuration.
        db_path: Overrides ``cfg.database.path``.
        embedder: Overrides the LiteLLM embedding client.
        clock: Overrides the retry queue clock.
    """
    database = Database(db_path or cfg.database.path, timeout=cfg.database.busy_timeout)
    conn = database.connect()
    try:
        initialize(conn)
        index = SqliteVecIndex(conn, cfg.embedding.model, cfg.embedding.dimensions)
    except Exception:
        conn.close()
        raise

    embedder = embedder or build_embedder(cfg)
    repo = WorkNoteRepository(conn)
    lexical = Fts5LexicalSearch(conn)
    queue = RetryQueue(
        conn,
        max_attempts=cfg.retry.max_attempts,
        backoff_base=cfg.retry.backoff_base,
        backoff_max=cfg.retry.backoff_max,
        stale_claim_seconds=cfg.retry.stale_claim_seconds,
        clock=clock,
    )
    processor = EmbeddingProcessor(
        repo,
        embedder,
        index,
        queue,
        Chunker(
            chunk_size=cfg.chunking.chunk_size,
            overlap=cfg.chunking.overlap,
            min_chunk_ratio=cfg.chunking.min_chunk_ratio,
        ),
        chunk_workers=cfg.processor.chunk_workers,
        record_workers=cfg.processor.record_workers,
        call_timeout=cfg.processor.call_timeout,
        batch_size=cfg.processor.batch_size,
    )
    search = HybridSearchService(
        lexical,
        embedder,
        index,
        repo,
        lexical_weight=cfg.search.lexical_weight,
        semantic_weight=cfg.search.semantic_weight,
        candidate_multiplier=cfg.search.candidate_multiplier,
        max_workers=cfg.search.max_workers,
        timeout=cfg.search.timeout,
    )
    return Engine(
        conn=conn,
        repo=repo,
        index=index,
        lexical=lexical,
        queue=queue,
        processor=processor,
        search=search,
    )
