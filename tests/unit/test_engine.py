"""Tests for wiring the sync engine from config."""

from __future__ import annotations

from notesync.config import NotesyncConfig
from notesync.db.models import SearchFilters, WorkNote
from notesync.db.vectors import list_vec_tables
from notesync.engine import build_embedder, build_engine
from notesync.ingest.embedding_client import LiteLLMEmbeddingClient
from notesync.ingest.processor import EmbedStatus


def _cfg() -> NotesyncConfig:
    cfg = NotesyncConfig()
    cfg.embedding.dimensions = 8
    cfg.retry.max_attempts = 5
    cfg.processor.batch_size = 3
    return cfg


def test_build_embedder_uses_embedding_section() -> None:
    client = build_embedder(_cfg())
    assert isinstance(client, LiteLLMEmbeddingClient)
    assert client.model == "openai/text-embedding-3-small"
    assert client.dimensions == 8


def test_build_engine_migrates_and_creates_vec_table(tmp_path, embedder, clock) -> None:
    with build_engine(_cfg(), db_path=tmp_path / "n.db", embedder=embedder, clock=clock) as engine:
        assert engine.index.table in list_vec_tables(engine.conn)
        assert engine.queue.max_attempts == 5


def test_engine_end_to_end(tmp_path, embedder, clock) -> None:
    with build_engine(_cfg(), db_path=tmp_path / "n.db", embedder=embedder, clock=clock) as engine:
        engine.repo.save_work_note(WorkNote("WORK-1", "Budget review", "Quarterly budget review."))

        result = engine.processor.embed("WORK-1")
        hits = engine.search.search("budget", SearchFilters(limit=5))

    assert result.status is EmbedStatus.EMBEDDED
    assert [h.entity_id for h in hits.work_notes] == ["WORK-1"]
