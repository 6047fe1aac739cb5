"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from notesync.db.connection import Database
from notesync.db.models import WorkNote
from notesync.db.repository import WorkNoteRepository
from notesync.db.schema import initialize
from notesync.index.vector_index import SqliteVecIndex
from notesync.ingest.embedding_client import EmbeddingProviderError
from notesync.queue.retry_queue import RetryQueue

TEST_MODEL = "openai/text-embedding-3-small"
TEST_DIMS = 8


class FakeClock:
    """Manually advanced clock for the retry queue."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeEmbeddingClient:
    """Deterministic embedder: sha256 of the text, scaled into [-1, 1].

    ``fail_on`` substrings make embed() raise; ``vectors`` pins exact texts to
    fixed vectors; ``on_embed`` runs (once per call) before the vector is returned.
    """

    def __init__(self, dims: int = TEST_DIMS) -> None:
        self.dims = dims
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.vectors: dict[str, list[float]] = {}
        self.on_embed: Callable[[str], None] | None = None
        self._lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        with self._lock:
            self.calls.append(text)
        for marker in self.fail_on:
            if marker in text:
                raise EmbeddingProviderError(f"provider rejected text containing {marker!r}")
        if self.on_embed is not None:
            self.on_embed(text)
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b - 127.5) / 127.5 for b in digest[: self.dims]]


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".notesync.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return WorkNoteRepository(tmp_db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(tmp_db, clock):
    return RetryQueue(tmp_db, clock=clock)


@pytest.fixture
def vec_index(tmp_db):
    return SqliteVecIndex(tmp_db, TEST_MODEL, TEST_DIMS)


@pytest.fixture
def embedder():
    return FakeEmbeddingClient()


@pytest.fixture
def make_note(repo):
    """Save a work note with a fixed creation time derived from its position."""
    counter = {"n": 0}

    def _make(
        work_id: str,
        title: str = "Weekly sync",
        content: str = "Discussed the roadmap.",
        category: str | None = None,
        created_at: str | None = None,
    ) -> WorkNote:
        counter["n"] += 1
        created = created_at or f"2024-01-{counter['n']:02d}T10:00:00.000000+00:00"
        return repo.save_work_note(
            WorkNote(
                work_id=work_id,
                title=title,
                content_raw=content,
                category=category,
                created_at=created,
            )
        )

    return _make
