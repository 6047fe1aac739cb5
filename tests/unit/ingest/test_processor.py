"""Tests for the embedding processor: single passes, races, bulk runs and retries."""

from __future__ import annotations

import sqlite3
import time
from unittest.mock import patch

import pytest

from notesync.db.models import OperationType, RetryStatus, WorkNote
from notesync.index.vector_index import VectorIndexError
from notesync.ingest.chunker import Chunker
from notesync.ingest.processor import (
    EmbeddingProcessor,
    EmbedStatus,
    FailureReason,
    ReindexReport,
)

LONG_CONTENT = "The quarterly budget review covered hiring, tooling and travel. " * 6


@pytest.fixture
def processor(repo, embedder, vec_index, queue):
    proc = EmbeddingProcessor(
        repo,
        embedder,
        vec_index,
        queue,
        Chunker(chunk_size=16),
        chunk_workers=2,
        record_workers=2,
        call_timeout=5.0,
        batch_size=2,
    )
    yield proc
    proc.close()


# ------------------------------------------------------------------
# embed()
# ------------------------------------------------------------------

def test_embed_new_record(processor, repo, vec_index, queue, make_note):
    make_note("WORK-1", title="Budget", content=LONG_CONTENT)

    result = processor.embed("WORK-1", OperationType.CREATE)

    assert result.status is EmbedStatus.EMBEDDED
    assert result.ok
    assert result.chunk_count > 1
    assert vec_index.list_chunk_ids("WORK-1") == [
        f"WORK-1#chunk{i}" for i in range(result.chunk_count)
    ]
    assert repo.get_work_note("WORK-1").embedded_at is not None
    assert queue.stats()["total"] == 0


def test_reembed_is_idempotent(processor, vec_index, make_note):
    make_note("WORK-1", content=LONG_CONTENT)
    first = processor.embed("WORK-1")
    ids_before = vec_index.list_chunk_ids("WORK-1")

    second = processor.embed("WORK-1")

    assert second.status is EmbedStatus.EMBEDDED
    assert second.chunk_count == first.chunk_count
    assert vec_index.list_chunk_ids("WORK-1") == ids_before
    assert vec_index.count() == len(ids_before)


def test_shrinking_record_removes_stale_chunks(processor, repo, vec_index, make_note):
    make_note("WORK-1", content=LONG_CONTENT)
    assert processor.embed("WORK-1").chunk_count > 1

    repo.save_work_note(WorkNote("WORK-1", "Weekly sync", "Short now."))
    result = processor.embed("WORK-1")

    assert result.chunk_count == 1
    assert vec_index.list_chunk_ids("WORK-1") == ["WORK-1#chunk0"]


def test_concurrent_update_is_stale_not_embedded(processor, repo, embedder, queue, make_note):
    make_note("WORK-1", content="Original text")
    fired = []

    def _edit_once(text):
        if not fired:
            fired.append(text)
            repo.save_work_note(WorkNote("WORK-1", "Weekly sync", "Edited during embedding"))

    embedder.on_embed = _edit_once
    result = processor.embed("WORK-1")

    assert result.status is EmbedStatus.STALE
    assert result.ok
    assert repo.get_work_note("WORK-1").embedded_at is None
    assert queue.stats()["total"] == 0

    embedder.on_embed = None
    assert processor.embed("WORK-1").status is EmbedStatus.EMBEDDED
    assert repo.get_work_note("WORK-1").embedded_at is not None


def test_record_deleted_during_pass_leaves_no_chunks(processor, repo, embedder, vec_index, make_note):
    make_note("WORK-1", content="Soon gone")
    embedder.on_embed = lambda text: repo.delete_work_note("WORK-1")

    result = processor.embed("WORK-1")

    assert result.status is EmbedStatus.SKIPPED
    assert result.error.reason is FailureReason.NOT_FOUND
    assert vec_index.list_chunk_ids("WORK-1") == []


def test_record_deleted_and_cleanup_fails_queues_delete(
    processor, repo, embedder, vec_index, queue, make_note
):
    make_note("WORK-1", content="Soon gone")
    embedder.on_embed = lambda text: repo.delete_work_note("WORK-1")

    real_delete = vec_index.delete
    calls = []

    def _delete(ids):
        calls.append(ids)
        if ids:
            raise VectorIndexError("index offline")
        real_delete(ids)

    with patch.object(vec_index, "delete", side_effect=_delete):
        result = processor.embed("WORK-1")

    assert result.status is EmbedStatus.FAILED
    assert result.error.reason is FailureReason.DELETE_FAILED
    assert result.operation is OperationType.DELETE
    assert queue.find_active("WORK-1", OperationType.DELETE) is not None


def test_empty_record_skipped_not_queued(processor, queue, make_note):
    make_note("WORK-1", title="", content="   ")

    result = processor.embed("WORK-1")

    assert result.status is EmbedStatus.SKIPPED
    assert result.error.reason is FailureReason.EMPTY_TEXT
    assert not result.retryable
    assert queue.stats()["total"] == 0


def test_missing_record_skipped(processor, queue):
    result = processor.embed("missing")
    assert result.status is EmbedStatus.SKIPPED
    assert result.error.reason is FailureReason.NOT_FOUND
    assert queue.stats()["total"] == 0


def test_provider_failure_is_queued(processor, repo, embedder, vec_index, queue, make_note):
    make_note("WORK-1", content="Contains POISON text")
    embedder.fail_on.add("POISON")

    result = processor.embed("WORK-1", OperationType.CREATE)

    assert result.status is EmbedStatus.FAILED
    assert result.error.reason is FailureReason.EMBEDDING_FAILED
    assert vec_index.list_chunk_ids("WORK-1") == []
    assert repo.get_work_note("WORK-1").embedded_at is None
    item = queue.find_active("WORK-1", OperationType.CREATE)
    assert item is not None
    assert item.error_details_dict["reason"] == "embedding_failed"


def test_enqueue_on_failure_disabled(processor, embedder, queue, make_note):
    make_note("WORK-1", content="POISON")
    embedder.fail_on.add("POISON")
    result = processor.embed("WORK-1", enqueue_on_failure=False)
    assert result.status is EmbedStatus.FAILED
    assert queue.stats()["total"] == 0


def test_upsert_failure_is_queued(processor, vec_index, queue, make_note):
    make_note("WORK-1")
    with patch.object(vec_index, "upsert", side_effect=VectorIndexError("disk full")):
        result = processor.embed("WORK-1")

    assert result.status is EmbedStatus.FAILED
    assert result.error.reason is FailureReason.UPSERT_FAILED
    assert queue.find_active("WORK-1", OperationType.UPDATE) is not None


def test_stale_chunk_delete_failure_is_queued(processor, repo, vec_index, queue, make_note):
    make_note("WORK-1", content=LONG_CONTENT)
    processor.embed("WORK-1")
    repo.save_work_note(WorkNote("WORK-1", "Weekly sync", "Short now."))

    with patch.object(vec_index, "delete", side_effect=VectorIndexError("locked")):
        result = processor.embed("WORK-1")

    assert result.error.reason is FailureReason.DELETE_FAILED
    assert "WORK-1#chunk1" in result.error.details["stale_chunk_ids"]
    assert repo.get_work_note("WORK-1").embedded_at is None
    assert queue.find_active("WORK-1", OperationType.UPDATE) is not None


def test_snapshot_read_failure_is_store_failed(processor, repo, queue):
    with patch.object(repo, "get_record_snapshot", side_effect=sqlite3.OperationalError("locked")):
        result = processor.embed("WORK-1")
    assert result.error.reason is FailureReason.STORE_FAILED
    assert result.retryable
    assert queue.find_active("WORK-1", OperationType.UPDATE) is not None


def test_slow_provider_times_out(repo, embedder, vec_index, queue, make_note):
    make_note("WORK-1")
    embedder.on_embed = lambda text: time.sleep(0.5)
    with EmbeddingProcessor(repo, embedder, vec_index, queue, call_timeout=0.05) as proc:
        result = proc.embed("WORK-1")

    assert result.status is EmbedStatus.FAILED
    assert result.error.reason is FailureReason.TIMEOUT
    assert queue.find_active("WORK-1", OperationType.UPDATE) is not None


def test_time_queued_behind_other_records_is_not_a_timeout(repo, embedder, vec_index, queue, make_note):
    # One chunk worker shared by two records: each call takes 0.1s, but a
    # record's later chunks wait well past call_timeout behind the other's.
    make_note("WORK-1", content=LONG_CONTENT)
    make_note("WORK-2", content=LONG_CONTENT)
    embedder.on_embed = lambda text: time.sleep(0.1)
    with EmbeddingProcessor(
        repo, embedder, vec_index, queue, Chunker(chunk_size=16),
        chunk_workers=1, record_workers=2, call_timeout=0.35,
    ) as proc:
        report = proc.reindex_all()

    assert report.failed == 0
    assert report.succeeded == 2
    assert len(embedder.calls) > 6
    assert queue.stats()["total"] == 0


# ------------------------------------------------------------------
# remove_embedding() / handle_mutation()
# ------------------------------------------------------------------

def test_remove_embedding(processor, vec_index, make_note):
    make_note("WORK-1", content=LONG_CONTENT)
    embedded = processor.embed("WORK-1")

    result = processor.remove_embedding("WORK-1")
    assert result.status is EmbedStatus.REMOVED
    assert result.chunk_count == embedded.chunk_count
    assert vec_index.list_chunk_ids("WORK-1") == []

    again = processor.remove_embedding("WORK-1")
    assert again.status is EmbedStatus.REMOVED
    assert again.chunk_count == 0


def test_remove_failure_queues_delete(processor, vec_index, queue, make_note):
    make_note("WORK-1")
    processor.embed("WORK-1")
    with patch.object(vec_index, "delete", side_effect=VectorIndexError("locked")):
        result = processor.remove_embedding("WORK-1")

    assert result.status is EmbedStatus.FAILED
    assert result.operation is OperationType.DELETE
    assert queue.find_active("WORK-1", OperationType.DELETE) is not None


def test_handle_mutation_delete(processor, repo, vec_index, make_note):
    make_note("WORK-1")
    processor.handle_mutation("WORK-1", OperationType.CREATE)
    repo.delete_work_note("WORK-1")

    result = processor.handle_mutation("WORK-1", "delete")
    assert result.status is EmbedStatus.REMOVED
    assert vec_index.list_chunk_ids("WORK-1") == []


def test_handle_mutation_never_raises(processor, repo, queue, make_note):
    make_note("WORK-1")
    with patch.object(repo, "get_record_snapshot", side_effect=RuntimeError("bug")):
        result = processor.handle_mutation("WORK-1", OperationType.UPDATE)

    assert result.status is EmbedStatus.FAILED
    assert "bug" in result.error.message
    assert queue.find_active("WORK-1", OperationType.UPDATE) is not None


def test_handle_mutation_survives_queue_failure(processor, repo, queue, make_note):
    make_note("WORK-1")
    with patch.object(repo, "get_record_snapshot", side_effect=RuntimeError("bug")), \
            patch.object(queue, "enqueue", side_effect=sqlite3.OperationalError("locked")):
        result = processor.handle_mutation("WORK-1", OperationType.UPDATE)
    assert result.status is EmbedStatus.FAILED


# ------------------------------------------------------------------
# Bulk
# ------------------------------------------------------------------

def test_reindex_all_isolates_failures(processor, repo, embedder, queue, make_note):
    for i in range(5):
        content = "POISON pill" if i == 2 else f"Note body {i}"
        make_note(f"WORK-{i}", content=content)
    embedder.fail_on.add("POISON")

    report = processor.reindex_all()

    assert report.total == 5
    assert report.processed == 5
    assert report.succeeded == 4
    assert report.failed == 1
    assert list(report.errors) == ["WORK-2"]
    assert queue.stats()["pending"] == 1
    assert repo.get_embedding_stats()["embedded"] == 4


def test_reindex_all_counts_skips(processor, make_note):
    make_note("WORK-1")
    make_note("WORK-2", title="", content="")
    report = processor.reindex_all(batch_size=10)
    assert report.succeeded == 1
    assert report.skipped == 1
    assert report.failed == 0


def test_reindex_all_empty_store(processor):
    assert processor.reindex_all() == ReindexReport()


def test_reindex_rejects_bad_batch_size(processor):
    with pytest.raises(ValueError):
        processor._run_batches(lambda c, n: ([], None), total=0, batch_size=0, label="x")


def test_embed_pending_only_touches_unembedded(processor, embedder, make_note):
    make_note("WORK-1", content="already done")
    processor.embed("WORK-1")
    make_note("WORK-2", content="new one")
    make_note("WORK-3", content="another new one")
    embedder.calls.clear()

    report = processor.embed_pending()

    assert report.total == 2
    assert report.succeeded == 2
    assert not any("already done" in text for text in embedder.calls)


# ------------------------------------------------------------------
# Retry queue integration
# ------------------------------------------------------------------

def test_sweep_retries_until_success(processor, repo, embedder, queue, clock, make_note):
    make_note("WORK-1", content="POISON for now")
    embedder.fail_on.add("POISON")
    processor.embed("WORK-1")

    embedder.fail_on.clear()
    clock.advance(queue.backoff(0))
    report = processor.sweep()

    assert report.claimed == 1
    assert report.succeeded == 1
    assert queue.stats()["total"] == 0
    assert repo.get_work_note("WORK-1").embedded_at is not None


def test_sweep_dead_letters_after_max_attempts(processor, embedder, queue, clock, make_note):
    make_note("WORK-1", content="POISON forever")
    embedder.fail_on.add("POISON")
    processor.embed("WORK-1")

    for _ in range(queue.max_attempts):
        clock.advance(queue.backoff_max)
        processor.sweep()

    [dead] = queue.list_dead_letters()
    assert dead.work_id == "WORK-1"
    assert dead.status is RetryStatus.DEAD_LETTER
    assert dead.attempt_count == queue.max_attempts
    assert dead.work_title == "Weekly sync"


def test_retry_item_for_deleted_record_completes(processor, repo, embedder, queue, clock, make_note):
    make_note("WORK-1", content="POISON")
    embedder.fail_on.add("POISON")
    processor.embed("WORK-1")
    repo.delete_work_note("WORK-1")

    clock.advance(queue.backoff(0))
    report = processor.sweep()

    assert report.succeeded == 1
    assert queue.stats()["total"] == 0


def test_retry_delete_item(processor, vec_index, queue, clock, make_note):
    make_note("WORK-1")
    processor.embed("WORK-1")
    queue.enqueue("WORK-1", OperationType.DELETE, "index offline")

    clock.advance(queue.backoff(0))
    report = processor.sweep()

    assert report.succeeded == 1
    assert vec_index.list_chunk_ids("WORK-1") == []


def test_sweep_without_queue_raises(repo, embedder, vec_index):
    with EmbeddingProcessor(repo, embedder, vec_index) as proc:
        with pytest.raises(RuntimeError, match="retry queue"):
            proc.sweep()
