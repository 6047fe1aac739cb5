"""Embedding processor: keeps the vector index in step with the work-note store.

One embedding pass for a record:

1. read a snapshot (including ``updated_at``) from the relational store
2. chunk title + content
3. embed every chunk on a bounded thread pool; the per-call timeout runs
   from when a worker starts the call
4. upsert the new chunks, then delete previously indexed chunk ids that are
   no longer produced (shrinkage)
5. guarded update: ``embedded_at = now`` only while ``updated_at`` still
   equals the snapshot value

A guarded update that touches no row means the record changed (or vanished)
mid-pass. A changed record is a soft success (``STALE``): its own mutation
triggers a fresh pass. A vanished record has its just-written chunks removed.

Outcomes are returned as EmbedResult values; nothing in the embedding path
raises for provider, index or store failures. Retryable failures are queued
on the RetryQueue, permanent ones are logged and skipped.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from notesync.db.models import EmbeddingChunk, OperationType, RecordSnapshot, RetryQueueItem
from notesync.db.repository import PageCursor, WorkNoteRepository, utc_now
from notesync.index.vector_index import VectorIndex, VectorRecord
from notesync.ingest.chunker import Chunker
from notesync.ingest.embedding_client import EmbeddingClient, EmbeddingProviderError
from notesync.queue.retry_queue import RetryOutcome, RetryQueue, SweepReport

logger = logging.getLogger(__name__)

PageFn = Callable[[PageCursor | None, int], tuple[list[str], PageCursor | None]]

_START_POLL_SECONDS = 0.05


class EmbedStatus(str, Enum):
    EMBEDDED = "embedded"
    STALE = "stale"          # record changed mid-pass; soft success
    SKIPPED = "skipped"      # permanent failure, never retried
    FAILED = "failed"        # retryable failure
    REMOVED = "removed"


class FailureReason(str, Enum):
    EMPTY_TEXT = "empty_text"
    NOT_FOUND = "not_found"
    EMBEDDING_FAILED = "embedding_failed"
    UPSERT_FAILED = "upsert_failed"
    DELETE_FAILED = "delete_failed"
    STORE_FAILED = "store_failed"
    TIMEOUT = "timeout"


_RETRYABLE: frozenset[FailureReason] = frozenset({
    FailureReason.EMBEDDING_FAILED,
    FailureReason.UPSERT_FAILED,
    FailureReason.DELETE_FAILED,
    FailureReason.STORE_FAILED,
    FailureReason.TIMEOUT,
})


@dataclass(frozen=True)
class EmbedError:
    reason: FailureReason
    message: str
    details: dict = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.reason in _RETRYABLE


@dataclass
class EmbedResult:
    """Outcome of one embedding or removal pass.

    Attributes:
        work_id: Record the pass ran for.
        status: What happened (see EmbedStatus).
        chunk_count: Chunks written (embed) or deleted (remove).
        error: Failure detail for SKIPPED / FAILED results.
        operation: Operation to queue if the failure is retryable.
    """

    work_id: str
    status: EmbedStatus
    chunk_count: int = 0
    error: EmbedError | None = None
    operation: OperationType = OperationType.UPDATE

    @property
    def ok(self) -> bool:
        return self.status in (EmbedStatus.EMBEDDED, EmbedStatus.STALE, EmbedStatus.REMOVED)

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


@dataclass
class ReindexReport:
    """Per-batch-run tallies. STALE results count as succeeded."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def add(self, result: EmbedResult) -> None:
        self.processed += 1
        if result.ok:
            self.succeeded += 1
        elif result.status is EmbedStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.errors[result.work_id] = result.error.message if result.error else "unknown"


def _failed(
    work_id: str,
    reason: FailureReason,
    message: str,
    operation: OperationType = OperationType.UPDATE,
    **details,
) -> EmbedResult:
    error = EmbedError(reason=reason, message=message, details=details)
    status = EmbedStatus.FAILED if error.retryable else EmbedStatus.SKIPPED
    return EmbedResult(work_id=work_id, status=status, error=error, operation=operation)


class _EmbedCall:
    """One embedding call on the shared chunk pool.

    The timeout clock starts when a worker picks the call up, so time spent
    queued behind other records' calls is not charged to it.
    """

    def __init__(self, pool: ThreadPoolExecutor, embed: Callable[[str], list[float]], text: str):
        self._started = threading.Event()
        self._started_at = 0.0
        self.future: Future[list[float]] = pool.submit(self._run, embed, text)

    def _run(self, embed: Callable[[str], list[float]], text: str) -> list[float]:
        self._started_at = time.monotonic()
        self._started.set()
        return embed(text)

    def result(self, timeout: float) -> list[float]:
        while not self._started.wait(_START_POLL_SECONDS):
            if self.future.done():
                # cancelled before a worker reached it
                return self.future.result(timeout=0)
        remaining = timeout - (time.monotonic() - self._started_at)
        return self.future.result(timeout=max(0.0, remaining))


class EmbeddingProcessor:
    """Chunk, embed and index work notes; remove them; reindex in bulk.

    Args:
        repo: Source-of-truth store.
        embedder: Text → vector capability.
        index: Vector index capability.
        queue: Retry queue for retryable failures (None disables queueing).
        chunker: Chunker to use (defaults to 512 tokens / 20 % overlap).
        chunk_workers: Parallel embedding calls per record.
        record_workers: Records processed concurrently during bulk runs.
        call_timeout: Seconds each embedding call may run once a worker starts it.
        batch_size: Default page size for bulk runs.
    """

    def __init__(
        self,
        repo: WorkNoteRepository,
        embedder: EmbeddingClient,
        index: VectorIndex,
        queue: RetryQueue | None = None,
        chunker: Chunker | None = None,
        *,
        chunk_workers: int = 4,
        record_workers: int = 4,
        call_timeout: float = 60.0,
        batch_size: int = 10,
    ) -> None:
        self._repo = repo
        self._embedder = embedder
        self._index = index
        self._queue = queue
        self._chunker = chunker or Chunker()
        self.record_workers = record_workers
        self.call_timeout = call_timeout
        self.batch_size = batch_size
        self._chunk_pool = ThreadPoolExecutor(
            max_workers=chunk_workers, thread_name_prefix="notesync-embed"
        )

    def close(self) -> None:
        self._chunk_pool.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> EmbeddingProcessor:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    def embed(
        self,
        work_id: str,
        operation: OperationType | str = OperationType.UPDATE,
        *,
        enqueue_on_failure: bool = True,
    ) -> EmbedResult:
        """Run one embedding pass for *work_id*. Never raises for pass failures."""
        operation = OperationType(operation)
        try:
            snapshot = self._repo.get_record_snapshot(work_id)
        except sqlite3.Error as exc:
            result = _failed(work_id, FailureReason.STORE_FAILED, f"Snapshot read failed: {exc}",
                             operation)
        else:
            result = self._embed_record(work_id, snapshot, operation)
        self._log_result(result)
        if enqueue_on_failure:
            self._enqueue(result)
        return result

    def remove_embedding(self, work_id: str, *, enqueue_on_failure: bool = True) -> EmbedResult:
        """Delete every indexed chunk of *work_id*. Idempotent."""
        try:
            chunk_ids = self._index.list_chunk_ids(work_id)
            self._index.delete(chunk_ids)
        except Exception as exc:
            result = _failed(work_id, FailureReason.DELETE_FAILED,
                             f"Vector delete failed: {exc}", OperationType.DELETE)
        else:
            result = EmbedResult(
                work_id=work_id,
                status=EmbedStatus.REMOVED,
                chunk_count=len(chunk_ids),
                operation=OperationType.DELETE,
            )
        self._log_result(result)
        if enqueue_on_failure:
            self._enqueue(result)
        return result

    def handle_mutation(self, work_id: str, operation: OperationType | str) -> EmbedResult:
        """Sync hook for record saves and deletes. Never raises.

        A save must not fail because of embedding, so anything unexpected is
        logged and turned into a queued retry.
        """
        try:
            operation = OperationType(operation)
            if operation is OperationType.DELETE:
                return self.remove_embedding(work_id)
            return self.embed(work_id, operation)
        except Exception as exc:
            logger.exception("Embedding sync for %s (%s) raised", work_id, operation)
            op = operation if isinstance(operation, OperationType) else OperationType.UPDATE
            result = _failed(work_id, FailureReason.EMBEDDING_FAILED,
                             f"{type(exc).__name__}: {exc}", op)
            try:
                self._enqueue(result)
            except Exception:
                logger.exception("Could not queue retry for %s", work_id)
            return result

    # ------------------------------------------------------------------
    # Retry queue integration
    # ------------------------------------------------------------------

    def process_retry_item(self, item: RetryQueueItem) -> RetryOutcome:
        """RetryQueue handler: rerun the queued operation without re-queueing."""
        if item.operation_type is OperationType.DELETE:
            result = self.remove_embedding(item.work_id, enqueue_on_failure=False)
        else:
            result = self.embed(item.work_id, item.operation_type, enqueue_on_failure=False)
        if result.retryable:
            return RetryOutcome(
                ok=False,
                error=result.error.message,
                details={"reason": result.error.reason.value, **result.error.details},
            )
        return RetryOutcome(ok=True)

    def sweep(self, limit: int = 10) -> SweepReport:
        """Process due retry items (see RetryQueue.process_due)."""
        if self._queue is None:
            raise RuntimeError("EmbeddingProcessor has no retry queue configured")
        return self._queue.process_due(self.process_retry_item, limit)

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def reindex_all(self, batch_size: int | None = None) -> ReindexReport:
        """Re-embed every record in creation order, a page at a time."""
        return self._run_batches(
            self._repo.list_record_ids_page,
            total=self._repo.count_work_notes(),
            batch_size=batch_size or self.batch_size,
            label="Reindex",
        )

    def embed_pending(self, batch_size: int | None = None) -> ReindexReport:
        """Embed only records whose ``embedded_at`` is NULL."""
        return self._run_batches(
            self._repo.list_pending_ids_page,
            total=self._repo.get_embedding_stats()["pending"],
            batch_size=batch_size or self.batch_size,
            label="Embed pending",
        )

    def _run_batches(
        self, page_fn: PageFn, *, total: int, batch_size: int, label: str
    ) -> ReindexReport:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        report = ReindexReport(total=total)
        cursor: PageCursor | None = None
        with ThreadPoolExecutor(
            max_workers=self.record_workers, thread_name_prefix="notesync-record"
        ) as pool:
            while True:
                ids, cursor = page_fn(cursor, batch_size)
                if not ids:
                    break
                snapshots = self._repo.get_record_snapshots_batch(ids)
                futures: list[tuple[str, Future[EmbedResult]]] = [
                    (work_id, pool.submit(self._embed_record, work_id, snapshots.get(work_id)))
                    for work_id in ids
                ]
                for work_id, future in futures:
                    try:
                        result = future.result()
                    except Exception as exc:
                        logger.exception("Embedding %s raised", work_id)
                        result = _failed(work_id, FailureReason.EMBEDDING_FAILED,
                                         f"{type(exc).__name__}: {exc}")
                    self._log_result(result)
                    self._enqueue(result)
                    report.add(result)
                logger.info(
                    "%s: %d/%d processed (%d succeeded, %d failed, %d skipped)",
                    label, report.processed, report.total,
                    report.succeeded, report.failed, report.skipped,
                )
                if cursor is None:
                    break
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _embed_record(
        self,
        work_id: str,
        snapshot: RecordSnapshot | None,
        operation: OperationType = OperationType.UPDATE,
    ) -> EmbedResult:
        if snapshot is None:
            return _failed(work_id, FailureReason.NOT_FOUND, "Record not found", operation)

        chunks = self._chunker.chunk(snapshot)
        if not chunks:
            return _failed(work_id, FailureReason.EMPTY_TEXT, "Record has no text to embed",
                           operation)

        vectors = self._embed_chunks(work_id, chunks, operation)
        if isinstance(vectors, EmbedResult):
            return vectors

        new_ids = [c.id for c in chunks]
        records = [
            VectorRecord(id=c.id, values=v, metadata=c.metadata)
            for c, v in zip(chunks, vectors)
        ]
        try:
            previous_ids = self._index.list_chunk_ids(work_id)
            self._index.upsert(records)
        except Exception as exc:
            return _failed(work_id, FailureReason.UPSERT_FAILED, f"Vector upsert failed: {exc}",
                           operation)

        keep = set(new_ids)
        stale_ids = [cid for cid in previous_ids if cid not in keep]
        if stale_ids:
            try:
                self._index.delete(stale_ids)
            except Exception as exc:
                return _failed(work_id, FailureReason.DELETE_FAILED,
                               f"Deleting stale chunks failed: {exc}", operation,
                               stale_chunk_ids=stale_ids)

        return self._finish(snapshot, new_ids, operation)

    def _embed_chunks(
        self, work_id: str, chunks: list[EmbeddingChunk], operation: OperationType
    ) -> list[list[float]] | EmbedResult:
        """Embed *chunks* concurrently; returns vectors in chunk order or a failure."""
        calls = [_EmbedCall(self._chunk_pool, self._embedder.embed, c.text) for c in chunks]
        vectors: list[list[float]] = []
        try:
            for chunk, call in zip(chunks, calls):
                try:
                    vectors.append(call.result(self.call_timeout))
                except FutureTimeoutError:
                    return _failed(work_id, FailureReason.TIMEOUT,
                                   f"Embedding {chunk.id} timed out after {self.call_timeout}s",
                                   operation, chunk_id=chunk.id)
                except EmbeddingProviderError as exc:
                    reason = FailureReason.TIMEOUT if exc.timeout else FailureReason.EMBEDDING_FAILED
                    return _failed(work_id, reason, str(exc), operation, chunk_id=chunk.id)
                except Exception as exc:
                    return _failed(work_id, FailureReason.EMBEDDING_FAILED,
                                   f"Embedding {chunk.id} failed: {exc}", operation,
                                   chunk_id=chunk.id)
        finally:
            for call in calls:
                call.future.cancel()
        return vectors

    def _finish(
        self, snapshot: RecordSnapshot, new_ids: list[str], operation: OperationType
    ) -> EmbedResult:
        """Guarded ``embedded_at`` update; classify a miss as stale or vanished."""
        work_id = snapshot.work_id
        try:
            updated = self._repo.set_embedded_at_if_updated_at_matches(
                work_id, snapshot.updated_at, utc_now()
            )
            if updated:
                return EmbedResult(work_id=work_id, status=EmbedStatus.EMBEDDED,
                                   chunk_count=len(new_ids), operation=operation)
            still_exists = self._repo.get_work_note(work_id) is not None
        except sqlite3.Error as exc:
            return _failed(work_id, FailureReason.STORE_FAILED,
                           f"Guarded embedded_at update failed: {exc}", operation)

        if still_exists:
            return EmbedResult(work_id=work_id, status=EmbedStatus.STALE,
                               chunk_count=len(new_ids), operation=operation)

        try:
            self._index.delete(self._index.list_chunk_ids(work_id))
        except Exception as exc:
            return _failed(work_id, FailureReason.DELETE_FAILED,
                           f"Record vanished; removing its chunks failed: {exc}",
                           OperationType.DELETE)
        return _failed(work_id, FailureReason.NOT_FOUND, "Record deleted during embedding",
                       operation)

    def _enqueue(self, result: EmbedResult) -> None:
        if self._queue is None or not result.retryable:
            return
        self._queue.enqueue(
            result.work_id,
            result.operation,
            result.error.message,
            {"reason": result.error.reason.value, **result.error.details},
        )

    @staticmethod
    def _log_result(result: EmbedResult) -> None:
        if result.status is EmbedStatus.STALE:
            logger.info("Record %s changed while embedding; leaving it to the newer pass",
                        result.work_id)
        elif result.status is EmbedStatus.SKIPPED:
            logger.warning("Skipped %s (%s): %s", result.work_id,
                           result.error.reason.value, result.error.message)
        elif result.status is EmbedStatus.FAILED:
            logger.warning("Embedding %s for %s failed (%s): %s", result.operation.value,
                           result.work_id, result.error.reason.value, result.error.message)
        else:
            logger.debug("%s %s (%d chunks)", result.status.value, result.work_id,
                         result.chunk_count)
