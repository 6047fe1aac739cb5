"""Durable retry queue for failed embedding operations.

Items live in ``embedding_retry_queue`` (migration v2). A partial unique
index allows at most one active (pending/retrying) item per
``(work_id, operation_type)``; a repeated failure report refreshes the error
of the active item and leaves its schedule alone.

Claiming is atomic: due items move from 'pending' to 'retrying' inside a
single ``UPDATE ... RETURNING`` statement, so overlapping sweeps (in this or
another process) never receive the same item. Claims older than
``stale_claim_seconds`` (a crashed or hung sweep) are returned to 'pending'
first. The ``updated_at`` stamped by the claim is a fencing token: complete()
and fail() only write while the row still carries it, so a sweep whose claim
was recovered and handed to another sweep cannot overwrite the newer claim.

Failed items use exponential backoff before retry (30s, 60s, 120s, ...
up to 1h). Items that exhaust ``max_attempts`` are moved to 'dead_letter'
rather than deleted, preserving the error for operators.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from notesync.db.connection import connection_lock
from notesync.db.models import OperationType, RetryQueueItem, RetryStatus

logger = logging.getLogger(__name__)

# Retry backoff: min(BASE * 2^attempts, MAX) seconds
RETRY_BACKOFF_BASE = 30.0
RETRY_BACKOFF_MAX = 3600.0
MAX_ATTEMPTS = 3

# Claims older than this are considered stale (sweep crashed mid-item)
STALE_CLAIM_SECONDS = 600.0

_ITEM_COLUMNS = """
    q.id, q.work_id, q.operation_type, q.attempt_count, q.max_attempts,
    q.next_retry_at, q.status, q.error_message, q.error_details,
    q.created_at, q.updated_at, q.dead_letter_at
"""

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class RetryOutcome:
    """What happened when a claimed item was handed back to the processor.

    ``ok`` covers success, race-loss and permanent failures: the item is done
    either way. ``ok=False`` is a retryable failure.
    """

    ok: bool
    error: str | None = None
    details: dict | None = None


@dataclass
class SweepReport:
    claimed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    lost: int = 0


RetryHandler = Callable[[RetryQueueItem], RetryOutcome]


class RetryQueue:
    """SQLite-backed retry queue with backoff and dead-lettering.

    Args:
        conn: Open connection on a migrated database.
        max_attempts: Failed sweep attempts before an item is dead-lettered.
        backoff_base: Delay in seconds before attempt 0; doubles per attempt.
        backoff_max: Upper bound on any single delay.
        stale_claim_seconds: Age after which a 'retrying' claim is recovered.
        clock: Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
        stale_claim_seconds: float = STALE_CLAIM_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._conn = conn
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.stale_claim_seconds = stale_claim_seconds
        self._clock = clock or _utc_now

    def backoff(self, attempt_count: int) -> float:
        """Delay in seconds before the attempt following *attempt_count* failures."""
        return min(self.backoff_base * (2 ** attempt_count), self.backoff_max)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        work_id: str,
        operation_type: OperationType | str,
        error: str,
        details: dict | None = None,
    ) -> str:
        """Record a failed operation and return the id of the active item.

        If an active item already exists for ``(work_id, operation_type)`` only
        its error and ``updated_at`` are refreshed; attempt count and
        ``next_retry_at`` are untouched, so duplicate reports never reset the
        backoff.
        """
        operation_type = OperationType(operation_type)
        now = self._clock()
        now_iso = _iso(now)
        next_retry_at = _iso(now + timedelta(seconds=self.backoff(0)))
        details_json = json.dumps(details, sort_keys=True) if details else None

        with connection_lock(self._conn):
            row = self._conn.execute(
                """
                INSERT INTO embedding_retry_queue
                    (id, work_id, operation_type, attempt_count, max_attempts,
                     next_retry_at, status, error_message, error_details,
                     created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?, 'pending', ?, ?, ?, ?)
                ON CONFLICT(work_id, operation_type) WHERE status IN ('pending', 'retrying')
                DO UPDATE SET
                    error_message = excluded.error_message,
                    error_details = excluded.error_details,
                    updated_at = excluded.updated_at
                RETURNING id, attempt_count
                """,
                (
                    f"RETRY-{uuid.uuid4().hex}", work_id, operation_type.value,
                    self.max_attempts, next_retry_at, error, details_json,
                    now_iso, now_iso,
                ),
            ).fetchall()[0]
            self._conn.commit()

        logger.info(
            "Queued %s retry for %s (item %s, attempts so far %d): %s",
            operation_type.value, work_id, row["id"], row["attempt_count"], error,
        )
        return row["id"]

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def recover_stale_claims(self) -> int:
        """Return 'retrying' items claimed longer than ``stale_claim_seconds`` to 'pending'.

        Returns count of recovered items.
        """
        now = self._clock()
        cutoff = _iso(now - timedelta(seconds=self.stale_claim_seconds))
        with connection_lock(self._conn):
            cur = self._conn.execute(
                """
                UPDATE embedding_retry_queue
                SET status = 'pending', next_retry_at = ?, updated_at = ?
                WHERE status = 'retrying' AND updated_at <= ?
                """,
                (_iso(now), _iso(now), cutoff),
            )
            self._conn.commit()
        recovered = cur.rowcount
        if recovered:
            logger.warning("Recovered %d stale retry claims from an interrupted sweep", recovered)
        return recovered

    def claim_due(self, limit: int) -> list[RetryQueueItem]:
        """Atomically claim up to *limit* due pending items, oldest schedule first.

        Select-and-mark is one statement: concurrent sweeps see only
        unclaimed items.
        """
        if limit < 1:
            return []
        self.recover_stale_claims()
        now_iso = _iso(self._clock())
        with connection_lock(self._conn):
            rows = self._conn.execute(
                """
                UPDATE embedding_retry_queue
                SET status = 'retrying', updated_at = ?
                WHERE id IN (
                    SELECT id FROM embedding_retry_queue
                    WHERE status = 'pending' AND next_retry_at <= ?
                    ORDER BY next_retry_at, id
                    LIMIT ?
                )
                RETURNING id, work_id, operation_type, attempt_count, max_attempts,
                          next_retry_at, status, error_message, error_details,
                          created_at, updated_at, dead_letter_at
                """,
                (now_iso, now_iso, limit),
            ).fetchall()
            self._conn.commit()
        items = [_row_to_item(r) for r in rows]
        items.sort(key=lambda item: (item.next_retry_at or "", item.id))
        return items

    def process_due(self, handler: RetryHandler, limit: int = 10) -> SweepReport:
        """Claim due items and hand each to *handler*.

        A handler exception is treated as a retryable failure of that item
        only; the rest of the sweep continues. An item whose claim was taken
        over by another sweep meanwhile is counted as ``lost`` and left alone.
        """
        report = SweepReport()
        items = self.claim_due(limit)
        report.claimed = len(items)
        for item in items:
            try:
                outcome = handler(item)
            except Exception as exc:
                logger.exception("Retry handler raised for %s (%s)", item.work_id, item.id)
                outcome = RetryOutcome(ok=False, error=str(exc) or type(exc).__name__)

            if outcome.ok:
                if self.complete(item):
                    report.succeeded += 1
                else:
                    report.lost += 1
                continue
            status = self.fail(item, outcome.error or "unknown error", outcome.details)
            if status is None:
                report.lost += 1
            elif status is RetryStatus.DEAD_LETTER:
                report.dead_lettered += 1
            else:
                report.rescheduled += 1

        if items:
            logger.info(
                "Retry sweep: claimed=%d succeeded=%d rescheduled=%d dead_lettered=%d lost=%d",
                report.claimed, report.succeeded, report.rescheduled, report.dead_lettered,
                report.lost,
            )
        return report

    def complete(self, item: RetryQueueItem) -> bool:
        """Remove a claimed *item* after its operation finally succeeded.

        Returns:
            False if the claim was lost (recovered as stale and reclaimed, or
            otherwise changed since it was claimed); nothing is deleted then.
        """
        with connection_lock(self._conn):
            cur = self._conn.execute(
                "DELETE FROM embedding_retry_queue "
                "WHERE id = ? AND status = 'retrying' AND updated_at = ?",
                (item.id, item.updated_at),
            )
            self._conn.commit()
        if cur.rowcount == 0:
            self._log_lost_claim(item)
            return False
        return True

    def fail(
        self, item: RetryQueueItem, error: str, details: dict | None = None
    ) -> RetryStatus | None:
        """Record a failed attempt on a claimed *item*.

        Increments ``attempt_count``; reschedules with backoff or, once
        ``max_attempts`` is reached, dead-letters the item. The write only
        applies while the row still carries this claim (status 'retrying'
        and the ``updated_at`` stamped by claim_due).

        Returns:
            RetryStatus.PENDING if rescheduled, RetryStatus.DEAD_LETTER if
            dead-lettered, None if the claim was lost.
        """
        attempts = item.attempt_count + 1
        dead = attempts >= item.max_attempts
        now = self._clock()
        now_iso = _iso(now)
        delay = self.backoff(attempts)
        next_retry_at = None if dead else _iso(now + timedelta(seconds=delay))
        details_json = json.dumps(details, sort_keys=True) if details else item.error_details

        with connection_lock(self._conn):
            cur = self._conn.execute(
                """
                UPDATE embedding_retry_queue
                SET attempt_count = attempt_count + 1,
                    status = ?,
                    next_retry_at = ?,
                    dead_letter_at = ?,
                    error_message = ?,
                    error_details = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'retrying' AND updated_at = ?
                """,
                (
                    RetryStatus.DEAD_LETTER.value if dead else RetryStatus.PENDING.value,
                    next_retry_at,
                    now_iso if dead else None,
                    error,
                    details_json,
                    now_iso,
                    item.id,
                    item.updated_at,
                ),
            )
            self._conn.commit()

        if cur.rowcount == 0:
            self._log_lost_claim(item)
            return None
        if dead:
            logger.warning(
                "Dead-lettered %s retry for %s after %d attempts: %s",
                item.operation_type.value, item.work_id, attempts, error,
            )
            return RetryStatus.DEAD_LETTER
        logger.info(
            "Retry of %s for %s failed (attempt %d), next in %ds: %s",
            item.operation_type.value, item.work_id, attempts, delay, error,
        )
        return RetryStatus.PENDING

    @staticmethod
    def _log_lost_claim(item: RetryQueueItem) -> None:
        logger.warning(
            "Claim on retry item %s (%s %s) was taken over by another sweep; "
            "leaving the item to it",
            item.id, item.operation_type.value, item.work_id,
        )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> RetryQueueItem | None:
        with connection_lock(self._conn):
            row = self._conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS}, wn.title AS work_title
                FROM embedding_retry_queue q
                LEFT JOIN work_notes wn ON wn.work_id = q.work_id
                WHERE q.id = ?
                """,  # noqa: S608
                (item_id,),
            ).fetchone()
        return _row_to_item(row) if row else None

    def find_active(
        self, work_id: str, operation_type: OperationType | str
    ) -> RetryQueueItem | None:
        """Return the active item for ``(work_id, operation_type)``, if any."""
        with connection_lock(self._conn):
            row = self._conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS}
                FROM embedding_retry_queue q
                WHERE q.work_id = ? AND q.operation_type = ?
                  AND q.status IN ('pending', 'retrying')
                """,  # noqa: S608
                (work_id, OperationType(operation_type).value),
            ).fetchone()
        return _row_to_item(row) if row else None

    def list_dead_letters(self, limit: int = 50, offset: int = 0) -> list[RetryQueueItem]:
        """Dead-lettered items, most recent first, with the work-note title when it still exists."""
        with connection_lock(self._conn):
            rows = self._conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS}, wn.title AS work_title
                FROM embedding_retry_queue q
                LEFT JOIN work_notes wn ON wn.work_id = q.work_id
                WHERE q.status = 'dead_letter'
                ORDER BY q.dead_letter_at DESC, q.id
                LIMIT ? OFFSET ?
                """,  # noqa: S608
                (limit, offset),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def count_dead_letters(self) -> int:
        with connection_lock(self._conn):
            return self._conn.execute(
                "SELECT COUNT(*) FROM embedding_retry_queue WHERE status = 'dead_letter'"
            ).fetchone()[0]

    def retry_dead_letter(self, item_id: str) -> bool:
        """Resurrect a dead-lettered item: attempts 0, pending, due now.

        If a newer active item already covers the same ``(work_id,
        operation_type)``, the dead letter is dropped in its favour.

        Returns:
            False if *item_id* does not exist or is not dead-lettered.
        """
        now_iso = _iso(self._clock())
        with connection_lock(self._conn):
            try:
                cur = self._conn.execute(
                    """
                    UPDATE embedding_retry_queue
                    SET attempt_count = 0, status = 'pending', next_retry_at = ?,
                        dead_letter_at = NULL, updated_at = ?
                    WHERE id = ? AND status = 'dead_letter'
                    """,
                    (now_iso, now_iso, item_id),
                )
                self._conn.commit()
                resurrected = cur.rowcount == 1
            except sqlite3.IntegrityError:
                self._conn.rollback()
                self._conn.execute(
                    "DELETE FROM embedding_retry_queue WHERE id = ? AND status = 'dead_letter'",
                    (item_id,),
                )
                self._conn.commit()
                logger.info("Dropped dead letter %s: an active retry already exists", item_id)
                return True

        if resurrected:
            logger.info("Dead letter %s scheduled for immediate retry", item_id)
        return resurrected

    def stats(self) -> dict:
        """Queue statistics: counts per status, total and items due now."""
        now_iso = _iso(self._clock())
        with connection_lock(self._conn):
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM embedding_retry_queue GROUP BY status"
            ).fetchall()
            due = self._conn.execute(
                "SELECT COUNT(*) FROM embedding_retry_queue "
                "WHERE status = 'pending' AND next_retry_at <= ?",
                (now_iso,),
            ).fetchone()[0]
        by_status = {status.value: 0 for status in RetryStatus}
        by_status.update({r["status"]: r["cnt"] for r in rows})
        return {**by_status, "total": sum(by_status.values()), "due": due}


def _row_to_item(row: sqlite3.Row) -> RetryQueueItem:
    keys = row.keys()
    return RetryQueueItem(
        id=row["id"],
        work_id=row["work_id"],
        operation_type=OperationType(row["operation_type"]),
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        next_retry_at=row["next_retry_at"],
        status=RetryStatus(row["status"]),
        error_message=row["error_message"],
        error_details=row["error_details"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        dead_letter_at=row["dead_letter_at"],
        work_title=row["work_title"] if "work_title" in keys else None,
    )
