"""Durable work queue persisted in SQLite."""

from __future__ import annotations

import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import structlog

from ...errors import LeaseLost, QueueError
from ...infra.storage import SQLiteManager
from .base import BackoffPolicy, DeadLetter, Delivery, EnqueueOptions, WorkItem, WorkQueue

WAITING = "waiting"
ACTIVE = "active"
FAILED = "failed"

LEASE_EXPIRED_REASON = "Lease expired after final attempt"

# Only the consumer holding the current lease may settle a row
_LEASE_HELD = "attempts_made = ? AND status = ?"


class SQLiteWorkQueue(WorkQueue):
    """Insertion-ordered queue with leases.

    A reserved row stays ``active`` until acked or failed. If the consumer
    dies first, the lease runs out after ``visibility_timeout`` seconds and
    the row is handed out again, which is what makes delivery at-least-once.
    A lease that runs out on the final attempt dead-letters the row instead;
    :meth:`collect_expired` reports those so their runs can still be settled.
    """

    def __init__(
        self,
        manager: SQLiteManager,
        db_path: Path,
        default_options: EnqueueOptions | None = None,
        visibility_timeout: float = 300.0,
        poll_interval: float = 0.2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(default_options)
        self.manager = manager
        self.db_path = Path(db_path)
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._conn = self.manager.connect(self.db_path)
        self._lock = self.manager.lock(self.db_path)
        self._expired: list[DeadLetter] = []
        self.logger = structlog.get_logger("job_importer.queue")

    def enqueue(self, work_item: WorkItem, options: EnqueueOptions | None = None) -> str:
        opts = options or self.default_options
        with self._lock:
            try:
                cur = self._conn.execute(
                    """
                    INSERT INTO work_queue(payload, status, attempts_made, max_attempts,
                                           backoff_delay_ms, available_at, enqueued_at)
                    VALUES (?, ?, 0, ?, ?, ?, ?)
                    """,
                    (
                        work_item.to_json(),
                        WAITING,
                        opts.attempts,
                        opts.backoff.delay_ms,
                        self._clock(),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise QueueError(f"Failed to enqueue work item: {exc}") from exc
            return str(cur.lastrowid)

    def reserve(self, timeout: float = 0.0) -> Delivery | None:
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            delivery = self._try_reserve()
            if delivery is not None:
                return delivery
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    def _try_reserve(self) -> Delivery | None:
        now = self._clock()
        expired: list[DeadLetter] = []
        with self._lock:
            try:
                # Claims must be serialised across processes sharing the file
                self._conn.execute("BEGIN IMMEDIATE")
                while True:
                    row = self._conn.execute(
                        """
                        SELECT id, payload, attempts_made, max_attempts, status
                        FROM work_queue
                        WHERE status IN (?, ?) AND available_at <= ?
                        ORDER BY id
                        LIMIT 1
                        """,
                        (WAITING, ACTIVE, now),
                    ).fetchone()
                    if row is None or row["status"] == WAITING:
                        break
                    if row["attempts_made"] < row["max_attempts"]:
                        self.logger.warning(
                            "lease_expired_redelivering",
                            queue_id=row["id"],
                            attempt=row["attempts_made"],
                        )
                        break
                    self._conn.execute(
                        "UPDATE work_queue SET status = ?, last_error = ? WHERE id = ?",
                        (FAILED, LEASE_EXPIRED_REASON, row["id"]),
                    )
                    expired.append(
                        DeadLetter(
                            queue_id=str(row["id"]),
                            work_item=WorkItem.from_json(row["payload"]),
                            attempts_made=row["attempts_made"],
                            reason=LEASE_EXPIRED_REASON,
                        )
                    )
                if row is not None:
                    attempt = row["attempts_made"] + 1
                    self._conn.execute(
                        "UPDATE work_queue SET status = ?, attempts_made = ?, available_at = ? WHERE id = ?",
                        (ACTIVE, attempt, now + self.visibility_timeout, row["id"]),
                    )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise QueueError(f"Failed to reserve work item: {exc}") from exc
            for dead in expired:
                self.logger.warning(
                    "work_item_dead_lettered",
                    queue_id=dead.queue_id,
                    attempts=dead.attempts_made,
                    permanent=False,
                    reason=dead.reason,
                )
            self._expired.extend(expired)
        if row is None:
            return None
        return Delivery(
            queue_id=str(row["id"]),
            work_item=WorkItem.from_json(row["payload"]),
            attempt=attempt,
            max_attempts=row["max_attempts"],
        )

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            try:
                cur = self._conn.execute(
                    f"DELETE FROM work_queue WHERE id = ? AND {_LEASE_HELD}",
                    (int(delivery.queue_id), delivery.attempt, ACTIVE),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise QueueError(f"Failed to ack work item: {exc}") from exc
        if cur.rowcount != 1:
            raise LeaseLost(delivery.queue_id, delivery.attempt)

    def fail(self, delivery: Delivery, reason: str, *, permanent: bool = False) -> bool:
        queue_id = int(delivery.queue_id)
        held = (delivery.attempt, ACTIVE)
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                row = self._conn.execute(
                    "SELECT attempts_made, max_attempts, backoff_delay_ms FROM work_queue "
                    f"WHERE id = ? AND {_LEASE_HELD}",
                    (queue_id, *held),
                ).fetchone()
                if row is None:
                    self._conn.rollback()
                    raise LeaseLost(delivery.queue_id, delivery.attempt)
                attempts_made = row["attempts_made"]
                dead = permanent or attempts_made >= row["max_attempts"]
                if dead:
                    cur = self._conn.execute(
                        "UPDATE work_queue SET status = ?, last_error = ? "
                        f"WHERE id = ? AND {_LEASE_HELD}",
                        (FAILED, reason, queue_id, *held),
                    )
                else:
                    delay = BackoffPolicy(delay_ms=row["backoff_delay_ms"]).delay_for(attempts_made)
                    cur = self._conn.execute(
                        "UPDATE work_queue SET status = ?, last_error = ?, available_at = ? "
                        f"WHERE id = ? AND {_LEASE_HELD}",
                        (WAITING, reason, self._clock() + delay, queue_id, *held),
                    )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise QueueError(f"Failed to record work item failure: {exc}") from exc
        if cur.rowcount != 1:
            raise LeaseLost(delivery.queue_id, delivery.attempt)
        if dead:
            self.logger.warning(
                "work_item_dead_lettered",
                queue_id=delivery.queue_id,
                attempts=attempts_made,
                permanent=permanent,
                reason=reason,
            )
            return False
        return True

    def outstanding(self) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT count(*) FROM work_queue WHERE status IN (?, ?)", (WAITING, ACTIVE)
            ).fetchone()
        return int(row[0])

    def collect_expired(self) -> list[DeadLetter]:
        with self._lock:
            expired, self._expired = self._expired, []
        return expired

    def dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, payload, attempts_made, last_error FROM work_queue WHERE status = ? ORDER BY id LIMIT ?",
                (FAILED, limit),
            ).fetchall()
        return [
            DeadLetter(
                queue_id=str(row["id"]),
                work_item=WorkItem.from_json(row["payload"]),
                attempts_made=row["attempts_made"],
                reason=row["last_error"] or "",
            )
            for row in rows
        ]


__all__ = ["SQLiteWorkQueue"]
