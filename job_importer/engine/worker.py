"""Dedup worker: idempotent upsert of queued items, plus the consumer pool."""

from __future__ import annotations

import time
from concurrent.futures import Future, wait
from dataclasses import dataclass
from enum import Enum
from threading import Event, Lock
from typing import Any

import structlog

from ..errors import LeaseLost, QueueError, StoreError, UniquenessConflict, ValidationError
from .parser import NormalizedItem
from .queue import DeadLetter, Delivery, WorkItem, WorkQueue
from .store import JobRecord, JobStore
from .thread_pool import ThreadPoolManager
from .tracker import RunTracker


class OutcomeStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass(slots=True)
class ProcessOutcome:
    status: OutcomeStatus
    external_id: str | None = None
    reason: str | None = None
    permanent: bool = False


class DedupWorker:
    """Merge one work item into the store and report the outcome to its run.

    Create is always attempted first; a uniqueness conflict means the job is
    already known and falls through to an update that overwrites descriptive
    fields and unions the run id. Processing the same item twice therefore
    never produces a second record, although run counters may count it twice.
    """

    def __init__(
        self,
        store: JobStore,
        tracker: RunTracker,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.logger = logger or structlog.get_logger("job_importer.worker")

    def process(self, work_item: WorkItem) -> ProcessOutcome:
        try:
            item = self._validate(work_item)
        except ValidationError as exc:
            reason = str(exc)
            self.logger.error("work_item_invalid", run_id=work_item.run_id, reason=reason)
            if work_item.run_id:
                self.tracker.record_failure(work_item.run_id, _item_payload(work_item), reason)
            return ProcessOutcome(OutcomeStatus.FAILED, reason=reason, permanent=True)

        try:
            self.store.create(JobRecord.from_item(item, work_item.run_id))
        except UniquenessConflict:
            return self._update_existing(work_item, item)
        except StoreError as exc:
            return self._record_failure(work_item, exc, stage="create")

        self.tracker.record_created(work_item.run_id)
        self.logger.info("job_created", external_id=item.external_id, run_id=work_item.run_id)
        return ProcessOutcome(OutcomeStatus.CREATED, external_id=item.external_id)

    def _update_existing(self, work_item: WorkItem, item: NormalizedItem) -> ProcessOutcome:
        try:
            self.store.update(item, work_item.run_id)
        except StoreError as exc:
            return self._record_failure(work_item, exc, stage="update")
        self.tracker.record_updated(work_item.run_id)
        self.logger.info("job_updated", external_id=item.external_id, run_id=work_item.run_id)
        return ProcessOutcome(OutcomeStatus.UPDATED, external_id=item.external_id)

    def _record_failure(self, work_item: WorkItem, exc: Exception, stage: str) -> ProcessOutcome:
        reason = str(exc)
        external_id = work_item.item.external_id if work_item.item else None
        self.logger.error(
            "job_upsert_failed",
            stage=stage,
            external_id=external_id,
            run_id=work_item.run_id,
            error=reason,
        )
        self.tracker.record_failure(work_item.run_id, _item_payload(work_item), reason)
        return ProcessOutcome(OutcomeStatus.FAILED, external_id=external_id, reason=reason)

    @staticmethod
    def _validate(work_item: WorkItem) -> NormalizedItem:
        item = work_item.item
        if not work_item.run_id or item is None or not item.external_id:
            raise ValidationError("Invalid work item (missing run_id or item.external_id)")
        return item


def _item_payload(work_item: WorkItem) -> dict[str, Any] | None:
    return work_item.item.to_dict() if work_item.item is not None else None


@dataclass
class PoolStats:
    created: int = 0
    updated: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    lost_leases: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "lost_leases": self.lost_leases,
        }


class WorkerPool:
    """``concurrency`` consumer threads pulling from one shared queue."""

    def __init__(
        self,
        queue: WorkQueue,
        worker: DedupWorker,
        tracker: RunTracker,
        concurrency: int = 5,
        poll_interval: float = 0.5,
        thread_pool: ThreadPoolManager | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.worker = worker
        self.tracker = tracker
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.thread_pool = thread_pool or ThreadPoolManager(concurrency)
        self.logger = logger or structlog.get_logger("job_importer.worker_pool")
        self.stats = PoolStats()
        self._stats_lock = Lock()
        self._stop = Event()
        self._futures: list[Future[None]] = []

    def start(self) -> None:
        """Launch consumers that run until :meth:`stop`."""

        self._stop.clear()
        executor = self.thread_pool.get("workers", max_workers=self.concurrency)
        self._futures = [
            executor.submit(self._consume, index, False) for index in range(self.concurrency)
        ]
        self.logger.info("worker_pool_started", concurrency=self.concurrency)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._futures:
            wait(self._futures, timeout=timeout)
        self._futures = []
        self.logger.info("worker_pool_stopped", **self.stats.as_dict())

    def run_until_idle(self, timeout: float | None = None) -> PoolStats:
        """Consume until nothing is waiting, delayed or leased, then return stats."""

        self._stop.clear()
        executor = self.thread_pool.get("workers", max_workers=self.concurrency)
        futures = [executor.submit(self._consume, index, True) for index in range(self.concurrency)]
        done, not_done = wait(futures, timeout=timeout)
        if not_done:
            self._stop.set()
            wait(not_done)
        for future in done:
            future.result()
        self.logger.info("worker_pool_drained", **self.stats.as_dict())
        return self.stats

    def _consume(self, index: int, stop_when_idle: bool) -> None:
        log = self.logger.bind(consumer=index)
        while not self._stop.is_set():
            try:
                delivery = self.queue.reserve(timeout=self.poll_interval)
            except QueueError as exc:
                log.error("queue_reserve_failed", error=str(exc))
                time.sleep(self.poll_interval)
                continue
            self.settle_expired()
            if delivery is None:
                if stop_when_idle and self.queue.outstanding() == 0:
                    return
                continue
            self.handle(delivery)

    def handle(self, delivery: Delivery) -> ProcessOutcome:
        """Process one delivery and settle it on the queue and the run."""

        work_item = delivery.work_item
        try:
            outcome = self.worker.process(work_item)
        except Exception as exc:  # noqa: BLE001
            self.logger.exception(
                "work_item_crashed", queue_id=delivery.queue_id, run_id=work_item.run_id
            )
            outcome = ProcessOutcome(OutcomeStatus.FAILED, reason=f"Unhandled error: {exc}")
            if work_item.run_id:
                try:
                    self.tracker.record_failure(
                        work_item.run_id, _item_payload(work_item), outcome.reason or ""
                    )
                except StoreError as tracker_exc:
                    self.logger.error("failure_record_lost", error=str(tracker_exc))

        if outcome.status is OutcomeStatus.FAILED:
            try:
                retrying = self.queue.fail(delivery, outcome.reason or "", permanent=outcome.permanent)
            except LeaseLost as exc:
                self._lease_lost(exc)
                return outcome
            with self._stats_lock:
                self.stats.failed += 1
                if retrying:
                    self.stats.retried += 1
                else:
                    self.stats.dead_lettered += 1
            if not retrying:
                self._settle(work_item)
            return outcome

        try:
            self.queue.ack(delivery)
        except LeaseLost as exc:
            self._lease_lost(exc)
            return outcome
        with self._stats_lock:
            if outcome.status is OutcomeStatus.CREATED:
                self.stats.created += 1
            else:
                self.stats.updated += 1
        self._settle(work_item)
        return outcome

    def settle_expired(self) -> list[DeadLetter]:
        """Record and settle items whose final lease ran out without a verdict."""

        expired = self.queue.collect_expired()
        for dead in expired:
            work_item = dead.work_item
            if work_item.run_id:
                try:
                    self.tracker.record_failure(work_item.run_id, _item_payload(work_item), dead.reason)
                except StoreError as exc:
                    self.logger.error("failure_record_lost", error=str(exc))
            with self._stats_lock:
                self.stats.failed += 1
                self.stats.dead_lettered += 1
            self._settle(work_item)
        return expired

    def _lease_lost(self, exc: LeaseLost) -> None:
        # the current lease holder settles the item and its run
        self.logger.warning("work_item_lease_lost", queue_id=exc.queue_id, attempt=exc.attempt)
        with self._stats_lock:
            self.stats.lost_leases += 1

    def _settle(self, work_item: WorkItem) -> None:
        if not work_item.run_id:
            return
        try:
            self.tracker.settle(work_item.run_id)
        except StoreError as exc:
            self.logger.error("run_settle_failed", run_id=work_item.run_id, error=str(exc))


__all__ = ["DedupWorker", "OutcomeStatus", "PoolStats", "ProcessOutcome", "WorkerPool"]
