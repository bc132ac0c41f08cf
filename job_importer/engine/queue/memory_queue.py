"""Process-local work queue."""

from __future__ import annotations

import heapq
import itertools
import time
from collections import deque
from dataclasses import dataclass
from threading import Condition
from typing import Callable

import structlog

from ...errors import LeaseLost
from .base import DeadLetter, Delivery, EnqueueOptions, WorkItem, WorkQueue


@dataclass
class _Entry:
    queue_id: str
    work_item: WorkItem
    options: EnqueueOptions
    attempts_made: int = 0


class InMemoryWorkQueue(WorkQueue):
    """Thread-safe queue for single-process runs and tests.

    Nothing survives a restart and leases never expire, so redelivery only
    happens through explicit retries.
    """

    def __init__(
        self,
        default_options: EnqueueOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(default_options)
        self._clock = clock
        self._cond = Condition()
        self._ids = itertools.count(1)
        self._ready: deque[_Entry] = deque()
        self._delayed: list[tuple[float, int, _Entry]] = []
        self._leased: dict[str, _Entry] = {}
        self._dead: list[DeadLetter] = []
        self.logger = structlog.get_logger("job_importer.queue")

    def enqueue(self, work_item: WorkItem, options: EnqueueOptions | None = None) -> str:
        with self._cond:
            queue_id = str(next(self._ids))
            self._ready.append(_Entry(queue_id, work_item, options or self.default_options))
            self._cond.notify()
            return queue_id

    def reserve(self, timeout: float = 0.0) -> Delivery | None:
        deadline = time.monotonic() + max(timeout, 0.0)
        with self._cond:
            while True:
                self._promote_due()
                if self._ready:
                    entry = self._ready.popleft()
                    entry.attempts_made += 1
                    self._leased[entry.queue_id] = entry
                    return Delivery(
                        queue_id=entry.queue_id,
                        work_item=entry.work_item,
                        attempt=entry.attempts_made,
                        max_attempts=entry.options.attempts,
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                if self._delayed:
                    remaining = min(remaining, max(self._delayed[0][0] - self._clock(), 0.001))
                self._cond.wait(remaining)

    def ack(self, delivery: Delivery) -> None:
        with self._cond:
            self._release(delivery)

    def fail(self, delivery: Delivery, reason: str, *, permanent: bool = False) -> bool:
        with self._cond:
            entry = self._release(delivery)
            if permanent or entry.attempts_made >= entry.options.attempts:
                self._dead.append(
                    DeadLetter(entry.queue_id, entry.work_item, entry.attempts_made, reason)
                )
                self.logger.warning(
                    "work_item_dead_lettered",
                    queue_id=entry.queue_id,
                    attempts=entry.attempts_made,
                    permanent=permanent,
                    reason=reason,
                )
                return False
            available_at = self._clock() + entry.options.backoff.delay_for(entry.attempts_made)
            heapq.heappush(self._delayed, (available_at, int(entry.queue_id), entry))
            self._cond.notify()
            return True

    def outstanding(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed) + len(self._leased)

    def dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        with self._cond:
            return list(self._dead[:limit])

    def _release(self, delivery: Delivery) -> _Entry:
        entry = self._leased.get(delivery.queue_id)
        if entry is None or entry.attempts_made != delivery.attempt:
            raise LeaseLost(delivery.queue_id, delivery.attempt)
        del self._leased[delivery.queue_id]
        return entry

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry = heapq.heappop(self._delayed)
            self._ready.append(entry)


__all__ = ["InMemoryWorkQueue"]
