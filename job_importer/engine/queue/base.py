"""Work queue contract, wire shapes and retry policy."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ...config import QueueConfig
from ..parser import NormalizedItem


@dataclass(frozen=True, slots=True)
class WorkItem:
    """A normalised feed entry queued for upsert, tagged with its run."""

    run_id: str
    feed_url: str
    item: NormalizedItem | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "feedUrl": self.feed_url,
            "item": self.item.to_dict() if self.item is not None else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WorkItem":
        item = payload.get("item")
        return cls(
            run_id=str(payload.get("runId") or ""),
            feed_url=str(payload.get("feedUrl") or ""),
            item=NormalizedItem.from_dict(item) if isinstance(item, dict) else None,
        )

    @classmethod
    def from_json(cls, text: str) -> "WorkItem":
        return cls.from_dict(json.loads(text))


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential delay curve: attempt ``n`` failing waits ``delay_ms * 2**(n-1)``."""

    delay_ms: int = 1000
    type: str = "exponential"

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after ``attempt`` failed (1-based)."""

        if self.delay_ms <= 0:
            return 0.0
        return self.delay_ms * (2 ** max(attempt - 1, 0)) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "delayMs": self.delay_ms}


@dataclass(frozen=True, slots=True)
class EnqueueOptions:
    """Per-item delivery options: attempt budget and backoff."""

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")

    @classmethod
    def from_config(cls, config: QueueConfig) -> "EnqueueOptions":
        return cls(
            attempts=config.attempts,
            backoff=BackoffPolicy(delay_ms=config.backoff.delay_ms, type=config.backoff.type),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"attempts": self.attempts, "backoff": self.backoff.to_dict()}


@dataclass(frozen=True, slots=True)
class Delivery:
    """One hand-out of a queued item to a consumer."""

    queue_id: str
    work_item: WorkItem
    attempt: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """An item that exhausted its attempts or failed permanently."""

    queue_id: str
    work_item: WorkItem
    attempts_made: int
    reason: str


class WorkQueue(ABC):
    """FIFO of work items with at-least-once delivery and explicit retries.

    Consumers call :meth:`reserve`, process the item, then settle the delivery
    with :meth:`ack` or :meth:`fail`. A failed delivery is retried after the
    item's backoff delay until its attempt budget is spent, after which it is
    dead-lettered and never handed out again.
    """

    def __init__(self, default_options: EnqueueOptions | None = None) -> None:
        self.default_options = default_options or EnqueueOptions()

    @abstractmethod
    def enqueue(self, work_item: WorkItem, options: EnqueueOptions | None = None) -> str:
        """Append an item; return its queue id."""

    def enqueue_many(
        self, work_items: list[WorkItem], options: EnqueueOptions | None = None
    ) -> list[str]:
        return [self.enqueue(work_item, options) for work_item in work_items]

    @abstractmethod
    def reserve(self, timeout: float = 0.0) -> Delivery | None:
        """Lease the oldest available item, waiting up to ``timeout`` seconds."""

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        """Mark a delivery as successfully processed.

        Raises :class:`~job_importer.errors.LeaseLost` when the delivery no
        longer holds the item's lease.
        """

    @abstractmethod
    def fail(self, delivery: Delivery, reason: str, *, permanent: bool = False) -> bool:
        """Record a failed delivery; return ``True`` when a retry was scheduled.

        Raises :class:`~job_importer.errors.LeaseLost` like :meth:`ack`.
        """

    @abstractmethod
    def outstanding(self) -> int:
        """Count items waiting, delayed for retry or currently leased."""

    @abstractmethod
    def dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        """Return permanently failed items, oldest first."""

    def collect_expired(self) -> list[DeadLetter]:
        """Return and forget items dead-lettered because a final lease ran out."""

        return []

    def close(self) -> None:
        return


__all__ = [
    "BackoffPolicy",
    "DeadLetter",
    "Delivery",
    "EnqueueOptions",
    "WorkItem",
    "WorkQueue",
]
