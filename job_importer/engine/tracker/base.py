"""Run tracker contract and import-run data shapes."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(slots=True)
class FailedJob:
    item: dict[str, Any] | None
    reason: str
    recorded_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "reason": self.reason,
            "recordedAt": self.recorded_at.isoformat() if self.recorded_at else None,
        }


@dataclass(slots=True)
class ImportRun:
    """Counters and lifecycle of one trigger invocation."""

    run_id: str
    file_name: str
    created_at: datetime
    status: RunStatus = RunStatus.PENDING
    total_fetched: int = 0
    total_imported: int = 0
    new_jobs: int = 0
    updated_jobs: int = 0
    failed_jobs_count: int = 0
    failed_jobs: list[FailedJob] = field(default_factory=list)
    pending_items: int = 0
    sealed: bool = False
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "fileName": self.file_name,
            "createdAt": self.created_at.isoformat(),
            "status": self.status.value,
            "totalFetched": self.total_fetched,
            "totalImported": self.total_imported,
            "newJobs": self.new_jobs,
            "updatedJobs": self.updated_jobs,
            "failedJobsCount": self.failed_jobs_count,
            "failedJobs": [failure.to_dict() for failure in self.failed_jobs],
            "pendingItems": self.pending_items,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(slots=True)
class RunPage:
    items: list[ImportRun]
    page: int
    page_size: int
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [run.to_dict() for run in self.items],
            "page": self.page,
            "pageSize": self.page_size,
            "total": self.total,
        }


def new_run_id() -> str:
    return uuid.uuid4().hex


class RunTracker(ABC):
    """Per-run counters that tolerate concurrent writers.

    Every mutation is a single atomic increment (or append) in the backing
    store; no method reads a counter, changes it in Python and writes it back.

    Lifecycle: a run starts ``pending``, becomes ``running`` once fetching
    begins and ``completed`` when it is sealed (every feed fetched and
    enqueued) and no enqueued item is still waiting for a terminal outcome.
    """

    @abstractmethod
    def create_run(self, label: str = "multiple") -> str:
        """Create a run record and return its id."""

    @abstractmethod
    def mark_running(self, run_id: str) -> None:
        ...

    @abstractmethod
    def increment_fetched(self, run_id: str, count: int) -> None:
        ...

    @abstractmethod
    def record_created(self, run_id: str) -> None:
        """``new_jobs`` and ``total_imported`` each grow by one."""

    @abstractmethod
    def record_updated(self, run_id: str) -> None:
        """``updated_jobs`` and ``total_imported`` each grow by one."""

    @abstractmethod
    def record_failure(self, run_id: str, item: dict[str, Any] | None, reason: str) -> None:
        """Append to ``failed_jobs`` and bump ``failed_jobs_count``."""

    @abstractmethod
    def add_pending(self, run_id: str, count: int) -> None:
        """Register ``count`` enqueued items awaiting a terminal outcome."""

    @abstractmethod
    def settle(self, run_id: str) -> None:
        """One enqueued item reached a terminal outcome."""

    @abstractmethod
    def seal(self, run_id: str) -> None:
        """No more items will be enqueued for this run."""

    @abstractmethod
    def get_run(self, run_id: str) -> ImportRun | None:
        ...

    @abstractmethod
    def list_runs(self, page: int = 1, page_size: int = 50) -> RunPage:
        """Runs ordered by creation time, newest first."""

    def close(self) -> None:
        return


__all__ = [
    "FailedJob",
    "ImportRun",
    "RunPage",
    "RunStatus",
    "RunTracker",
    "new_run_id",
]
