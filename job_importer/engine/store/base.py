"""Job store contract: unique-key create plus in-place update."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..parser import NormalizedItem


@dataclass(slots=True)
class JobRecord:
    """Deduplicated job posting keyed by ``external_id``."""

    external_id: str
    title: str = ""
    company: str = ""
    location: str = ""
    description: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    run_ids: set[str] = field(default_factory=set)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_item(cls, item: NormalizedItem, run_id: str) -> "JobRecord":
        return cls(
            external_id=item.external_id,
            title=item.title,
            company=item.company,
            location=item.location,
            description=item.description,
            raw=item.raw,
            run_ids={run_id},
        )

    def descriptive_fields(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "company": self.company,
            "location": self.location,
            "description": self.description,
            "raw": self.raw,
        }


class JobStore(ABC):
    """Uniform store contract so SQLite and MongoDB are interchangeable.

    The unique key on ``external_id`` is the only guard against duplicates:
    :meth:`create` must fail with :class:`~job_importer.errors.UniquenessConflict`
    when the key exists, and every other failure surfaces as
    :class:`~job_importer.errors.StoreError`.
    """

    @abstractmethod
    def create(self, record: JobRecord) -> None:
        """Insert a new record."""

    @abstractmethod
    def update(self, item: NormalizedItem, run_id: str) -> None:
        """Overwrite descriptive fields and add ``run_id`` to ``run_ids``."""

    @abstractmethod
    def get(self, external_id: str) -> JobRecord | None:
        """Load a record by key."""

    @abstractmethod
    def count(self) -> int:
        """Total number of stored records."""

    def close(self) -> None:
        return


__all__ = ["JobRecord", "JobStore"]
