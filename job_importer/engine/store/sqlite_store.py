"""Persist job records in SQLite."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from ...errors import StoreError, UniquenessConflict
from ...infra.storage import SQLiteManager
from ..parser import NormalizedItem
from .base import JobRecord, JobStore


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteJobStore(JobStore):
    """Job records in ``jobs`` with run membership in ``job_runs``.

    Run membership is a separate keyed table so adding a run id is an
    ``INSERT OR IGNORE``, a set union that tolerates repeats.
    """

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = Path(db_path)
        self._conn = self.manager.connect(self.db_path)
        self._lock = self.manager.lock(self.db_path)

    def create(self, record: JobRecord) -> None:
        now = _now()
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO jobs(external_id, title, company, location, description, raw,
                                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.external_id,
                        record.title,
                        record.company,
                        record.location,
                        record.description,
                        json.dumps(record.raw, ensure_ascii=False),
                        now,
                        now,
                    ),
                )
                self._conn.executemany(
                    "INSERT OR IGNORE INTO job_runs(external_id, run_id) VALUES (?, ?)",
                    [(record.external_id, run_id) for run_id in sorted(record.run_ids)],
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise UniquenessConflict(record.external_id) from exc
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"Failed to create job {record.external_id}: {exc}") from exc

    def update(self, item: NormalizedItem, run_id: str) -> None:
        with self._lock:
            try:
                cur = self._conn.execute(
                    """
                    UPDATE jobs
                    SET title = ?, company = ?, location = ?, description = ?, raw = ?, updated_at = ?
                    WHERE external_id = ?
                    """,
                    (
                        item.title,
                        item.company,
                        item.location,
                        item.description,
                        json.dumps(item.raw, ensure_ascii=False),
                        _now(),
                        item.external_id,
                    ),
                )
                if cur.rowcount == 0:
                    self._conn.rollback()
                    raise StoreError(f"Job {item.external_id} vanished before update")
                self._conn.execute(
                    "INSERT OR IGNORE INTO job_runs(external_id, run_id) VALUES (?, ?)",
                    (item.external_id, run_id),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"Failed to update job {item.external_id}: {exc}") from exc

    def get(self, external_id: str) -> JobRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM jobs WHERE external_id = ?", (external_id,)
            ).fetchone()
            if row is None:
                return None
            run_rows = self._conn.execute(
                "SELECT run_id FROM job_runs WHERE external_id = ?", (external_id,)
            ).fetchall()
        return JobRecord(
            external_id=row["external_id"],
            title=row["title"],
            company=row["company"],
            location=row["location"],
            description=row["description"],
            raw=json.loads(row["raw"]) if row["raw"] else {},
            run_ids={run_row["run_id"] for run_row in run_rows},
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT count(*) FROM jobs").fetchone()
        return int(row[0])


__all__ = ["SQLiteJobStore"]
