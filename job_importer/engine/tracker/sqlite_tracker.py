"""Import run bookkeeping in SQLite."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ...errors import StoreError
from ...infra.storage import SQLiteManager
from .base import FailedJob, ImportRun, RunPage, RunStatus, RunTracker, new_run_id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunTracker(RunTracker):
    """Counters live in ``import_runs``; failures are rows in ``run_failures``."""

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = Path(db_path)
        self._conn = self.manager.connect(self.db_path)
        self._lock = self.manager.lock(self.db_path)

    def _execute(self, statements: list[tuple[str, tuple[Any, ...]]]) -> None:
        with self._lock:
            try:
                for sql, params in statements:
                    self._conn.execute(sql, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"Run tracker write failed: {exc}") from exc

    def create_run(self, label: str = "multiple") -> str:
        run_id = new_run_id()
        self._execute(
            [
                (
                    "INSERT INTO import_runs(run_id, file_name, created_at, status) VALUES (?, ?, ?, ?)",
                    (run_id, label, _now(), RunStatus.PENDING.value),
                )
            ]
        )
        return run_id

    def mark_running(self, run_id: str) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET status = ? WHERE run_id = ? AND status = ?",
                    (RunStatus.RUNNING.value, run_id, RunStatus.PENDING.value),
                )
            ]
        )

    def increment_fetched(self, run_id: str, count: int) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET total_fetched = total_fetched + ? WHERE run_id = ?",
                    (count, run_id),
                )
            ]
        )

    def record_created(self, run_id: str) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET new_jobs = new_jobs + 1, total_imported = total_imported + 1 WHERE run_id = ?",
                    (run_id,),
                )
            ]
        )

    def record_updated(self, run_id: str) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET updated_jobs = updated_jobs + 1, total_imported = total_imported + 1 WHERE run_id = ?",
                    (run_id,),
                )
            ]
        )

    def record_failure(self, run_id: str, item: dict[str, Any] | None, reason: str) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET failed_jobs_count = failed_jobs_count + 1 WHERE run_id = ?",
                    (run_id,),
                ),
                (
                    "INSERT INTO run_failures(run_id, item, reason, recorded_at) VALUES (?, ?, ?, ?)",
                    (run_id, json.dumps(item, ensure_ascii=False), reason, _now()),
                ),
            ]
        )

    def add_pending(self, run_id: str, count: int) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET pending_items = pending_items + ? WHERE run_id = ?",
                    (count, run_id),
                )
            ]
        )

    def settle(self, run_id: str) -> None:
        self._execute(
            [
                (
                    "UPDATE import_runs SET pending_items = pending_items - 1 WHERE run_id = ?",
                    (run_id,),
                ),
                self._completion_statement(run_id),
            ]
        )

    def seal(self, run_id: str) -> None:
        self._execute(
            [
                ("UPDATE import_runs SET sealed = 1 WHERE run_id = ?", (run_id,)),
                self._completion_statement(run_id),
            ]
        )

    @staticmethod
    def _completion_statement(run_id: str) -> tuple[str, tuple[Any, ...]]:
        return (
            """
            UPDATE import_runs SET status = ?, completed_at = ?
            WHERE run_id = ? AND sealed = 1 AND pending_items <= 0 AND status != ?
            """,
            (RunStatus.COMPLETED.value, _now(), run_id, RunStatus.COMPLETED.value),
        )

    def get_run(self, run_id: str) -> ImportRun | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM import_runs WHERE run_id = ?", (run_id,)
            ).fetchone()
            if row is None:
                return None
            return self._hydrate(row)

    def list_runs(self, page: int = 1, page_size: int = 50) -> RunPage:
        page = max(1, page)
        page_size = max(1, page_size)
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM import_runs ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (page_size, (page - 1) * page_size),
            ).fetchall()
            total = self._conn.execute("SELECT count(*) FROM import_runs").fetchone()[0]
            items = [self._hydrate(row) for row in rows]
        return RunPage(items=items, page=page, page_size=page_size, total=int(total))

    def _hydrate(self, row: sqlite3.Row) -> ImportRun:
        failure_rows = self._conn.execute(
            "SELECT item, reason, recorded_at FROM run_failures WHERE run_id = ? ORDER BY id",
            (row["run_id"],),
        ).fetchall()
        return ImportRun(
            run_id=row["run_id"],
            file_name=row["file_name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            status=RunStatus(row["status"]),
            total_fetched=row["total_fetched"],
            total_imported=row["total_imported"],
            new_jobs=row["new_jobs"],
            updated_jobs=row["updated_jobs"],
            failed_jobs_count=row["failed_jobs_count"],
            failed_jobs=[
                FailedJob(
                    item=json.loads(failure["item"]) if failure["item"] else None,
                    reason=failure["reason"],
                    recorded_at=_parse_ts(failure["recorded_at"]),
                )
                for failure in failure_rows
            ],
            pending_items=row["pending_items"],
            sealed=bool(row["sealed"]),
            completed_at=_parse_ts(row["completed_at"]),
        )


__all__ = ["SQLiteRunTracker"]
