"""Import run bookkeeping in MongoDB using atomic update operators."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ...errors import StoreError
from .base import FailedJob, ImportRun, RunPage, RunStatus, RunTracker, new_run_id


class MongoRunTracker(RunTracker):
    """One document per run; counters change only through ``$inc`` and ``$push``."""

    def __init__(
        self,
        collection: Collection,
        client: MongoClient | None = None,
        ensure_indexes: bool = True,
    ) -> None:
        self.client = client
        self.collection = collection
        if ensure_indexes:
            self.collection.create_index([("runId", ASCENDING)], unique=True)
            self.collection.create_index([("createdAt", DESCENDING)])

    @classmethod
    def connect(cls, uri: str, database: str, collection: str = "import_runs") -> "MongoRunTracker":
        client: MongoClient = MongoClient(uri)
        return cls(client[database][collection], client=client)

    def _update(self, query: dict[str, Any], update: dict[str, Any]) -> None:
        try:
            self.collection.update_one(query, update)
        except PyMongoError as exc:
            raise StoreError(f"Run tracker write failed: {exc}") from exc

    def create_run(self, label: str = "multiple") -> str:
        run_id = new_run_id()
        try:
            self.collection.insert_one(
                {
                    "runId": run_id,
                    "fileName": label,
                    "createdAt": datetime.now(timezone.utc),
                    "status": RunStatus.PENDING.value,
                    "totalFetched": 0,
                    "totalImported": 0,
                    "newJobs": 0,
                    "updatedJobs": 0,
                    "failedJobsCount": 0,
                    "failedJobs": [],
                    "pendingItems": 0,
                    "sealed": False,
                    "completedAt": None,
                }
            )
        except PyMongoError as exc:
            raise StoreError(f"Failed to create run: {exc}") from exc
        return run_id

    def mark_running(self, run_id: str) -> None:
        self._update(
            {"runId": run_id, "status": RunStatus.PENDING.value},
            {"$set": {"status": RunStatus.RUNNING.value}},
        )

    def increment_fetched(self, run_id: str, count: int) -> None:
        self._update({"runId": run_id}, {"$inc": {"totalFetched": count}})

    def record_created(self, run_id: str) -> None:
        self._update({"runId": run_id}, {"$inc": {"newJobs": 1, "totalImported": 1}})

    def record_updated(self, run_id: str) -> None:
        self._update({"runId": run_id}, {"$inc": {"updatedJobs": 1, "totalImported": 1}})

    def record_failure(self, run_id: str, item: dict[str, Any] | None, reason: str) -> None:
        self._update(
            {"runId": run_id},
            {
                "$inc": {"failedJobsCount": 1},
                "$push": {
                    "failedJobs": {
                        "item": item,
                        "reason": reason,
                        "recordedAt": datetime.now(timezone.utc),
                    }
                },
            },
        )

    def add_pending(self, run_id: str, count: int) -> None:
        self._update({"runId": run_id}, {"$inc": {"pendingItems": count}})

    def settle(self, run_id: str) -> None:
        self._update({"runId": run_id}, {"$inc": {"pendingItems": -1}})
        self._maybe_complete(run_id)

    def seal(self, run_id: str) -> None:
        self._update({"runId": run_id}, {"$set": {"sealed": True}})
        self._maybe_complete(run_id)

    def _maybe_complete(self, run_id: str) -> None:
        self._update(
            {
                "runId": run_id,
                "sealed": True,
                "pendingItems": {"$lte": 0},
                "status": {"$ne": RunStatus.COMPLETED.value},
            },
            {
                "$set": {
                    "status": RunStatus.COMPLETED.value,
                    "completedAt": datetime.now(timezone.utc),
                }
            },
        )

    def get_run(self, run_id: str) -> ImportRun | None:
        document = self.collection.find_one({"runId": run_id})
        return self._hydrate(document) if document else None

    def list_runs(self, page: int = 1, page_size: int = 50) -> RunPage:
        page = max(1, page)
        page_size = max(1, page_size)
        cursor = (
            self.collection.find()
            .sort("createdAt", DESCENDING)
            .skip((page - 1) * page_size)
            .limit(page_size)
        )
        items = [self._hydrate(document) for document in cursor]
        total = self.collection.count_documents({})
        return RunPage(items=items, page=page, page_size=page_size, total=total)

    @staticmethod
    def _hydrate(document: dict[str, Any]) -> ImportRun:
        return ImportRun(
            run_id=document["runId"],
            file_name=document.get("fileName", ""),
            created_at=document["createdAt"],
            status=RunStatus(document.get("status", RunStatus.PENDING.value)),
            total_fetched=document.get("totalFetched", 0),
            total_imported=document.get("totalImported", 0),
            new_jobs=document.get("newJobs", 0),
            updated_jobs=document.get("updatedJobs", 0),
            failed_jobs_count=document.get("failedJobsCount", 0),
            failed_jobs=[
                FailedJob(
                    item=failure.get("item"),
                    reason=failure.get("reason", ""),
                    recorded_at=failure.get("recordedAt"),
                )
                for failure in document.get("failedJobs") or []
            ],
            pending_items=document.get("pendingItems", 0),
            sealed=bool(document.get("sealed")),
            completed_at=document.get("completedAt"),
        )

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


__all__ = ["MongoRunTracker"]
