"""MongoDB job store."""

from __future__ import annotations

from datetime import datetime, timezone

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from ...errors import StoreError, UniquenessConflict
from ..parser import NormalizedItem
from .base import JobRecord, JobStore


class MongoJobStore(JobStore):
    """Write job records into a MongoDB collection with a unique ``externalId`` index."""

    def __init__(
        self,
        collection: Collection,
        client: MongoClient | None = None,
        ensure_indexes: bool = True,
    ) -> None:
        self.client = client
        self.collection = collection
        if ensure_indexes:
            self.collection.create_index([("externalId", ASCENDING)], unique=True)

    @classmethod
    def connect(cls, uri: str, database: str, collection: str = "jobs") -> "MongoJobStore":
        client: MongoClient = MongoClient(uri)
        return cls(client[database][collection], client=client)

    def create(self, record: JobRecord) -> None:
        now = datetime.now(timezone.utc)
        document = {
            "externalId": record.external_id,
            **record.descriptive_fields(),
            "runIds": sorted(record.run_ids),
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            self.collection.insert_one(document)
        except DuplicateKeyError as exc:
            raise UniquenessConflict(record.external_id) from exc
        except PyMongoError as exc:
            raise StoreError(f"Failed to create job {record.external_id}: {exc}") from exc

    def update(self, item: NormalizedItem, run_id: str) -> None:
        try:
            result = self.collection.update_one(
                {"externalId": item.external_id},
                {
                    "$set": {
                        "title": item.title,
                        "company": item.company,
                        "location": item.location,
                        "description": item.description,
                        "raw": item.raw,
                        "updatedAt": datetime.now(timezone.utc),
                    },
                    "$addToSet": {"runIds": run_id},
                },
            )
        except PyMongoError as exc:
            raise StoreError(f"Failed to update job {item.external_id}: {exc}") from exc
        if result.matched_count == 0:
            raise StoreError(f"Job {item.external_id} vanished before update")

    def get(self, external_id: str) -> JobRecord | None:
        document = self.collection.find_one({"externalId": external_id})
        if document is None:
            return None
        return JobRecord(
            external_id=document["externalId"],
            title=document.get("title", ""),
            company=document.get("company", ""),
            location=document.get("location", ""),
            description=document.get("description", ""),
            raw=document.get("raw") or {},
            run_ids=set(document.get("runIds") or []),
            created_at=document.get("createdAt"),
            updated_at=document.get("updatedAt"),
        )

    def count(self) -> int:
        return self.collection.count_documents({})

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


__all__ = ["MongoJobStore"]
