"""Job store SPI and implementations."""

from .base import JobRecord, JobStore
from .mongo_store import MongoJobStore
from .sqlite_store import SQLiteJobStore

__all__ = ["JobRecord", "JobStore", "MongoJobStore", "SQLiteJobStore"]
