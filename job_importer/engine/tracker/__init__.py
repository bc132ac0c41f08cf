"""Run tracker SPI and implementations."""

from .base import FailedJob, ImportRun, RunPage, RunStatus, RunTracker, new_run_id
from .mongo_tracker import MongoRunTracker
from .sqlite_tracker import SQLiteRunTracker

__all__ = [
    "FailedJob",
    "ImportRun",
    "MongoRunTracker",
    "RunPage",
    "RunStatus",
    "RunTracker",
    "SQLiteRunTracker",
    "new_run_id",
]
