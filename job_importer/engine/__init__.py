"""Engine components orchestrating fetch → normalise → queue → dedup upsert."""

from .fetcher import FeedFetchResult, Fetcher
from .parser import FeedKind, NormalizedItem, ParsedFeed, normalize_entry, parse_feed
from .queue import (
    BackoffPolicy,
    Delivery,
    EnqueueOptions,
    InMemoryWorkQueue,
    SQLiteWorkQueue,
    WorkItem,
    WorkQueue,
)
from .store import JobRecord, JobStore, MongoJobStore, SQLiteJobStore
from .thread_pool import ThreadPoolManager
from .tracker import ImportRun, MongoRunTracker, RunPage, RunStatus, RunTracker, SQLiteRunTracker
from .worker import DedupWorker, OutcomeStatus, ProcessOutcome, WorkerPool

__all__ = [
    "BackoffPolicy",
    "DedupWorker",
    "Delivery",
    "EnqueueOptions",
    "FeedFetchResult",
    "FeedKind",
    "Fetcher",
    "ImportRun",
    "InMemoryWorkQueue",
    "JobRecord",
    "JobStore",
    "MongoJobStore",
    "MongoRunTracker",
    "NormalizedItem",
    "OutcomeStatus",
    "ParsedFeed",
    "ProcessOutcome",
    "RunPage",
    "RunStatus",
    "RunTracker",
    "SQLiteJobStore",
    "SQLiteRunTracker",
    "SQLiteWorkQueue",
    "ThreadPoolManager",
    "WorkItem",
    "WorkQueue",
    "WorkerPool",
    "normalize_entry",
    "parse_feed",
]
