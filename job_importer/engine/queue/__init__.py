"""Work queue contract and backends."""

from .base import BackoffPolicy, DeadLetter, Delivery, EnqueueOptions, WorkItem, WorkQueue
from .memory_queue import InMemoryWorkQueue
from .sqlite_queue import SQLiteWorkQueue

__all__ = [
    "BackoffPolicy",
    "DeadLetter",
    "Delivery",
    "EnqueueOptions",
    "InMemoryWorkQueue",
    "SQLiteWorkQueue",
    "WorkItem",
    "WorkQueue",
]
