"""Exception hierarchy shared by the ingestion pipeline."""

from __future__ import annotations


class ImporterError(Exception):
    """Base class for all job importer errors."""


class FetchError(ImporterError):
    """Feed could not be retrieved (timeout, transport failure, bad status)."""

    def __init__(self, feed_url: str, message: str) -> None:
        super().__init__(message)
        self.feed_url = feed_url


class FeedParseError(FetchError):
    """Feed document was retrieved but could not be read as a feed."""


class ValidationError(ImporterError):
    """Work item is missing mandatory identifiers; retrying cannot help."""


class UniquenessConflict(ImporterError):
    """A record with the same natural key already exists."""

    def __init__(self, external_id: str) -> None:
        super().__init__(f"Job record already exists: {external_id}")
        self.external_id = external_id


class StoreError(ImporterError):
    """Backing store rejected or failed a write."""


class QueueError(ImporterError):
    """Queue backend failed to accept or hand out work."""


class LeaseLost(QueueError):
    """A delivery was settled after its lease had been handed to someone else."""

    def __init__(self, queue_id: str, attempt: int) -> None:
        super().__init__(f"Lease on work item {queue_id} (attempt {attempt}) is no longer held")
        self.queue_id = queue_id
        self.attempt = attempt


__all__ = [
    "FeedParseError",
    "FetchError",
    "ImporterError",
    "LeaseLost",
    "QueueError",
    "StoreError",
    "UniquenessConflict",
    "ValidationError",
]
