"""Pydantic models used across the job importer configuration flow."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_FEEDS = [
    "https://jobicy.com/?feed=job_feed",
    "https://www.higheredjobs.com/rss/articleFeed.cfm",
]


class ScheduleType(str, Enum):
    """Scheduler modes for the periodic import trigger."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ScheduleConfig(BaseModel):
    """Configuration describing when the import trigger should run."""

    type: ScheduleType = Field(default=ScheduleType.CRON)
    value: Any = Field(
        default="0 * * * *",
        description="Cron expression, interval seconds or ISO datetime, depending on type.",
    )

    @model_validator(mode="after")
    def _validate_value(self) -> "ScheduleConfig":
        if self.type is ScheduleType.CRON and not isinstance(self.value, str):
            raise ValueError("Cron schedule requires string expression")
        if self.type is ScheduleType.INTERVAL and not isinstance(self.value, (int, float, dict)):
            raise ValueError("Interval schedule requires seconds (int/float) or kwargs dict")
        if (
            self.type is ScheduleType.ONCE
            and self.value is not None
            and not isinstance(self.value, str)
        ):
            raise ValueError("Once schedule expects ISO datetime string or null")
        return self


class FetchConfig(BaseModel):
    """HTTP settings for feed retrieval."""

    timeout: float = 20.0
    retry_on_fail: int = 0
    user_agent: str | None = "job-importer/0.1 (+feed ingestion)"

    @model_validator(mode="after")
    def _validate_bounds(self) -> "FetchConfig":
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.retry_on_fail < 0:
            raise ValueError("retry_on_fail must be >= 0")
        return self


class BackoffConfig(BaseModel):
    """Delay curve applied between delivery attempts."""

    type: Literal["exponential"] = "exponential"
    delay_ms: int = 1000

    @field_validator("delay_ms")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("delay_ms must be >= 0")
        return value


class QueueConfig(BaseModel):
    """Work queue backend and retry policy."""

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: Path = Field(default=Path("data/queue.db"))
    attempts: int = 3
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    visibility_timeout: float = 300.0
    poll_interval: float = 0.5

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_bounds(self) -> "QueueConfig":
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be > 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        return self


class WorkerConfig(BaseModel):
    """Dedup worker pool sizing."""

    concurrency: int = 5

    @field_validator("concurrency")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("concurrency must be >= 1")
        return value


class StoreConfig(BaseModel):
    """Where job records and import runs are persisted."""

    backend: Literal["sqlite", "mongodb"] = "sqlite"
    sqlite_path: Path = Field(default=Path("data/importer.db"))
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_database: str = "job_importer"

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)


class GlobalConfig(BaseModel):
    """Global controls shared by trigger, workers and queries."""

    feeds: list[str] = Field(default_factory=lambda: list(DEFAULT_FEEDS))
    run_label: str = "multiple"
    feed_workers: int = 4
    default_page_size: int = 50
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    @field_validator("feeds", mode="before")
    @classmethod
    def _coerce_feeds(cls, value: Any) -> list[str]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(item).strip() for item in value if str(item).strip()]

    @model_validator(mode="after")
    def _validate_bounds(self) -> "GlobalConfig":
        if self.feed_workers < 1:
            raise ValueError("feed_workers must be >= 1")
        if self.default_page_size < 1:
            raise ValueError("default_page_size must be >= 1")
        return self

    def resolve_path(self, path: Path, base_dir: Path) -> Path:
        """Return ``path`` anchored at ``base_dir`` when it is relative."""

        if not path.is_absolute():
            return (base_dir / path).resolve()
        return path


__all__ = [
    "BackoffConfig",
    "DEFAULT_FEEDS",
    "FetchConfig",
    "GlobalConfig",
    "QueueConfig",
    "ScheduleConfig",
    "ScheduleType",
    "StoreConfig",
    "WorkerConfig",
]
