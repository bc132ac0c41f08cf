"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    DEFAULT_FEEDS,
    BackoffConfig,
    FetchConfig,
    GlobalConfig,
    QueueConfig,
    ScheduleConfig,
    ScheduleType,
    StoreConfig,
    WorkerConfig,
)

__all__ = [
    "BackoffConfig",
    "ConfigLocator",
    "ConfigRepository",
    "DEFAULT_FEEDS",
    "FetchConfig",
    "GlobalConfig",
    "QueueConfig",
    "ScheduleConfig",
    "ScheduleType",
    "StoreConfig",
    "WorkerConfig",
]
