"""Logging configuration built around structlog JSON logging."""

from __future__ import annotations

import logging
import logging.config
import os
import re
from pathlib import Path
from typing import Iterable
from urllib.parse import urlparse

import structlog

_LOGGING_INITIALISED = False


def _default_log_dir() -> Path:
    env_root = os.environ.get("JOB_IMPORTER_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def feed_slug(feed_url: str) -> str:
    """Return a filesystem friendly name for a feed URL."""

    parsed = urlparse(feed_url)
    base = f"{parsed.netloc}{parsed.path}" if parsed.netloc else feed_url
    slug = re.sub(r"[^0-9A-Za-z_-]+", "_", base).strip("_")
    return slug[:120] or "feed"


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return application logger."""

    global _LOGGING_INITIALISED
    log_dir = _default_log_dir()
    error_log = log_dir / "error.log"
    importer_log = log_dir / "importer.log"
    feeds_dir = log_dir / "feeds"
    feeds_dir.mkdir(parents=True, exist_ok=True)
    error_log.touch(exist_ok=True)
    importer_log.touch(exist_ok=True)

    if not _LOGGING_INITIALISED:
        level = "DEBUG" if verbose else "INFO"
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "plain": {
                        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                        "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": level,
                        "formatter": "plain",
                    },
                    "importer_file": {
                        "class": "logging.FileHandler",
                        "level": "INFO",
                        "filename": str(importer_log),
                        "formatter": "plain",
                    },
                    "error_file": {
                        "class": "logging.FileHandler",
                        "level": "ERROR",
                        "filename": str(error_log),
                        "formatter": "plain",
                    },
                },
                "loggers": {
                    "job_importer": {
                        "handlers": ["console", "importer_file", "error_file"],
                        "level": level,
                        "propagate": False,
                    },
                },
            }
        )

        # Events reach the JSON formatter as dicts and are merged into the record
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger("job_importer")


def feed_logger(feed_url: str, verbose: bool = False) -> structlog.BoundLogger:
    """Return a logger bound to a specific feed and ensure its file handler exists."""

    configure_logging(verbose)
    slug = feed_slug(feed_url)
    feed_log_path = _default_log_dir() / "feeds" / f"{slug}.log"
    feed_log_path.parent.mkdir(parents=True, exist_ok=True)

    logger_name = f"job_importer.feed.{slug}"
    py_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(feed_log_path)
        for handler in py_logger.handlers
    ):
        file_handler = logging.FileHandler(feed_log_path, encoding="utf-8")
        global_logger = logging.getLogger("job_importer")
        if global_logger.handlers:
            file_handler.setFormatter(global_logger.handlers[0].formatter)
        file_handler.setLevel(logging.INFO)
        py_logger.addHandler(file_handler)

    return structlog.get_logger(logger_name).bind(feed_url=feed_url)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_feed_logs() -> Iterable[Path]:
    """Yield available per-feed log file paths."""

    feeds_dir = _default_log_dir() / "feeds"
    if not feeds_dir.exists():
        return []
    return sorted(p for p in feeds_dir.glob("*.log"))


def log_dir() -> Path:
    return _default_log_dir()


__all__ = [
    "available_feed_logs",
    "configure_logging",
    "feed_logger",
    "feed_slug",
    "log_dir",
    "tail_log",
]
