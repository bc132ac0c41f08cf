"""Shared fixtures for the job importer test-suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from job_importer.config import ConfigLocator, ConfigRepository, GlobalConfig
from job_importer.engine import (
    InMemoryWorkQueue,
    NormalizedItem,
    SQLiteJobStore,
    SQLiteRunTracker,
    SQLiteWorkQueue,
)
from job_importer.engine.queue import BackoffPolicy, EnqueueOptions
from job_importer.infra import SQLiteManager

RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example jobs</title>
    <item>
      <title>Backend Engineer</title>
      <link>https://jobs.example.com/1</link>
      <guid isPermaLink="false">job-1</guid>
      <dc:creator>Acme</dc:creator>
      <location>Remote</location>
      <description>Build APIs</description>
    </item>
    <item>
      <title>Data Analyst</title>
      <guid>job-2</guid>
      <author>Globex</author>
      <content:encoded><![CDATA[<p>Crunch numbers</p>]]></content:encoded>
    </item>
  </channel>
</rss>
"""

ATOM_FEED = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom jobs</title>
  <entry>
    <id>urn:uuid:atom-1</id>
    <title>Site Reliability Engineer</title>
    <link rel="self" href="https://jobs.example.org/feed/atom-1"/>
    <link rel="alternate" href="https://jobs.example.org/atom-1"/>
    <author><name>Initech</name></author>
    <summary>Keep things running</summary>
  </entry>
</feed>
"""


class FakeClock:
    """Manually advanced clock for queue timing."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def importer_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(home))
    for name in ("JOB_IMPORTER_FEEDS", "JOB_IMPORTER_CONCURRENCY", "JOB_IMPORTER_MONGO_URI"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def rss_feed() -> str:
    return RSS_FEED


@pytest.fixture
def atom_feed() -> str:
    return ATOM_FEED


@pytest.fixture
def make_item() -> Callable[..., NormalizedItem]:
    def _builder(external_id: str = "job-1", **overrides: Any) -> NormalizedItem:
        base: dict[str, Any] = {
            "title": f"Title {external_id}",
            "company": "Acme",
            "location": "Remote",
            "description": "Build things",
            "raw": {"guid": [external_id]},
        }
        base.update(overrides)
        return NormalizedItem(external_id=external_id, **base)

    return _builder


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_options() -> EnqueueOptions:
    return EnqueueOptions(attempts=3, backoff=BackoffPolicy(delay_ms=0))


@pytest.fixture
def sqlite_manager() -> Iterable[SQLiteManager]:
    manager = SQLiteManager()
    yield manager
    manager.close_all()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "importer.db"


@pytest.fixture
def job_store(sqlite_manager: SQLiteManager, db_path: Path) -> SQLiteJobStore:
    return SQLiteJobStore(sqlite_manager, db_path)


@pytest.fixture
def run_tracker(sqlite_manager: SQLiteManager, db_path: Path) -> SQLiteRunTracker:
    return SQLiteRunTracker(sqlite_manager, db_path)


@pytest.fixture
def memory_queue(fast_options: EnqueueOptions) -> InMemoryWorkQueue:
    return InMemoryWorkQueue(default_options=fast_options)


@pytest.fixture
def sqlite_queue(sqlite_manager: SQLiteManager, tmp_path: Path, fake_clock: FakeClock) -> SQLiteWorkQueue:
    return SQLiteWorkQueue(
        sqlite_manager,
        tmp_path / "queue.db",
        visibility_timeout=60.0,
        poll_interval=0.01,
        clock=fake_clock,
    )


@pytest.fixture
def sample_global_config() -> GlobalConfig:
    return GlobalConfig(feeds=["https://feeds.example.com/a", "https://feeds.example.com/b"])


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("JOB_IMPORTER_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
