"""Pipeline orchestrator wiring fetch, normalisation, queueing and run tracking."""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Iterable

from .config import GlobalConfig
from .engine import EnqueueOptions, Fetcher, ThreadPoolManager, WorkItem, WorkQueue
from .engine.tracker import ImportRun, RunPage, RunTracker
from .errors import QueueError
from .logging_conf import configure_logging, feed_logger


@dataclass(slots=True)
class FeedResult:
    """Per-feed line of a trigger summary: either ``fetched`` or ``error`` is set."""

    feed_url: str
    fetched: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"feedUrl": self.feed_url, "error": self.error}
        return {"feedUrl": self.feed_url, "fetched": self.fetched or 0}


@dataclass(slots=True)
class TriggerResult:
    run_id: str
    results: list[FeedResult]

    @property
    def total_fetched(self) -> int:
        return sum(result.fetched or 0 for result in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {"runId": self.run_id, "results": [result.to_dict() for result in self.results]}


class Orchestrator:
    """Central coordinator for import runs.

    ``trigger`` returns once every feed has been fetched and its items
    enqueued; processing continues asynchronously in the worker pool.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        queue: WorkQueue,
        tracker: RunTracker,
        thread_pool: ThreadPoolManager,
        global_config: GlobalConfig | None = None,
        enqueue_options: EnqueueOptions | None = None,
    ) -> None:
        self.global_config = global_config or GlobalConfig()
        self.fetcher = fetcher
        self.queue = queue
        self.tracker = tracker
        self.thread_pool = thread_pool
        self.enqueue_options = enqueue_options or EnqueueOptions.from_config(
            self.global_config.queue
        )
        self.logger = configure_logging().bind(component="orchestrator")

    # ------------------------------------------------------------------
    def trigger(
        self, feed_urls: Iterable[str] | None = None, label: str | None = None
    ) -> TriggerResult:
        source = self.global_config.feeds if feed_urls is None else feed_urls
        feeds = [url.strip() for url in source if url and url.strip()]
        if not feeds:
            raise ValueError("No feeds configured")

        run_id = self.tracker.create_run(label or self.global_config.run_label)
        self.tracker.mark_running(run_id)
        self.logger.info("import_triggered", run_id=run_id, feeds=len(feeds))

        executor = self.thread_pool.get("feeds", max_workers=self.global_config.feed_workers)
        futures: list[tuple[str, Future[FeedResult]]] = [
            (feed_url, executor.submit(self._ingest_feed, run_id, feed_url)) for feed_url in feeds
        ]
        results: list[FeedResult] = []
        for feed_url, future in futures:
            try:
                results.append(future.result())
            except Exception as exc:  # noqa: BLE001
                self.logger.error("feed_ingest_crashed", run_id=run_id, feed_url=feed_url, error=str(exc))
                results.append(FeedResult(feed_url=feed_url, error=str(exc)))

        self.tracker.seal(run_id)
        summary = TriggerResult(run_id=run_id, results=results)
        self.logger.info(
            "import_enqueued",
            run_id=run_id,
            fetched=summary.total_fetched,
            failed_feeds=sum(1 for result in results if not result.ok),
        )
        return summary

    def _ingest_feed(self, run_id: str, feed_url: str) -> FeedResult:
        log = feed_logger(feed_url).bind(run_id=run_id)
        fetched = self.fetcher.fetch(feed_url)
        if fetched.error is not None:
            log.warning("feed_skipped", error=str(fetched.error))
            return FeedResult(feed_url=feed_url, error=str(fetched.error))

        enqueued = 0
        try:
            for item in fetched.items:
                self.queue.enqueue(WorkItem(run_id, feed_url, item), self.enqueue_options)
                enqueued += 1
        except QueueError as exc:
            log.error("feed_enqueue_failed", enqueued=enqueued, total=len(fetched.items), error=str(exc))
            return FeedResult(
                feed_url=feed_url,
                error=f"Enqueue failed after {enqueued} of {len(fetched.items)} items: {exc}",
            )
        finally:
            if enqueued:
                self.tracker.add_pending(run_id, enqueued)

        self.tracker.increment_fetched(run_id, len(fetched.items))
        log.info("feed_enqueued", fetched=len(fetched.items))
        return FeedResult(feed_url=feed_url, fetched=len(fetched.items))

    # ------------------------------------------------------------------
    def list_runs(self, page: int = 1, page_size: int | None = None) -> RunPage:
        size = page_size if page_size is not None else self.global_config.default_page_size
        return self.tracker.list_runs(page=max(1, page), page_size=max(1, size))

    def get_run(self, run_id: str) -> ImportRun | None:
        return self.tracker.get_run(run_id)

    def close(self) -> None:
        self.fetcher.close()


__all__ = ["FeedResult", "Orchestrator", "TriggerResult"]
