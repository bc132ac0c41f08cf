"""HTTP feed retrieval with bounded timeout and failure isolation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from ..config import FetchConfig
from ..errors import FetchError
from .parser import FeedKind, NormalizedItem, normalize_feed, parse_feed


@dataclass(slots=True)
class FeedFetchResult:
    """Outcome of fetching one feed; ``error`` is set when ``items`` is empty by failure."""

    feed_url: str
    items: list[NormalizedItem] = field(default_factory=list)
    kind: FeedKind | None = None
    error: FetchError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Fetcher:
    """Retrieve feed documents and hand them to the normaliser."""

    def __init__(
        self,
        config: FetchConfig | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config or FetchConfig()
        self.logger = logger or structlog.get_logger("job_importer.fetcher")
        headers = {"User-Agent": self.config.user_agent} if self.config.user_agent else None
        self._client = httpx.Client(
            follow_redirects=True,
            timeout=self.config.timeout,
            headers=headers,
        )

    def close(self) -> None:
        self._client.close()

    def fetch(self, feed_url: str) -> FeedFetchResult:
        """Fetch and normalise ``feed_url``; failures are returned, never raised."""

        try:
            text = self._download(feed_url)
            parsed = parse_feed(text, feed_url)
        except FetchError as exc:
            self.logger.warning("feed_fetch_failed", feed_url=feed_url, error=str(exc))
            return FeedFetchResult(feed_url=feed_url, error=exc)
        items = normalize_feed(parsed)
        if parsed.kind is FeedKind.UNKNOWN:
            self.logger.warning("feed_shape_unrecognised", feed_url=feed_url)
        self.logger.info("feed_fetched", feed_url=feed_url, kind=parsed.kind.value, items=len(items))
        return FeedFetchResult(feed_url=feed_url, items=items, kind=parsed.kind)

    def _download(self, feed_url: str) -> bytes:
        attempts = self.config.retry_on_fail + 1
        last_error = FetchError(feed_url, "No fetch attempt was made")
        for attempt in range(1, attempts + 1):
            try:
                response = self._client.request(
                    method="GET", url=feed_url, timeout=self.config.timeout
                )
            except httpx.TimeoutException as exc:
                last_error = FetchError(feed_url, f"Timed out after {self.config.timeout}s: {exc}")
                retryable = True
            except httpx.HTTPError as exc:
                last_error = FetchError(feed_url, f"Transport failure: {exc}")
                retryable = True
            else:
                if not self._is_failure(response):
                    return response.content
                last_error = FetchError(feed_url, f"Unexpected status {response.status_code}")
                retryable = self._is_retryable(response)
            self.logger.debug(
                "feed_fetch_attempt_failed",
                feed_url=feed_url,
                attempt=attempt,
                error=str(last_error),
            )
            if not retryable:
                break
        raise last_error

    @staticmethod
    def _is_failure(response: Any) -> bool:
        status_code = getattr(response, "status_code", 0)
        return status_code >= 400 or status_code == 0

    @staticmethod
    def _is_retryable(response: Any) -> bool:
        status_code = getattr(response, "status_code", 0)
        return status_code >= 500 or status_code == 429


__all__ = ["FeedFetchResult", "Fetcher"]
