"""Feed document parsing and entry normalisation.

Parsing happens in two explicit steps: :func:`parse_feed` runs the document
through feedparser, classifies it as RSS or Atom from the detected version and
converts every entry to a plain JSON-safe mapping, then
:func:`normalize_entry` maps one entry onto :class:`NormalizedItem`.

Entry mappings use feedparser's keys: an RSS ``guid`` and an Atom ``id`` both
arrive as ``id``, ``link`` is the entry's alternate link, ``author`` covers
``author``, ``dc:creator`` and Atom ``author/name``, and elements feedparser
has no mapping for (``location``) keep their tag name.
"""

from __future__ import annotations

import io
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

import feedparser

from ..errors import FeedParseError


class FeedKind(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    UNKNOWN = "unknown"

    @classmethod
    def from_version(cls, version: str | None) -> "FeedKind":
        version = version or ""
        if version.startswith("rss"):
            return cls.RSS
        if version.startswith("atom"):
            return cls.ATOM
        return cls.UNKNOWN


@dataclass(slots=True)
class ParsedFeed:
    """Tagged parse result: which wire shape was found and its raw entries."""

    kind: FeedKind
    entries: list[dict[str, Any]] = field(default_factory=list)
    version: str = ""


@dataclass(slots=True)
class NormalizedItem:
    """Uniform item shape produced from any supported feed entry."""

    external_id: str
    title: str = ""
    company: str = ""
    location: str = ""
    description: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "title": self.title,
            "company": self.company,
            "location": self.location,
            "description": self.description,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NormalizedItem":
        return cls(
            external_id=str(payload.get("externalId") or ""),
            title=str(payload.get("title") or ""),
            company=str(payload.get("company") or ""),
            location=str(payload.get("location") or ""),
            description=str(payload.get("description") or ""),
            raw=payload.get("raw") or {},
        )


def _plain(value: Any) -> Any:
    """Turn feedparser values (FeedParserDict, struct_time) into JSON-safe data."""

    if isinstance(value, time.struct_time):
        return datetime(*value[:6], tzinfo=timezone.utc).isoformat()
    if isinstance(value, dict):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def parse_feed(text: str | bytes, feed_url: str = "") -> ParsedFeed:
    """Parse a feed document; raise :class:`FeedParseError` when nothing is readable."""

    data = text.encode("utf-8") if isinstance(text, str) else text
    # A file object keeps feedparser from treating the document as a URL or path
    feed = feedparser.parse(io.BytesIO(data))
    if feed.bozo and not feed.entries:
        raise FeedParseError(feed_url, f"Malformed feed document: {feed.get('bozo_exception')}")
    version = feed.get("version") or ""
    return ParsedFeed(
        kind=FeedKind.from_version(version),
        entries=[_plain(entry) for entry in feed.entries],
        version=version,
    )


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        inner = value.get("value") or value.get("name")
        if isinstance(inner, str):
            return inner.strip()
    if isinstance(value, list) and value:
        return _text(value[0])
    return ""


def _first_text(entry: dict[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        text = _text(entry.get(key))
        if text:
            return text
    return ""


def external_id_for(entry: dict[str, Any]) -> str:
    """Derive the deterministic natural key of an entry.

    Priority: guid or id, link, title, then the canonical JSON of the entry.
    """

    for candidate in (
        _first_text(entry, ["id", "guid"]),
        _first_text(entry, ["link"]),
        _first_text(entry, ["title"]),
    ):
        if candidate:
            return candidate
    return json.dumps(entry, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def normalize_entry(entry: dict[str, Any]) -> NormalizedItem:
    return NormalizedItem(
        external_id=external_id_for(entry),
        title=_first_text(entry, ["title"]),
        company=_first_text(entry, ["author", "author_detail"]),
        location=_first_text(entry, ["location"]),
        description=_first_text(entry, ["summary", "description", "content"]),
        raw=entry,
    )


def normalize_feed(parsed: ParsedFeed) -> list[NormalizedItem]:
    return [normalize_entry(entry) for entry in parsed.entries]


__all__ = [
    "FeedKind",
    "NormalizedItem",
    "ParsedFeed",
    "external_id_for",
    "normalize_entry",
    "normalize_feed",
    "parse_feed",
]
