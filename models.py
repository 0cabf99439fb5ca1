#!/usr/bin/env python3
"""
Data model for the aggregator.

Plain dataclasses shared by every stage of the pipeline: feed sources from
configuration, proxy strategies, raw fetch results and normalized articles.
This module must not import config (config imports FeedSource from here).
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional


class ResponseShape(str, Enum):
    """How a proxy wraps the upstream feed document."""

    JSON_RSS2JSON = "json-rss2json"
    JSON_WRAPPED_XML = "json-wrapped-xml"
    RAW_XML = "raw-xml"
    RAW_TEXT = "raw-text"


@dataclass(frozen=True)
class FeedSource:
    """A configured feed. Only `enabled` is ever changed at runtime."""

    id: str
    url: str
    display_name: str
    category: str = "news"
    priority: str = "medium"
    enabled: bool = True
    color: str = ""
    description: str = ""
    backend_id: Optional[str] = None


@dataclass(frozen=True)
class RequestDescriptor:
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProxyStrategy:
    """A named way of reaching a feed URL, plus the shape of what comes back."""

    name: str
    build_request: Callable[[str], RequestDescriptor]
    response_shape: ResponseShape


@dataclass
class RawFetchResult:
    strategy_name: str
    response_shape: ResponseShape
    http_status: int
    content_type: str
    body: str


@dataclass
class Article:
    """A normalized article plus the user's per-article flags.

    Serialized with camelCase keys so stored data and exports stay compatible
    with the browser client's format.
    """

    id: str
    title: str
    description: str
    link: str
    published_at: str
    source_feed_id: Optional[str] = None
    read: bool = False
    bookmarked: bool = False
    archived: bool = False
    fetched_at: Optional[str] = None
    author: str = ""
    category: str = ""
    reading_time: int = 0
    feed_name: str = ""
    feed_category: str = ""
    priority: str = "medium"

    _KEY_MAP = {
        "published_at": "pubDate",
        "source_feed_id": "feedId",
        "fetched_at": "fetchedAt",
        "reading_time": "readingTime",
        "feed_name": "feedName",
        "feed_category": "feedCategory",
    }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {self._KEY_MAP.get(key, key): value for key, value in data.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Article":
        if not isinstance(data, Mapping):
            raise TypeError(f"Article record must be a mapping, got {type(data).__name__}")
        reverse = {camel: snake for snake, camel in cls._KEY_MAP.items()}
        kwargs = {}
        for key, value in data.items():
            name = reverse.get(key, key)
            if name in cls.__dataclass_fields__ and not name.startswith("_"):
                kwargs[name] = value
        for required in ("id", "title", "link", "published_at"):
            if required not in kwargs:
                raise KeyError(f"Article record is missing '{required}'")
        kwargs.setdefault("description", "")
        for flag in ("read", "bookmarked", "archived"):
            kwargs[flag] = bool(kwargs.get(flag, False))
        kwargs["reading_time"] = int(kwargs.get("reading_time") or 0)
        return cls(**kwargs)
