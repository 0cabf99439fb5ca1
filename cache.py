#!/usr/bin/env python3
"""In-process TTL cache of normalized articles keyed by feed URL."""

from dataclasses import dataclass
from time import monotonic
from typing import Callable, Dict, List, Optional

from config import config, get_logger
from models import Article

logger = get_logger("cache")


@dataclass
class CacheEntry:
    articles: List[Article]
    timestamp: float


class FeedCache:
    """Serve recent fetches from memory; entries live for the process only."""

    def __init__(self, fetcher, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = monotonic):
        self.fetcher = fetcher
        self.ttl_seconds = config.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def get(self, url: str) -> Optional[List[Article]]:
        """Cached articles for url if still fresh, else None."""
        entry = self._entries.get(url)
        if entry is None:
            return None
        if self.clock() - entry.timestamp < self.ttl_seconds:
            return list(entry.articles)
        return None

    def put(self, url: str, articles: List[Article]) -> None:
        self._entries[url] = CacheEntry(list(articles), self.clock())

    async def get_or_fetch(self, url: str, feed_id: Optional[str] = None) -> List[Article]:
        """Return fresh cached articles or fetch, store and return new ones.

        Fetch failures propagate and leave any stale entry untouched.
        """
        cached = self.get(url)
        if cached is not None:
            self.hits += 1
            logger.debug(f"Cache hit for {feed_id or url}")
            return cached

        self.misses += 1
        outcome = await self.fetcher.fetch(url, feed_id)
        self.put(url, outcome.articles)
        return list(outcome.articles)

    def invalidate(self, url: str) -> bool:
        return self._entries.pop(url, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, object]:
        now = self.clock()
        return {
            "size": len(self._entries),
            "fresh": sum(1 for entry in self._entries.values() if now - entry.timestamp < self.ttl_seconds),
            "hits": self.hits,
            "misses": self.misses,
            "entries": sorted(self._entries),
        }
