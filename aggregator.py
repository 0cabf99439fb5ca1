#!/usr/bin/env python3
"""
Refresh orchestration and the user-facing article collection.

NewsAggregator fetches every enabled feed concurrently (bounded by a
semaphore), isolates per-feed failures, merges what arrived into the stored
collection and persists it. Feeds known to a healthy backend are read from
the backend instead of through the proxy chain.
"""

from asyncio import Semaphore, gather
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from backend import BackendClient
from cache import FeedCache
from config import VALID_PRIORITIES, config, get_logger
from errors import BackendError, FeedUnavailable
from fetcher import FeedFetcher
from merger import filter_articles, merge, sort_articles
from models import Article, FeedSource
from storage import ArticleStore
from telemetry import trace_span

logger = get_logger("aggregator")

CUSTOM_FEEDS_SETTING = "customFeeds"


@dataclass
class FeedReport:
    feed_id: str
    ok: bool
    article_count: int = 0
    source: str = ""
    error: Optional[str] = None
    failures: List[str] = field(default_factory=list)


@dataclass
class RefreshReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    feeds: List[FeedReport] = field(default_factory=list)
    new_count: int = 0
    updated_count: int = 0
    total_articles: int = 0
    skipped: bool = False

    @property
    def succeeded(self) -> List[FeedReport]:
        return [report for report in self.feeds if report.ok]

    @property
    def failed(self) -> List[FeedReport]:
        return [report for report in self.feeds if not report.ok]

    @property
    def all_failed(self) -> bool:
        return bool(self.feeds) and not self.succeeded


def stamp_feed_metadata(articles: Iterable[Article], feed: FeedSource) -> List[Article]:
    return [
        replace(
            article,
            source_feed_id=feed.id,
            feed_name=feed.display_name,
            feed_category=feed.category,
            priority=feed.priority,
        )
        for article in articles
    ]


class NewsAggregator:
    """Owns the article collection and drives refreshes over configured feeds."""

    def __init__(
        self,
        feeds: Optional[Iterable[FeedSource]] = None,
        fetcher: Optional[FeedFetcher] = None,
        cache: Optional[FeedCache] = None,
        store: Optional[ArticleStore] = None,
        backend: Optional[BackendClient] = None,
        max_articles: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        sources = config.FEED_SOURCES if feeds is None else feeds
        self.feeds: Dict[str, FeedSource] = {feed.id: feed for feed in sources}
        self.fetcher = fetcher or FeedFetcher()
        self.cache = cache or FeedCache(self.fetcher)
        self.store = store
        if backend is None and config.BACKEND_URL:
            backend = BackendClient()
        self.backend = backend
        self.max_articles = max_articles or config.MAX_ARTICLES
        self.concurrency = concurrency or config.FETCH_CONCURRENCY
        self.articles: List[Article] = []
        self.last_refresh: Optional[datetime] = None
        self._feed_overrides: Dict[str, bool] = {}
        self._custom_feeds: Dict[str, Dict[str, Any]] = {}
        self._refreshing = False

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    async def load(self) -> None:
        """Restore articles, user-added feeds and feed overrides from the store."""
        if self.store is None:
            return
        self.articles = await self.store.load_articles()
        self.last_refresh = await self.store.load_last_refresh()

        settings = await self.store.load_settings()
        custom = settings.get(CUSTOM_FEEDS_SETTING)
        if isinstance(custom, dict):
            for feed_id, data in custom.items():
                try:
                    self.feeds.setdefault(feed_id, FeedSource(id=feed_id, **data))
                    self._custom_feeds[feed_id] = data
                except TypeError as e:
                    logger.warning(f"Ignoring stored custom feed '{feed_id}': {e}")

        self._feed_overrides = await self.store.load_feed_overrides()
        for feed_id, enabled in self._feed_overrides.items():
            if feed_id in self.feeds:
                self.feeds[feed_id] = replace(self.feeds[feed_id], enabled=enabled)
        logger.info(f"Loaded {len(self.articles)} stored articles and {len(self.feeds)} feeds")

    async def close(self) -> None:
        await self.fetcher.close()
        if self.backend is not None:
            await self.backend.close()

    def enabled_feeds(self) -> List[FeedSource]:
        return [feed for feed in self.feeds.values() if feed.enabled]

    async def _backend_available(self) -> bool:
        if self.backend is None or not self.backend.configured:
            return False
        healthy = await self.backend.health()
        if not healthy:
            logger.info("Backend not healthy, using proxy fetch path for all feeds")
        return healthy

    async def _refresh_feed(self, feed: FeedSource, use_backend: bool, semaphore: Semaphore) -> Tuple[FeedReport, List[Article]]:
        async with semaphore:
            if use_backend and feed.backend_id:
                try:
                    articles = await self.backend.fetch_articles(feed.backend_id, feed.id)
                    return (
                        FeedReport(feed.id, ok=True, article_count=len(articles), source="backend"),
                        stamp_feed_metadata(articles, feed),
                    )
                except BackendError as e:
                    logger.warning(f"Backend failed for {feed.id}, falling back to proxies: {e}")

            try:
                articles = await self.cache.get_or_fetch(feed.url, feed.id)
            except FeedUnavailable as e:
                logger.error(f"Feed {feed.id} unavailable: {e}")
                return (
                    FeedReport(
                        feed.id,
                        ok=False,
                        source="proxy",
                        error=str(e.last_error or e),
                        failures=[str(attempt) for attempt in e.attempts],
                    ),
                    [],
                )
            return (
                FeedReport(feed.id, ok=True, article_count=len(articles), source="proxy"),
                stamp_feed_metadata(articles, feed),
            )

    @trace_span(
        "aggregator.refresh_all",
        tracer_name="aggregator",
        attr_from_args=lambda self, force=False: {"refresh.force": force},
    )
    async def refresh_all(self, force: bool = False) -> RefreshReport:
        """Refresh every enabled feed; overlapping calls return a skipped report.

        Args:
            force: Drop cached feed results before fetching
        """
        started = datetime.now(timezone.utc)
        if self._refreshing:
            logger.info("Refresh already in progress, skipping")
            return RefreshReport(started_at=started, finished_at=started, skipped=True,
                                 total_articles=len(self.articles))

        self._refreshing = True
        try:
            if force:
                self.cache.clear()
            feeds = self.enabled_feeds()
            logger.info(f"Refreshing {len(feeds)} enabled feeds")
            use_backend = await self._backend_available()
            semaphore = Semaphore(self.concurrency)

            results = await gather(
                *(self._refresh_feed(feed, use_backend, semaphore) for feed in feeds),
                return_exceptions=True,
            )

            report = RefreshReport(started_at=started)
            incoming: List[Article] = []
            for feed, result in zip(feeds, results):
                if isinstance(result, Exception):
                    logger.error(f"Unexpected error refreshing {feed.id}: {result!r}")
                    report.feeds.append(FeedReport(feed.id, ok=False, error=repr(result)))
                    continue
                if isinstance(result, BaseException):
                    raise result
                feed_report, articles = result
                report.feeds.append(feed_report)
                incoming.extend(articles)

            merged = merge(self.articles, incoming, self.max_articles)
            self.articles = merged.articles
            report.new_count = merged.new_count
            report.updated_count = merged.updated_count
            report.total_articles = len(self.articles)

            if report.succeeded:
                self.last_refresh = datetime.now(timezone.utc)
            if self.store is not None:
                await self.store.save_articles(self.articles)
                if report.succeeded:
                    await self.store.save_last_refresh(self.last_refresh)

            report.finished_at = datetime.now(timezone.utc)
            logger.info(
                f"Refresh complete: {len(report.succeeded)}/{len(report.feeds)} feeds ok, "
                f"{report.new_count} new, {report.updated_count} updated, {report.total_articles} total"
            )
            return report
        finally:
            self._refreshing = False

    # User actions

    def get_article(self, article_id: str) -> Optional[Article]:
        return next((article for article in self.articles if article.id == article_id), None)

    async def _persist_articles(self) -> None:
        if self.store is not None:
            await self.store.save_articles(self.articles)

    async def _update_article(self, article_id: str, **changes) -> Optional[Article]:
        for position, article in enumerate(self.articles):
            if article.id == article_id:
                updated = replace(article, **changes)
                self.articles[position] = updated
                await self._persist_articles()
                return updated
        logger.warning(f"No article with id {article_id}")
        return None

    async def mark_read(self, article_id: str) -> Optional[Article]:
        return await self._update_article(article_id, read=True)

    async def mark_unread(self, article_id: str) -> Optional[Article]:
        return await self._update_article(article_id, read=False)

    async def toggle_bookmark(self, article_id: str) -> Optional[Article]:
        article = self.get_article(article_id)
        if article is None:
            logger.warning(f"No article with id {article_id}")
            return None
        return await self._update_article(article_id, bookmarked=not article.bookmarked)

    async def toggle_archive(self, article_id: str) -> Optional[Article]:
        article = self.get_article(article_id)
        if article is None:
            logger.warning(f"No article with id {article_id}")
            return None
        return await self._update_article(article_id, archived=not article.archived)

    async def set_feed_enabled(self, feed_id: str, enabled: bool) -> bool:
        feed = self.feeds.get(feed_id)
        if feed is None:
            logger.warning(f"Unknown feed {feed_id}")
            return False
        self.feeds[feed_id] = replace(feed, enabled=enabled)
        self._feed_overrides[feed_id] = enabled
        if self.store is not None:
            await self.store.save_feed_overrides(self._feed_overrides)
        logger.info(f"Feed {feed_id} {'enabled' if enabled else 'disabled'}")
        return True

    async def add_feed(
        self,
        feed_id: str,
        url: str,
        display_name: Optional[str] = None,
        category: str = "news",
        priority: str = "medium",
    ) -> FeedSource:
        """Register a user-supplied feed; it is persisted with the settings."""
        url = (url or "").strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Feed URL must be http(s): {url!r}")
        if feed_id in self.feeds:
            raise ValueError(f"Feed id already exists: {feed_id}")
        if priority not in VALID_PRIORITIES:
            raise ValueError(f"Unknown priority: {priority}")

        data = {"url": url, "display_name": display_name or feed_id, "category": category, "priority": priority}
        feed = FeedSource(id=feed_id, **data)
        self.feeds[feed_id] = feed
        self._custom_feeds[feed_id] = data
        if self.store is not None:
            settings = await self.store.load_settings()
            settings[CUSTOM_FEEDS_SETTING] = dict(self._custom_feeds)
            await self.store.save_settings(settings)
        return feed

    def bookmarks(self) -> List[Article]:
        return sort_articles((article for article in self.articles if article.bookmarked), "date-desc")

    def archived(self) -> List[Article]:
        return sort_articles((article for article in self.articles if article.archived), "date-desc")

    def select(
        self,
        query: Optional[str] = None,
        category: Optional[str] = None,
        feed_id: Optional[str] = None,
        order: Optional[str] = None,
        include_archived: bool = False,
    ) -> List[Article]:
        """Filtered and sorted view of the collection."""
        matching = filter_articles(self.articles, query, category, feed_id, include_archived)
        return sort_articles(matching, order or config.DEFAULT_SORT)

    def stats(self) -> Dict[str, Any]:
        return {
            "feeds": len(self.feeds),
            "enabled_feeds": len(self.enabled_feeds()),
            "articles": len(self.articles),
            "unread": sum(1 for article in self.articles if not article.read),
            "bookmarked": sum(1 for article in self.articles if article.bookmarked),
            "archived": sum(1 for article in self.articles if article.archived),
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "cache": self.cache.stats(),
        }
