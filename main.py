#!/usr/bin/env python3
"""
Greek Tax News aggregator entry point.

Modes:
  run        fetch every enabled feed once, merge and persist
  scheduled  keep refreshing every REFRESH_INTERVAL_MINUTES
  status     show store, feed and cache statistics
  list       print the newest stored articles
"""

import asyncio
import sys
import argparse
from datetime import datetime, timezone
from typing import Optional

from aggregator import NewsAggregator
from config import VALID_SORT_ORDERS, config, get_logger
from errors import StorageError
from scheduler import RefreshScheduler
from storage import ArticleStore
from telemetry import init_telemetry, trace_span

logger = get_logger("orchestrator")


class NewsOrchestrator:
    """Wire store, aggregator and scheduler together for the CLI modes."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.store = ArticleStore(db_path)
        self.aggregator: Optional[NewsAggregator] = None

    async def __aenter__(self) -> "NewsOrchestrator":
        await self.store.initialize()
        self.aggregator = NewsAggregator(store=self.store)
        await self.aggregator.load()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.aggregator is not None:
            await self.aggregator.close()
        await self.store.close()

    @trace_span("orchestrator.run", tracer_name="orchestrator")
    async def run_refresh(self) -> bool:
        """Single refresh; False only when every feed failed."""
        logger.info("🚀 Starting refresh")
        report = await self.aggregator.refresh_all()
        for feed in report.failed:
            logger.warning(f"⚠️ {feed.feed_id}: {feed.error}")
        if report.all_failed:
            logger.error("💀 Every feed failed")
            return False
        logger.info(f"🎉 {report.new_count} new articles, {report.total_articles} stored")
        return True

    async def run_scheduled(self) -> None:
        if not config.AUTO_REFRESH:
            logger.error("❌ AUTO_REFRESH is disabled; scheduled mode will not start")
            return
        scheduler = RefreshScheduler(self.aggregator)
        await scheduler.run()

    async def check_status(self) -> dict:
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'store': await self.store.stats(),
            'aggregator': self.aggregator.stats(),
        }

    def print_status(self, status: dict) -> None:
        store = status['store']
        aggregator = status['aggregator']
        print("\n📊 Greek Tax News Status")
        print(f"⏰ {status['timestamp']}")
        print(f"\n📡 Feeds: {aggregator['enabled_feeds']}/{aggregator['feeds']} enabled")
        print(f"🕐 Last refresh: {aggregator['last_refresh'] or 'never'}")
        print("\n💾 Store:")
        print(f"   📰 Articles: {store['article_count']} ({store['unread_count']} unread)")
        print(f"   🔖 Bookmarks: {store['bookmark_count']}")
        print(f"   🗄️ Archived: {store['archived_count']}")
        print(f"   📦 Size: {store['total_size_kb']} KB")

    def print_articles(self, limit: int, order: str, query: Optional[str], feed_id: Optional[str]) -> None:
        articles = self.aggregator.select(query=query, feed_id=feed_id, order=order)[:limit]
        if not articles:
            print("No articles.")
            return
        for article in articles:
            marker = "🔖" if article.bookmarked else ("  " if article.read else "•")
            source = article.feed_name or article.source_feed_id
            if article.feed_category:
                source = f"{source} · {config.category_label(article.feed_category)}"
            print(f"{marker} {article.published_at[:16].replace('T', ' ')}  [{source}] {article.title}")
            if article.link:
                print(f"     {article.link}")


async def _run_mode(args) -> int:
    async with NewsOrchestrator(args.database) as orchestrator:
        if args.mode == 'run':
            return 0 if await orchestrator.run_refresh() else 1
        if args.mode == 'scheduled':
            await orchestrator.run_scheduled()
            return 0
        if args.mode == 'status':
            orchestrator.print_status(await orchestrator.check_status())
            return 0
        if args.mode == 'list':
            orchestrator.print_articles(args.limit, args.sort, args.query, args.feed)
            return 0
    return 2


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Greek Tax News aggregator')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status', 'list'],
                        help='Operation mode')
    parser.add_argument('--database', type=str, help='SQLite database path (default: DATABASE_PATH)')
    parser.add_argument('--limit', type=int, default=20, help='Articles to show in list mode')
    parser.add_argument('--sort', choices=VALID_SORT_ORDERS, default=config.DEFAULT_SORT,
                        help='Sort order for list mode')
    parser.add_argument('--query', type=str, help='Search text for list mode')
    parser.add_argument('--feed', type=str, help='Only show articles from this feed id')

    args = parser.parse_args()
    init_telemetry("greek-tax-news")

    try:
        sys.exit(asyncio.run(_run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except (StorageError, OSError) as e:
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
