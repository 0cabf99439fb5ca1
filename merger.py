#!/usr/bin/env python3
"""
Merge freshly fetched articles into the known collection.

Identity is the content-derived Article.id. User flags (read, bookmarked,
archived) always survive a refresh; content fields are taken from the newest
fetch. The collection is capped by publish time.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional
import unicodedata

from config import VALID_SORT_ORDERS, get_logger
from models import Article

logger = get_logger("merger")

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}

CONTENT_FIELDS = (
    "title",
    "description",
    "link",
    "published_at",
    "author",
    "category",
    "reading_time",
    "source_feed_id",
    "feed_name",
    "feed_category",
    "priority",
)


@dataclass
class MergeResult:
    articles: List[Article]
    new_count: int = 0
    updated_count: int = 0
    evicted_count: int = 0


def _refresh(existing: Article, incoming: Article) -> Article:
    return replace(existing, **{name: getattr(incoming, name) for name in CONTENT_FIELDS})


def apply_cap(articles: List[Article], cap: int) -> List[Article]:
    """Keep the `cap` most recent articles by published_at, preserving order."""
    if cap <= 0:
        return []
    if len(articles) <= cap:
        return list(articles)
    ranked = sorted(range(len(articles)), key=lambda index: articles[index].published_at, reverse=True)
    keep = set(ranked[:cap])
    return [article for index, article in enumerate(articles) if index in keep]


def merge(existing: Iterable[Article], incoming: Iterable[Article], cap: int = 1000) -> MergeResult:
    """Merge incoming into existing and report what changed."""
    existing = list(existing)
    index: Dict[str, int] = {article.id: position for position, article in enumerate(existing)}
    merged_existing = list(existing)
    new_articles: List[Article] = []
    seen_new = set()
    updated = 0

    for article in incoming:
        position = index.get(article.id)
        if position is not None:
            merged_existing[position] = _refresh(merged_existing[position], article)
            updated += 1
        elif article.id not in seen_new:
            seen_new.add(article.id)
            new_articles.append(replace(article, read=False, bookmarked=False, archived=False))

    combined = new_articles + merged_existing
    capped = apply_cap(combined, cap)
    evicted = len(combined) - len(capped)
    if evicted:
        logger.info(f"Evicted {evicted} oldest article(s) beyond cap of {cap}")
    return MergeResult(articles=capped, new_count=len(new_articles), updated_count=updated, evicted_count=evicted)


def merge_articles(existing: Iterable[Article], incoming: Iterable[Article], cap: int = 1000) -> List[Article]:
    return merge(existing, incoming, cap).articles


def _title_key(title: str) -> str:
    decomposed = unicodedata.normalize("NFD", title or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def sort_articles(articles: Iterable[Article], order: str = "date-desc") -> List[Article]:
    """Return a sorted copy. Unknown orders fall back to date-desc."""
    articles = list(articles)
    if order not in VALID_SORT_ORDERS:
        logger.warning(f"Unknown sort order '{order}', using date-desc")
        order = "date-desc"

    if order == "date-asc":
        return sorted(articles, key=lambda a: a.published_at)
    if order == "title-asc":
        return sorted(articles, key=lambda a: _title_key(a.title))
    if order == "title-desc":
        return sorted(articles, key=lambda a: _title_key(a.title), reverse=True)
    if order == "priority":
        by_date = sorted(articles, key=lambda a: a.published_at, reverse=True)
        return sorted(by_date, key=lambda a: PRIORITY_RANK.get(a.priority, len(PRIORITY_RANK)))
    return sorted(articles, key=lambda a: a.published_at, reverse=True)


def filter_articles(
    articles: Iterable[Article],
    query: Optional[str] = None,
    category: Optional[str] = None,
    feed_id: Optional[str] = None,
    include_archived: bool = False,
) -> List[Article]:
    """Case- and accent-insensitive search over title and description."""
    needle = _title_key(query.strip()) if query and query.strip() else None
    result = []
    for article in articles:
        if article.archived and not include_archived:
            continue
        if category and category != "all" and article.feed_category != category:
            continue
        if feed_id and article.source_feed_id != feed_id:
            continue
        if needle and needle not in _title_key(article.title) and needle not in _title_key(article.description):
            continue
        result.append(article)
    return result
