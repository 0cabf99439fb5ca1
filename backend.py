#!/usr/bin/env python3
"""
Client for the optional news backend.

The backend stores articles it has already fetched server-side and exposes
them over a small JSON API (/api/health, /api/feeds, /api/articles/...).
When it is reachable, feeds it knows about skip the proxy path entirely.
"""

from asyncio import TimeoutError
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import BackendError
from models import Article
from normalizer import build_article
from telemetry import trace_span

logger = get_logger("backend")

DEFAULT_PAGE_SIZE = 100


def _field(record: Dict[str, Any], *names: str) -> Any:
    # Rows come back either with database column names or camelCase keys
    for name in names:
        value = record.get(name)
        if value not in (None, ''):
            return value
    return None


class BackendClient:
    """Thin aiohttp wrapper around the backend JSON API."""

    def __init__(self, base_url: Optional[str] = None, session: Optional[ClientSession] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or config.BACKEND_URL or '').rstrip('/')
        self.session = session
        self._owns_session = False
        self.timeout = timeout or config.HTTP_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.configured:
            raise BackendError("Backend URL is not configured")
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True

        url = f"{self.base_url}{path}"
        try:
            async with self.session.get(
                url,
                params=params,
                headers={"Accept": "application/json", "User-Agent": config.USER_AGENT},
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    raise BackendError(f"GET {path} returned HTTP {response.status}", status=response.status)
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise BackendError(f"GET {path} returned invalid JSON: {e}", status=response.status) from e
        except TimeoutError as e:
            raise BackendError(f"GET {path} timed out after {self.timeout}s") from e
        except ClientError as e:
            raise BackendError(f"GET {path} failed: {e}") from e

    @trace_span("backend.health", tracer_name="backend")
    async def health(self) -> bool:
        """True when the backend answers /api/health with status 'healthy'."""
        if not self.configured:
            return False
        try:
            payload = await self._get_json("/api/health")
        except BackendError as e:
            logger.warning(f"Backend health check failed: {e}")
            return False
        return isinstance(payload, dict) and payload.get("status") == "healthy"

    async def list_feeds(self) -> List[Dict[str, Any]]:
        payload = await self._get_json("/api/feeds")
        if not isinstance(payload, dict) or not isinstance(payload.get("feeds"), list):
            raise BackendError("GET /api/feeds returned an unexpected payload")
        return payload["feeds"]

    @trace_span(
        "backend.fetch_articles",
        tracer_name="backend",
        attr_from_args=lambda self, backend_id, feed_id=None, page=1, page_size=DEFAULT_PAGE_SIZE: {
            "backend.feed_id": backend_id,
            "feed.id": feed_id,
        },
    )
    async def fetch_articles(
        self,
        backend_id: str,
        feed_id: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> List[Article]:
        """Articles for one backend feed (or 'all'), as canonical Article records."""
        payload = await self._get_json(
            f"/api/articles/{backend_id}",
            params={"page": page, "pageSize": page_size},
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("articles"), list):
            raise BackendError(f"GET /api/articles/{backend_id} returned an unexpected payload")

        now = datetime.now(timezone.utc)
        articles: List[Article] = []
        for record in payload["articles"]:
            if not isinstance(record, dict):
                continue
            articles.append(build_article(
                title=_field(record, "Title", "title"),
                description=_field(record, "Description", "description"),
                link=_field(record, "Link", "link"),
                date_value=_field(record, "PublishDate", "pubDate", "publishedAt"),
                author=_field(record, "Author", "author"),
                category=_field(record, "Category", "category"),
                source_url=self.base_url,
                feed_id=feed_id,
                now=now,
            ))
        logger.info(f"Backend returned {len(articles)} articles for {feed_id or backend_id}")
        return articles
