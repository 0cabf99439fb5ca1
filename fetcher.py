#!/usr/bin/env python3
"""
Feed fetcher with sequential proxy fallback.

A feed URL is tried through each configured proxy strategy in order. The
first strategy whose response normalizes into at least one article wins;
every other attempt is recorded as a ProxyAttemptFailed. Strategies are never
raced against each other.
"""

from asyncio import TimeoutError
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import re

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedUnavailable, MalformedFeedError, ProxyAttemptFailed, UpstreamFormatError
from models import Article, ProxyStrategy, RawFetchResult
from normalizer import normalize
from proxies import build_registry
from telemetry import trace_span
from utils import BackoffHelper

logger = get_logger("fetcher")

CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.I)
XML_ENCODING_RE = re.compile(rb'^\s*<\?xml[^>]*encoding\s*=\s*["\']([\w.:-]+)["\']', re.I)


@dataclass
class FetchOutcome:
    """Result of a successful fetch: the winning response and its articles."""

    raw: RawFetchResult
    articles: List[Article]
    failures: List[ProxyAttemptFailed] = field(default_factory=list)

    @property
    def strategy_name(self) -> str:
        return self.raw.strategy_name


def decode_body(body: bytes, content_type: str = '') -> str:
    """Decode a response body using the declared charset, then the XML
    declaration, then UTF-8 with replacement characters."""
    candidates = []
    match = CHARSET_RE.search(content_type or '')
    if match:
        candidates.append(match.group(1))
    match = XML_ENCODING_RE.match(body[:256])
    if match:
        candidates.append(match.group(1).decode('ascii'))
    for encoding in candidates:
        try:
            return body.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            logger.debug(f"Could not decode body as {encoding}, trying next candidate")
    return body.decode('utf-8', errors='replace')


def format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FeedFetcher:
    """Fetch one feed at a time through an injected list of proxy strategies."""

    def __init__(
        self,
        strategies: Optional[Sequence[ProxyStrategy]] = None,
        session: Optional[ClientSession] = None,
        timeout: Optional[float] = None,
        backoff: Optional[BackoffHelper] = None,
    ) -> None:
        self.strategies: List[ProxyStrategy] = (
            list(strategies) if strategies is not None else build_registry(config.PROXY_ORDER)
        )
        self.session = session
        self._owns_session = False
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.backoff = backoff or BackoffHelper(config.BACKOFF_BASE_SECONDS, config.BACKOFF_MAX_SECONDS)

    async def initialize(self) -> None:
        """Create an HTTP session unless one was injected."""
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True
            logger.info(
                "FeedFetcher initialized with strategies: %s",
                ", ".join(strategy.name for strategy in self.strategies),
            )

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    async def __aenter__(self) -> "FeedFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _request(self, strategy: ProxyStrategy, url: str) -> RawFetchResult:
        request = strategy.build_request(url)
        async with self.session.get(
            request.url,
            headers=dict(request.headers),
            timeout=ClientTimeout(total=self.timeout),
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            content_type = response.headers.get('Content-Type', '')
            body = await response.read()
            return RawFetchResult(
                strategy_name=strategy.name,
                response_shape=strategy.response_shape,
                http_status=response.status,
                content_type=content_type,
                body=decode_body(body, content_type),
            )

    async def _attempt(self, strategy: ProxyStrategy, url: str, feed_id: Optional[str]) -> FetchOutcome:
        """One strategy attempt; raises ProxyAttemptFailed on any failure."""
        try:
            raw = await self._request(strategy, url)
        except TimeoutError as e:
            raise ProxyAttemptFailed(strategy.name, f"timed out after {self.timeout}s", e) from e
        except ClientError as e:
            raise ProxyAttemptFailed(strategy.name, format_client_error(e), e) from e

        if not 200 <= raw.http_status < 300:
            raise ProxyAttemptFailed(strategy.name, f"HTTP {raw.http_status}")
        if not raw.body.strip():
            raise ProxyAttemptFailed(strategy.name, "empty body")

        try:
            articles = normalize(raw, url, feed_id)
        except (UpstreamFormatError, MalformedFeedError) as e:
            raise ProxyAttemptFailed(strategy.name, str(e), e) from e
        except Exception as e:
            logger.exception(f"Normalizer crashed on {strategy.name} response for {url}")
            raise ProxyAttemptFailed(strategy.name, f"normalization error: {type(e).__name__}: {e}", e) from e
        if not articles:
            raise ProxyAttemptFailed(strategy.name, "no articles in response")
        return FetchOutcome(raw=raw, articles=articles)

    @trace_span(
        "fetcher.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, feed_id=None: {
            "http.url": url,
            "feed.id": feed_id,
            "proxy.strategy_count": len(self.strategies),
        },
    )
    async def fetch(self, url: str, feed_id: Optional[str] = None) -> FetchOutcome:
        """Fetch and normalize a feed, falling back through strategies in order.

        Raises:
            FeedUnavailable: every strategy failed
        """
        if self.session is None:
            await self.initialize()

        failures: List[ProxyAttemptFailed] = []
        last_error: Optional[BaseException] = None
        label = feed_id or url

        for attempt, strategy in enumerate(self.strategies):
            try:
                outcome = await self._attempt(strategy, url, feed_id)
            except ProxyAttemptFailed as failure:
                failures.append(failure)
                last_error = failure.cause or failure
                logger.warning(f"Attempt {attempt + 1}/{len(self.strategies)} for {label} failed: {failure}")
                if attempt < len(self.strategies) - 1:
                    await self.backoff.sleep_for_attempt(attempt)
                continue

            outcome.failures = failures
            logger.info(
                f"Fetched {len(outcome.articles)} articles for {label} via {strategy.name}"
                + (f" after {len(failures)} failed attempt(s)" if failures else "")
            )
            return outcome

        logger.error(f"All {len(self.strategies)} strategies failed for {label}")
        raise FeedUnavailable(url, failures, last_error)
