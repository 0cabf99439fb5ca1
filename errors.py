#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import List, Optional


class FeedError(Exception):
    """Base class for feed retrieval and parsing failures."""


class ProxyAttemptFailed(FeedError):
    """One retrieval attempt through a single strategy failed.

    Attributes:
        strategy: Name of the proxy strategy that was tried.
        reason: Short human-readable reason (HTTP status, timeout, empty body...).
        cause: The underlying exception, if any.
    """

    def __init__(self, strategy: str, reason: str, cause: Optional[BaseException] = None):
        super().__init__(f"{strategy}: {reason}")
        self.strategy = strategy
        self.reason = reason
        self.cause = cause


class FeedUnavailable(FeedError):
    """Every strategy was exhausted without producing a usable feed.

    Attributes:
        url: The feed URL that could not be retrieved.
        attempts: One ProxyAttemptFailed per strategy tried, in order.
        last_error: The last failure seen.
    """

    def __init__(self, url: str, attempts: List[ProxyAttemptFailed], last_error: Optional[BaseException] = None):
        summary = "; ".join(str(attempt) for attempt in attempts) or "no strategies configured"
        super().__init__(f"Feed unavailable after {len(attempts)} attempt(s) for {url}: {summary}")
        self.url = url
        self.attempts = list(attempts)
        self.last_error = last_error


class MalformedFeedError(FeedError):
    """The document could not be parsed as RSS/Atom even after repair."""


class UpstreamFormatError(FeedError):
    """A proxy returned a payload that does not match its declared response shape."""


class BackendError(Exception):
    """The optional backend collaborator failed or returned an unusable payload."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StorageError(Exception):
    """A persistence operation failed."""


__all__ = [
    "FeedError",
    "ProxyAttemptFailed",
    "FeedUnavailable",
    "MalformedFeedError",
    "UpstreamFormatError",
    "BackendError",
    "StorageError",
]
