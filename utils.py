#!/usr/bin/env python3
"""
Text, date and identity helpers shared by the normalizer, merger and fetcher.

Feed fields arrive contaminated with markup, CDATA wrappers and entities, and
dates come in whatever format the publisher fancied (including Greek month
names). Everything here is pure and never raises on bad input.
"""

from asyncio import sleep
from calendar import timegm
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from hashlib import md5
from math import ceil
from typing import Optional
import re

import feedparser

from config import config, get_logger

logger = get_logger("utils")

CDATA_RE = re.compile(r'<!\[CDATA\[(.*?)\]\]>', re.S)
TAG_RE = re.compile(r'<[^>]*>')
WHITESPACE_RE = re.compile(r'\s+')
ISO_RE = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,6}))?)?)?'
    r'\s*(Z|[+-]\d{2}:?\d{2})?$'
)

# &amp; must be decoded last so "&amp;lt;" stays "&lt;"
ENTITY_REPLACEMENTS = (
    ('&nbsp;', ' '),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&#39;', "'"),
    ('&amp;', '&'),
)

CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d-%m-%Y",
)


def unwrap_cdata(text: str) -> str:
    return CDATA_RE.sub(lambda m: m.group(1), text)


def clean_text(text: Optional[str]) -> str:
    """Strip markup and common entities from a feed field.

    Args:
        text: Raw field value, possibly containing tags, CDATA and entities

    Returns:
        Plain single-spaced text, or "" for empty input
    """
    if not text:
        return ""
    cleaned = TAG_RE.sub('', unwrap_cdata(str(text)))
    for entity, replacement in ENTITY_REPLACEMENTS:
        cleaned = cleaned.replace(entity, replacement)
    return WHITESPACE_RE.sub(' ', cleaned).strip()


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as UTC ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def _parse_with_feedparser(date_str: str) -> Optional[datetime]:
    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            # feedparser normalizes to UTC
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if dt and dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_with_iso_pattern(date_str: str) -> Optional[datetime]:
    match = ISO_RE.match(date_str)
    if not match:
        return None
    year, month, day, hour, minute, second, fraction, tz = match.groups()
    try:
        tzinfo = timezone.utc
        if tz and tz != 'Z':
            sign = 1 if tz[0] == '+' else -1
            digits = tz[1:].replace(':', '')
            tzinfo = timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))
        return datetime(
            int(year), int(month), int(day),
            int(hour or 0), int(minute or 0), int(second or 0),
            int((fraction or '0').ljust(6, '0')),
            tzinfo=tzinfo,
        )
    except ValueError:
        return None


def _parse_with_custom_formats(date_str: str) -> Optional[datetime]:
    for fmt in CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except (ValueError, TypeError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def try_parse_timestamp(date_str: Optional[str]) -> Optional[str]:
    """Parse a feed date into the canonical UTC form, or None if unparseable."""
    if not date_str:
        return None
    date_str = clean_text(date_str)
    if not date_str:
        return None
    # Exact-match parsers first; feedparser prefix-matches loose ISO forms
    parsers = (
        _parse_with_iso_pattern,
        _parse_with_email_utils,
        _parse_with_custom_formats,
        _parse_with_feedparser,
    )
    for parser in parsers:
        dt = parser(date_str)
        if dt is not None:
            try:
                return format_timestamp(dt)
            except (ValueError, OverflowError, OSError):
                continue
    logger.debug(f"Unparseable date '{date_str}'")
    return None


def parse_timestamp(date_str: Optional[str], now: Optional[datetime] = None) -> str:
    """Parse a feed date, falling back to the current time. Never raises."""
    parsed = try_parse_timestamp(date_str)
    if parsed is not None:
        return parsed
    return format_timestamp(now or datetime.now(timezone.utc))


def estimate_reading_time(text: Optional[str], words_per_minute: Optional[int] = None) -> int:
    """Minutes needed to read text, rounded up; 0 for empty text."""
    wpm = words_per_minute or config.READING_SPEED_WPM
    words = clean_text(text).split()
    if not words:
        return 0
    return ceil(len(words) / wpm)


def article_identity(title: Optional[str], link: Optional[str], published: Optional[str]) -> str:
    """Derive a stable article id from its normalized title, link and date.

    Undated items pass ``published=None`` so their id does not drift with
    the fetch time.
    """
    norm_title = clean_text(title).casefold()
    norm_link = (link or "").strip()
    norm_published = (published or "").strip()
    digest = md5(f"{norm_title}\n{norm_link}\n{norm_published}".encode('utf-8')).hexdigest()
    return f"article-{digest}"


class BackoffHelper:
    """Bounded linear backoff between proxy attempts."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 3.0):
        """Initialize the backoff helper.

        Args:
            base_delay: Delay in seconds after the first failed attempt
            max_delay: Upper bound for any single delay
        """
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-based)."""
        return min(self.base_delay * (attempt + 1), self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Backoff: sleeping for {delay:.2f} seconds")
            await sleep(delay)
