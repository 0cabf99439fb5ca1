#!/usr/bin/env python3
"""
Configuration for the Greek Tax News aggregator.

Settings come from the process environment, topped up by an optional ``.env``
file next to this module and an optional YAML secrets file (``SECRETS_FILE``).
Feed sources, the proxy order and category labels live in ``feeds.yaml``.
Everything is exposed through the module-level ``config`` object.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, getLevelName, StreamHandler, INFO, WARNING
import sys
import yaml
from dotenv import load_dotenv

from models import FeedSource

ROOT_LOGGER_NAME = "GreekTaxNews"
BASE_DIR = path.dirname(path.abspath(__file__))

VALID_SORT_ORDERS = ("date-desc", "date-asc", "title-asc", "title-desc", "priority")
VALID_PRIORITIES = ("high", "medium", "low")

SECRETS_MAX_BYTES = 2 * 1024 * 1024
FEEDS_MAX_BYTES = 5 * 1024 * 1024


def _configure_logging():
    """Send all log output to stdout, honouring LOG_LEVEL and LOG_TIMESTAMPS."""
    level = getLevelName(environ.get("LOG_LEVEL", "INFO").strip().upper())
    if not isinstance(level, int):
        level = INFO

    fields = ["%(name)s", "%(levelname)s", "%(message)s"]
    if environ.get("LOG_TIMESTAMPS", "true").strip().lower() != "false":
        fields.insert(0, "%(asctime)s")

    basicConfig(level=level, format=" - ".join(fields), handlers=[StreamHandler(sys.stdout)], force=True)
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)

    # aiohttp client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))
    return getLogger(ROOT_LOGGER_NAME)


def get_logger(name: str):
    """Return the ``GreekTaxNews.<name>`` child logger."""
    return getLogger(f"{ROOT_LOGGER_NAME}.{name}")


logger = _configure_logging()


def read_yaml_file(file_path: str, max_bytes: int, label: str) -> Any | None:
    """Parse a small YAML file, logging and returning None on any problem."""
    if not path.isfile(file_path):
        logger.warning(f"No {label} file at {file_path}")
        return None
    if not access(file_path, R_OK):
        logger.error(f"Cannot read {label} file {file_path}: permission denied")
        return None
    try:
        size = path.getsize(file_path)
        if size > max_bytes:
            logger.error(f"Refusing {label} file {file_path}: {size} bytes exceeds {max_bytes}")
            return None
        with open(file_path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {label} file {file_path}: {e}")
        return None
    except OSError as e:
        logger.error(f"Failed to read {label} file {file_path}: {e}")
        return None
    if not data:
        logger.warning(f"{label.capitalize()} file {file_path} is empty")
        return None
    return data


class Config:
    """Aggregator settings.

    Precedence, lowest first: ``.env``, the YAML secrets file, then the real
    environment for anything not overridden by secrets. ``feeds.yaml`` holds
    the feed catalogue:

    ```yaml
    feeds:
      aade:
        url: "https://www.aade.gr/deltia-typou-anakoinoseis?format=rss"
        name: "AADE - Ανεξάρτητη Αρχή Δημοσίων Εσόδων"
        category: government
        priority: high
    ```
    """

    def __init__(self):
        self._read_env_files()
        self._apply_settings()
        self._load_feed_sources()

    def _read_env_files(self):
        dotenv_file = path.join(BASE_DIR, ".env")
        if path.exists(dotenv_file):
            load_dotenv(dotenv_file)
            logger.info(f"Read settings from {dotenv_file}")
        self._apply_secrets_file()

    def _number(self, env_var: str, default, minimum, cast=int):
        """Read a numeric setting, falling back to ``default`` when invalid or below ``minimum``."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not a number; using {default}")
            return default
        if value < minimum:
            logger.warning(f"{env_var}={value} is below {minimum}; using {default}")
            return default
        return value

    def _apply_settings(self):
        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(BASE_DIR, "news.db"))
        self.SCHEMA_FILE_PATH = path.join(BASE_DIR, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(BASE_DIR, "feeds.yaml"))

        # HTTP
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
        )
        self.HTTP_TIMEOUT = self._number("HTTP_TIMEOUT", 20, 1)
        self.MAX_REDIRECTS = self._number("MAX_REDIRECTS", 5, 0)
        self.BACKOFF_BASE_SECONDS = self._number("BACKOFF_BASE_SECONDS", 1.0, 0.0, float)
        self.BACKOFF_MAX_SECONDS = self._number("BACKOFF_MAX_SECONDS", 3.0, 0.0, float)
        self.FETCH_CONCURRENCY = self._number("FETCH_CONCURRENCY", 5, 1)

        # Cache and retention
        self.CACHE_TTL_SECONDS = self._number("CACHE_TTL_SECONDS", 600, 0)
        self.MAX_ARTICLES = self._number("MAX_ARTICLES", 1000, 1)

        # Reading time and list ordering
        self.READING_SPEED_WPM = self._number("READING_SPEED_WPM", 200, 1)
        self.DEFAULT_SORT = environ.get("DEFAULT_SORT", "date-desc").strip().lower()
        if self.DEFAULT_SORT not in VALID_SORT_ORDERS:
            logger.warning(f"Unknown DEFAULT_SORT '{self.DEFAULT_SORT}', using date-desc")
            self.DEFAULT_SORT = "date-desc"

        # Auto-refresh
        self.AUTO_REFRESH = environ.get("AUTO_REFRESH", "true").lower() == "true"
        self.REFRESH_INTERVAL_MINUTES = self._number("REFRESH_INTERVAL_MINUTES", 30, 1)

        # Optional backend
        backend_url = (environ.get("BACKEND_URL") or "").strip().rstrip("/")
        self.BACKEND_URL: Optional[str] = backend_url or None

    def _apply_secrets_file(self):
        """Copy entries from the YAML secrets file into the environment.

        Entries may sit at the top level or under an ``environment`` key.
        """
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        data = read_yaml_file(secrets_path, SECRETS_MAX_BYTES, "secrets")
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring secrets file {secrets_path}: top level is not a mapping")
            return

        entries = data["environment"] if isinstance(data.get("environment"), dict) else data
        applied = 0
        for name, value in entries.items():
            if not isinstance(name, str) or value is None:
                logger.warning(f"Ignoring secrets entry {name!r}")
                continue
            environ[name] = str(value)
            applied += 1
        logger.info(f"Applied {applied} settings from secrets file {secrets_path}")

    def _load_feed_sources(self) -> None:
        """Populate FEED_SOURCES, PROXY_ORDER and CATEGORIES from feeds.yaml.

        Any failure results in empty values; invalid feed entries are skipped.
        """
        config_data = read_yaml_file(self.FEEDS_CONFIG_PATH, FEEDS_MAX_BYTES, 'feeds')
        self.FEED_SOURCES: List[FeedSource] = []
        self.PROXY_ORDER: List[str] = []
        self.CATEGORIES: Dict[str, Dict[str, Any]] = {}
        if not isinstance(config_data, dict):
            return

        proxies_section = config_data.get('proxies')
        if isinstance(proxies_section, list):
            self.PROXY_ORDER = [str(name).strip() for name in proxies_section if str(name).strip()]
        elif proxies_section is not None:
            logger.warning(f"'proxies' in {self.FEEDS_CONFIG_PATH} must be a list of strategy names; ignoring")

        categories_section = config_data.get('categories')
        if isinstance(categories_section, dict):
            self.CATEGORIES = {
                str(key): value for key, value in categories_section.items() if isinstance(value, dict)
            }

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {self.FEEDS_CONFIG_PATH}")
            return

        for feed_id, feed_cfg in feeds_section.items():
            source = self._parse_feed_entry(str(feed_id), feed_cfg)
            if source:
                self.FEED_SOURCES.append(source)
                logger.debug(f"Loaded feed {source.id}: {source.url}")

        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {self.FEEDS_CONFIG_PATH}")

    def _parse_feed_entry(self, feed_id: str, feed_cfg: Any) -> Optional[FeedSource]:
        """Turn one feeds.yaml entry into a FeedSource, or None if invalid."""
        if not isinstance(feed_cfg, dict) or not isinstance(feed_cfg.get('url'), str):
            logger.warning(f"Skipping invalid feed configuration for '{feed_id}': {feed_cfg}")
            return None

        url = feed_cfg['url'].strip()
        if not url.startswith(('http://', 'https://')):
            logger.warning(f"Skipping feed '{feed_id}' with non-HTTP url: {url}")
            return None

        priority = str(feed_cfg.get('priority', 'medium')).strip().lower()
        if priority not in VALID_PRIORITIES:
            logger.warning(f"Feed '{feed_id}' has unknown priority '{priority}', using medium")
            priority = 'medium'

        backend_id = feed_cfg.get('backend_id')
        return FeedSource(
            id=feed_id,
            url=url,
            display_name=str(feed_cfg.get('name') or feed_id),
            category=str(feed_cfg.get('category') or 'news'),
            priority=priority,
            enabled=bool(feed_cfg.get('enabled', True)),
            color=str(feed_cfg.get('color') or ''),
            description=str(feed_cfg.get('description') or ''),
            backend_id=str(backend_id) if backend_id is not None else None,
        )

    def reload_feed_sources(self):
        """Re-read feeds.yaml, replacing the current sources."""
        logger.info(f"Re-reading {self.FEEDS_CONFIG_PATH}")
        self._load_feed_sources()

    def category_label(self, category: str) -> str:
        """Display label for a category from feeds.yaml, prefixed by its icon."""
        entry = self.CATEGORIES.get(category) or {}
        label = str(entry.get('label') or category)
        icon = entry.get('icon')
        return f"{icon} {label}" if icon else label

    def get_config_summary(self) -> Dict[str, Any]:
        """Settings worth printing in status output."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "cache_ttl_seconds": self.CACHE_TTL_SECONDS,
            "max_articles": self.MAX_ARTICLES,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "auto_refresh": self.AUTO_REFRESH,
            "feed_count": len(self.FEED_SOURCES),
            "enabled_feed_count": sum(1 for feed in self.FEED_SOURCES if feed.enabled),
            "proxy_order": list(self.PROXY_ORDER),
            "has_backend": bool(self.BACKEND_URL),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Shared instance
config = Config()
