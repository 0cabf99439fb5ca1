#!/usr/bin/env python3
"""
Persistence for the article collection and user settings.

Everything is stored as opaque JSON blobs under application-defined keys in a
small SQLite key-value table. All database access goes through a single
asyncio worker so callers can share one connection safely.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, Future, create_task, get_running_loop, CancelledError
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Set

from config import config, get_logger
from errors import StorageError
from models import Article
from telemetry import trace_span

logger = get_logger("storage")

KEY_PREFIX = "greekTaxNews_"
ARTICLES_KEY = f"{KEY_PREFIX}articles"
FEEDS_KEY = f"{KEY_PREFIX}feeds"
LAST_REFRESH_KEY = f"{KEY_PREFIX}lastRefresh"
SETTINGS_KEY = f"{KEY_PREFIX}settings"

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024

OPERATIONS = frozenset({"get_value", "set_value", "delete_value", "list_keys", "count_keys", "total_size"})


def initialize_database(conn) -> None:
    """Create the kv_store table from schema.sql unless it already exists."""
    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name='kv_store'").fetchone()
    if row is not None:
        return
    logger.info("Creating kv_store schema")
    try:
        conn.executescript(_read_schema_file())
        conn.commit()
    except Error as e:
        logger.error(f"Schema creation failed: {e}")
        raise


def _read_schema_file() -> str:
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Missing schema file {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"Schema file {schema_path} is not readable")
    size = path.getsize(schema_path)
    if size > SCHEMA_FILE_SIZE_LIMIT:
        raise ValueError(f"Schema file {schema_path} is {size} bytes, over the {SCHEMA_FILE_SIZE_LIMIT} byte limit")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """Serializes named key-value operations onto one sqlite3 connection.

    Callers ``await execute("get_value", key=...)``; a single worker task owns
    the connection and resolves each request's future in submission order.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.conn = None
        self.running = False
        self.worker_task = None
        self._pending: Set[Future] = set()

    async def start(self) -> None:
        """Open the database, create the schema if needed and start the worker."""
        if self.running:
            return
        existed = path.isfile(self.db_path)
        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StorageError(f"Could not open database {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info(f"{'Opened' if existed else 'Created'} database {self.db_path}")

    async def stop(self) -> None:
        """Cancel the worker, fail outstanding requests and close the connection."""
        if not self.running:
            return
        self.running = False

        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        for future in self._pending:
            if not future.done():
                future.set_exception(StorageError("Database closed before the operation ran"))
        self._pending.clear()

        if self.conn:
            self.conn.close()
            self.conn = None
        logger.info(f"Closed database {self.db_path}")

    def _run(self, operation_name: str, params: Dict[str, Any]) -> Any:
        if operation_name.startswith('_') or operation_name not in OPERATIONS:
            raise StorageError(f"Unknown operation: {operation_name}")
        try:
            return getattr(self, operation_name)(**params)
        except (Error, TypeError, ValueError) as e:
            logger.error(f"{operation_name} failed: {e}")
            raise StorageError(str(e)) from e

    async def _worker(self) -> None:
        while True:
            future, operation_name, params = await self.queue.get()
            try:
                if future.done():
                    continue
                try:
                    future.set_result(self._run(operation_name, params))
                except StorageError as e:
                    future.set_exception(e)
            finally:
                self._pending.discard(future)
                self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue a named operation and wait for its result."""
        if not self.running:
            raise StorageError("Database worker is not running")
        future = get_running_loop().create_future()
        self._pending.add(future)
        await self.queue.put((future, operation_name, params))
        return await future

    # Key-value operations
    def get_value(self, key: str) -> Optional[str]:
        """Return the raw JSON text stored under key."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row['value'] if row else None
        finally:
            cursor.close()

    def set_value(self, key: str, value: str) -> bool:
        """Insert or replace the JSON text stored under key."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value, int(time())),
            )
            self.conn.commit()
            return True
        finally:
            cursor.close()

    def delete_value(self, key: str) -> bool:
        """Delete key; returns True if a row was removed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def list_keys(self, prefix: str = "") -> List[str]:
        """List keys, optionally restricted to a prefix."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [row['key'] for row in cursor.fetchall()]
        finally:
            cursor.close()

    def count_keys(self, prefix: str = "") -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM kv_store WHERE substr(key, 1, ?) = ?", (len(prefix), prefix))
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

    def total_size(self, prefix: str = "") -> int:
        """Total stored bytes (UTF-8) of values under a prefix."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) FROM kv_store WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0
        finally:
            cursor.close()


class ArticleStore:
    """JSON-blob persistence for articles, feed overrides and refresh bookkeeping."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)

    async def initialize(self) -> None:
        await self.db.start()

    async def close(self) -> None:
        await self.db.stop()

    async def _load_json(self, key: str, default: Any) -> Any:
        raw = await self.db.execute('get_value', key=key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt JSON under {key}, ignoring stored value: {e}")
            return default

    async def _save_json(self, key: str, value: Any) -> bool:
        return await self.db.execute('set_value', key=key, value=json.dumps(value, ensure_ascii=False))

    @trace_span("storage.load_articles", tracer_name="storage")
    async def load_articles(self) -> List[Article]:
        """Load the persisted article collection; unreadable records are skipped."""
        records = await self._load_json(ARTICLES_KEY, [])
        articles: List[Article] = []
        if not isinstance(records, list):
            logger.warning(f"Stored value under {ARTICLES_KEY} is not a list, ignoring it")
            return articles
        for record in records:
            try:
                articles.append(Article.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable stored article: {e}")
        return articles

    @trace_span(
        "storage.save_articles",
        tracer_name="storage",
        attr_from_args=lambda self, articles: {"articles.count": len(articles)},
    )
    async def save_articles(self, articles: List[Article]) -> bool:
        return await self._save_json(ARTICLES_KEY, [article.to_dict() for article in articles])

    async def load_last_refresh(self) -> Optional[datetime]:
        value = await self._load_json(LAST_REFRESH_KEY, None)
        if not isinstance(value, (int, float)) or value <= 0:
            return None
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)

    async def save_last_refresh(self, when: Optional[datetime] = None) -> bool:
        when = when or datetime.now(timezone.utc)
        return await self._save_json(LAST_REFRESH_KEY, round(when.timestamp() * 1000))

    async def load_feed_overrides(self) -> Dict[str, bool]:
        """Per-feed enabled flags changed by the user, keyed by feed id."""
        value = await self._load_json(FEEDS_KEY, {})
        if not isinstance(value, dict):
            return {}
        return {str(feed_id): bool(enabled) for feed_id, enabled in value.items()}

    async def save_feed_overrides(self, overrides: Dict[str, bool]) -> bool:
        return await self._save_json(FEEDS_KEY, dict(overrides))

    async def load_settings(self) -> Dict[str, Any]:
        value = await self._load_json(SETTINGS_KEY, {})
        return value if isinstance(value, dict) else {}

    async def save_settings(self, settings: Dict[str, Any]) -> bool:
        return await self._save_json(SETTINGS_KEY, dict(settings))

    async def clear_all(self) -> int:
        removed = 0
        for key in await self.db.execute('list_keys', prefix=KEY_PREFIX):
            if await self.db.execute('delete_value', key=key):
                removed += 1
        return removed

    async def stats(self) -> Dict[str, Any]:
        articles = await self.load_articles()
        total_size = await self.db.execute('total_size', prefix=KEY_PREFIX)
        return {
            "key_count": await self.db.execute('count_keys', prefix=KEY_PREFIX),
            "article_count": len(articles),
            "bookmark_count": sum(1 for article in articles if article.bookmarked),
            "archived_count": sum(1 for article in articles if article.archived),
            "unread_count": sum(1 for article in articles if not article.read),
            "total_size": total_size,
            "total_size_kb": round(total_size / 1024, 2),
        }
