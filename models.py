#!/usr/bin/env python3
"""
Database models and operations for Feed Sync.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.

All SQLite work goes through DatabaseQueue: callers enqueue a named operation
with keyword parameters and await its result, and a single worker task runs
the operations one at a time against one connection.
"""

from dataclasses import dataclass, fields
from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, Iterable, List, Optional, Set, Any, Tuple

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

SECONDS_PER_DAY = 24 * 60 * 60

# Fallbacks used when a settings row is missing
DEFAULT_SETTINGS: Dict[str, str] = {
    'update_interval': '10',
    'max_concurrent_refreshes': '5',
    'auto_cleanup_enabled': 'false',
    'max_article_age_days': '30',
    'proxy_enabled': 'false',
    'proxy_type': 'http',
    'proxy_host': '',
    'proxy_port': '',
    'proxy_username': '',
    'proxy_password': '',
    'last_article_update': '',
}

# Columns a caller may change through update_feed
UPDATABLE_FEED_FIELDS = {
    'title', 'url', 'script_path', 'category', 'link', 'description', 'image_url',
    'refresh_interval', 'proxy_enabled', 'proxy_url', 'hide_from_timeline',
    'discovery_completed',
}


@dataclass
class Feed:
    """A subscription row from the feeds table."""
    id: int
    title: str = ""
    url: Optional[str] = None
    script_path: Optional[str] = None
    category: str = ""
    link: str = ""
    description: str = ""
    image_url: str = ""
    refresh_interval: int = 0
    proxy_enabled: bool = False
    proxy_url: str = ""
    last_fetched_at: Optional[int] = None
    last_error: str = ""
    hide_from_timeline: bool = False
    discovery_completed: bool = False
    created_at: int = 0

    @classmethod
    def from_row(cls, row: Row) -> "Feed":
        keys = set(row.keys())
        values = {f.name: row[f.name] for f in fields(cls) if f.name in keys}
        for flag in ('proxy_enabled', 'hide_from_timeline', 'discovery_completed'):
            if flag in values:
                values[flag] = bool(values[flag])
        for text in ('title', 'category', 'link', 'description', 'image_url', 'proxy_url', 'last_error'):
            if values.get(text) is None:
                values[text] = ""
        return cls(**values)

    @property
    def is_script(self) -> bool:
        return bool(self.script_path)

    @property
    def location(self) -> str:
        """The URL or script path the feed is retrieved from."""
        return self.script_path if self.is_script else (self.url or "")

    @property
    def display_name(self) -> str:
        return self.title or self.location or f"feed {self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def initialize_database(conn) -> None:
    """Create missing tables and default settings from the schema file.

    The schema only uses IF NOT EXISTS / INSERT OR IGNORE, so it is applied on
    every start; new default settings reach existing databases that way.
    """
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except (Error, OSError, ValueError) as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")

    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure single-writer access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any callers still waiting on a result
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith('_'):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            StoreError: if the operation is unknown or raised inside the worker.
        """
        if not self.running:
            raise StoreError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id)
            if "error" in result:
                raise StoreError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Feed Management Operations
    def get_feeds(self) -> List[Feed]:
        """Return every subscribed feed ordered by id."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM feeds ORDER BY id")
            return [Feed.from_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing feeds: {e}")
            return []

    def get_feed_by_id(self, feed_id: int) -> Optional[Feed]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return Feed.from_row(row) if row else None
        except Error as e:
            logger.error(f"Error getting feed {feed_id}: {e}")
            return None

    def get_undiscovered_feeds(self) -> List[Feed]:
        """Return network feeds that have not been used as a discovery seed yet."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM feeds WHERE discovery_completed = 0 AND url IS NOT NULL ORDER BY id"
            )
            return [Feed.from_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing undiscovered feeds: {e}")
            return []

    def add_feed(
        self,
        url: Optional[str] = None,
        script_path: Optional[str] = None,
        category: str = "",
        title: str = "",
        refresh_interval: int = 0,
        proxy_enabled: bool = False,
        proxy_url: str = "",
    ) -> int:
        """Insert a feed and return its id.

        A network feed whose URL is already stored is updated in place
        (category, and title when one is given) and keeps its id.
        """
        cursor = self.conn.cursor()
        if url:
            cursor.execute("SELECT id FROM feeds WHERE url = ?", (url,))
            existing = cursor.fetchone()
            if existing:
                cursor.execute(
                    "UPDATE feeds SET category = ?, title = CASE WHEN ? != '' THEN ? ELSE title END WHERE id = ?",
                    (category or "", title or "", title or "", existing['id']),
                )
                self.conn.commit()
                logger.info(f"Feed {url} already subscribed as {existing['id']}; updated in place")
                return existing['id']

        cursor.execute(
            """
            INSERT INTO feeds (url, script_path, category, title, refresh_interval,
                               proxy_enabled, proxy_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                url,
                script_path,
                category or "",
                title or "",
                int(refresh_interval or 0),
                1 if proxy_enabled else 0,
                proxy_url or "",
                int(time()),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    def update_feed(self, feed_id: int, **changes) -> bool:
        """Update configuration columns of a feed. Unknown columns are rejected."""
        unknown = set(changes) - UPDATABLE_FEED_FIELDS
        if unknown:
            raise ValueError(f"Cannot update feed fields: {', '.join(sorted(unknown))}")
        if not changes:
            return True
        assignments = ", ".join(f"{column} = ?" for column in changes)
        values = [int(v) if isinstance(v, bool) else v for v in changes.values()]
        try:
            cursor = self.conn.cursor()
            cursor.execute(f"UPDATE feeds SET {assignments} WHERE id = ?", values + [feed_id])
            self.conn.commit()
            return cursor.rowcount > 0
        except IntegrityError:
            self.conn.rollback()
            raise
        except Error as e:
            logger.error(f"Error updating feed {feed_id}: {e}")
            self.conn.rollback()
            return False

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed and all of its articles."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM articles WHERE feed_id = ?", (feed_id,))
            cursor.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            deleted = cursor.rowcount > 0
            self.conn.commit()
            return deleted
        except Error as e:
            logger.error(f"Error deleting feed {feed_id}: {e}")
            self.conn.rollback()
            return False

    def record_fetch_success(
        self,
        feed_id: int,
        title: Optional[str] = None,
        link: Optional[str] = None,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> bool:
        """Mark a successful fetch and fill metadata the feed does not have yet."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE feeds SET
                    last_fetched_at = ?,
                    last_error = '',
                    title = CASE WHEN title = '' AND ? != '' THEN ? ELSE title END,
                    link = CASE WHEN link = '' AND ? != '' THEN ? ELSE link END,
                    description = CASE WHEN description = '' AND ? != '' THEN ? ELSE description END,
                    image_url = CASE WHEN image_url = '' AND ? != '' THEN ? ELSE image_url END
                WHERE id = ?
                """,
                (
                    int(time()),
                    title or "", title or "",
                    link or "", link or "",
                    description or "", description or "",
                    image_url or "", image_url or "",
                    feed_id,
                ),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording fetch success for feed {feed_id}: {e}")
            return False

    def record_fetch_error(self, feed_id: int, error: str) -> bool:
        """Store the last error of a feed. last_fetched_at keeps the last success."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feeds SET last_error = ? WHERE id = ?", (error or "Unknown error", feed_id))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording fetch error for feed {feed_id}: {e}")
            return False

    def mark_feed_discovered(self, feed_id: int) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE feeds SET discovery_completed = 1 WHERE id = ?", (feed_id,))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error marking feed {feed_id} as discovered: {e}")
            return False

    def get_all_feed_urls(self) -> Set[str]:
        """Return the set of subscribed network feed URLs."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT url FROM feeds WHERE url IS NOT NULL")
            return {row[0] for row in cursor.fetchall()}
        except Error as e:
            logger.error(f"Error listing feed URLs: {e}")
            return set()

    # Article Operations
    def get_article_urls(self, feed_id: int) -> Tuple[Set[str], Set[str]]:
        """Return (exact urls, canonical urls) of the articles stored for a feed."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT url, canonical_url FROM articles WHERE feed_id = ?", (feed_id,))
        urls: Set[str] = set()
        canonical: Set[str] = set()
        for row in cursor.fetchall():
            urls.add(row[0])
            canonical.add(row[1])
        return urls, canonical

    def save_articles(self, feed_id: int, articles: List[Dict[str, Any]]) -> int:
        """Insert new articles for a feed and return how many were stored.

        Rows that collide on (feed_id, canonical_url) are ignored. A failing
        row is logged and skipped without aborting the rest.
        """
        new_items = 0
        now = int(time())
        cursor = self.conn.cursor()
        for article in articles:
            try:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO articles
                        (feed_id, title, url, canonical_url, content, image_url, audio_url, video_url,
                         published_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feed_id,
                        article['title'],
                        article['url'],
                        article['canonical_url'],
                        article.get('content', ''),
                        article.get('image_url', ''),
                        article.get('audio_url', ''),
                        article.get('video_url', ''),
                        article['published_at'],
                        now,
                    ),
                )
                if cursor.rowcount > 0:
                    new_items += 1
            except Error as e:
                logger.error(f"Error inserting article {article.get('url')}: {e}")
                continue
        self.conn.commit()
        return new_items

    def get_articles(
        self,
        feed_id: Optional[int] = None,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return articles newest first, optionally for one feed or unread only."""
        clauses = []
        params: List[Any] = []
        if feed_id is not None:
            clauses.append("a.feed_id = ?")
            params.append(feed_id)
        if unread_only:
            clauses.append("a.is_read = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"""
                SELECT a.*, f.title AS feed_title
                FROM articles a JOIN feeds f ON f.id = a.feed_id
                {where}
                ORDER BY a.published_at DESC, a.id DESC
                LIMIT ? OFFSET ?
                """,
                params + [int(limit), int(offset)],
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error querying articles: {e}")
            return []

    def count_articles(self, feed_id: Optional[int] = None) -> int:
        """Return the number of stored articles, optionally for one feed."""
        try:
            cursor = self.conn.cursor()
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM articles")
            else:
                cursor.execute("SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        except Error as e:
            logger.error(f"Error counting articles: {e}")
            return 0

    def cleanup_old_articles(self, max_age_days: int) -> int:
        """Delete non-favorite articles published more than max_age_days ago.

        Runs VACUUM afterwards to give the space back.

        Returns:
            Number of articles deleted
        """
        if max_age_days <= 0:
            logger.warning("Invalid max_age_days value, skipping cleanup")
            return 0
        cutoff = int(time()) - max_age_days * SECONDS_PER_DAY
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "DELETE FROM articles WHERE published_at < ? AND is_favorite = 0",
                (cutoff,),
            )
            deleted = cursor.rowcount
            self.conn.commit()
            self.conn.execute("VACUUM")
            logger.info(f"Database maintenance: deleted {deleted} articles older than {max_age_days} days")
            return deleted
        except Error as e:
            logger.error(f"Error during database maintenance (cleaning old articles): {e}")
            self.conn.rollback()
            return 0

    # Settings Operations
    def get_setting(self, key: str, default: Optional[str] = None) -> str:
        """Return a setting value, falling back to the built-in default."""
        fallback = default if default is not None else DEFAULT_SETTINGS.get(key, "")
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row[0] if row else fallback
        except Error as e:
            logger.error(f"Error reading setting {key}: {e}")
            return fallback

    def get_settings(self, keys: Iterable[str]) -> Dict[str, str]:
        return {key: self.get_setting(key) for key in keys}

    def set_setting(self, key: str, value: Any) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error writing setting {key}: {e}")
            return False

    def get_stats(self) -> Dict[str, int]:
        """Counts used by the status command."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM feeds) AS feeds,
                (SELECT COUNT(*) FROM feeds WHERE last_error != '') AS failing_feeds,
                (SELECT COUNT(*) FROM articles) AS articles,
                (SELECT COUNT(*) FROM articles WHERE is_read = 0) AS unread
            """
        )
        return dict(cursor.fetchone())
