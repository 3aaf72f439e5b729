#!/usr/bin/env python3
"""
Database models and operations for the feed ingestion service.

This module owns the SQLite schema bootstrap and the DatabaseQueue store used
by the fetcher, the poller and the command line entry point. All operations
run serially on a single connection owned by a worker task, so uniqueness of
(feed_id, guid) is decided by the database constraint rather than by
read-then-write checks in the application.
"""

from os import path, access, R_OK
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from datetime import datetime
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import StorageError, ConflictError, DuplicateFeedError, DuplicatePostError
from telemetry import trace_span
from utils import utcnow, to_db_timestamp, from_db_timestamp

# Module-specific logger
logger = get_logger("models")

FEED_COLUMNS = (
    "id, name, url, category, site_url, description, is_active, "
    "last_fetched_at, error_count, last_error, created_at, updated_at"
)
POST_COLUMNS = (
    "id, feed_id, title, link, description, content, author, "
    "published_at, image_url, guid, is_read, created_at, updated_at"
)


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql, or migrate an existing one."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
            _run_migrations(conn)

        # Cascading deletes from feeds to posts need this on every connection
        cursor.execute("PRAGMA foreign_keys = ON")

    except (Error, OSError, ValueError) as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Run any necessary database migrations."""
    cursor = conn.cursor()

    try:
        # Migration 1: error tracking columns on feeds
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'error_count' not in columns:
            logger.info("Adding error_count column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN error_count INTEGER DEFAULT 0")
        if 'last_error' not in columns:
            logger.info("Adding last_error column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN last_error TEXT")

        # Migration 2: the per-feed guid index backs post deduplication
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type='index' AND name='idx_posts_feed_guid'"
        )
        if cursor.fetchone() is None:
            logger.info("Creating unique index idx_posts_feed_guid")
            cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_posts_feed_guid ON posts(feed_id, guid)")

        conn.commit()

    except Error as e:
        logger.error(f"Error running migrations: {e}")
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


def _row_to_feed(row) -> Dict[str, Any]:
    return {
        'id': row['id'],
        'name': row['name'],
        'url': row['url'],
        'category': row['category'],
        'site_url': row['site_url'],
        'description': row['description'],
        'is_active': bool(row['is_active']),
        'last_fetched_at': from_db_timestamp(row['last_fetched_at']),
        'error_count': row['error_count'] or 0,
        'last_error': row['last_error'],
        'created_at': from_db_timestamp(row['created_at']),
        'updated_at': from_db_timestamp(row['updated_at']),
    }


def _row_to_post(row) -> Dict[str, Any]:
    post = {
        'id': row['id'],
        'feed_id': row['feed_id'],
        'title': row['title'],
        'link': row['link'],
        'description': row['description'] or '',
        'content': row['content'] or '',
        'author': row['author'] or '',
        'published_at': from_db_timestamp(row['published_at']),
        'image_url': row['image_url'] or '',
        'guid': row['guid'],
        'is_read': bool(row['is_read']),
        'created_at': from_db_timestamp(row['created_at']),
        'updated_at': from_db_timestamp(row['updated_at']),
    }
    if 'feed_name' in row.keys():
        post['feed_name'] = row['feed_name']
    return post


class DatabaseQueue:
    """A queue for database operations to ensure serialized access to one connection.

    Operations are methods of this class invoked by name through execute():

        feed = await db.execute('get_feed', feed_id=1)

    Exceptions raised by an operation are re-raised to the awaiting caller;
    sqlite errors arrive wrapped in StorageError.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready: Optional[Event] = None
        self._startup_error: Optional[BaseException] = None

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready.

        Raises:
            StorageError: If the database cannot be opened or initialized.
        """
        if self.running:
            return

        self.running = True
        self._startup_error = None
        self._ready = Event()
        self.worker_task = create_task(self._worker())
        await self._ready.wait()

        if self._startup_error is not None:
            error = self._startup_error
            self.worker_task = None
            raise StorageError(f"Could not open database {self.db_path}: {error}") from error

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
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake any waiters so they observe the shutdown instead of hanging
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            logger.error(f"Database worker failed to start: {e}")
            self._startup_error = e
            self.running = False
            if self.conn:
                self.conn.close()
                self.conn = None
            self._ready.set()
            return

        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                outcome: Dict[str, Any] = {}

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        raise StorageError(f"Unknown operation: {operation_name}")
                    outcome = {"result": method(**params)}
                except ConflictError as e:
                    logger.debug(f"Database operation {operation_name} rejected: {e}")
                    outcome = {"error": e}
                except Error as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    wrapped = StorageError(f"{operation_name} failed: {e}")
                    wrapped.__cause__ = e
                    outcome = {"error": wrapped}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    outcome = {"error": e}
                finally:
                    # A caller cancelled while waiting has already dropped its event
                    if operation_id in self.events:
                        self.results[operation_id] = outcome
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
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
            StorageError: If the queue is not running or the operation failed in sqlite.
            ConflictError: If the operation violated a uniqueness constraint.
        """
        if not self.running:
            raise StorageError(f"Database queue is not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database queue stopped before {operation_name} completed")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Feed Management Operations
    def create_feed(
        self,
        name: str,
        url: str,
        category: Optional[str] = None,
        site_url: Optional[str] = None,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        """Insert a new feed and return it.

        Raises:
            DuplicateFeedError: If a feed with this URL already exists.
        """
        now = to_db_timestamp(utcnow())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO feeds (name, url, category, site_url, description, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (name, url, category, site_url, description, 1 if is_active else 0, now, now),
            )
            self.conn.commit()
            feed_id = cursor.lastrowid
        except IntegrityError as e:
            self.conn.rollback()
            if "UNIQUE" in str(e).upper():
                raise DuplicateFeedError(url) from e
            raise
        finally:
            cursor.close()
        logger.info(f"Registered feed {name} ({url}) as ID {feed_id}")
        return self.get_feed(feed_id)

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        """Get a feed by ID, or None if it does not exist."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return _row_to_feed(row) if row else None
        finally:
            cursor.close()

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds ordered by name."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds ORDER BY name ASC, id ASC")
            return [_row_to_feed(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_active_feeds(self) -> List[Dict[str, Any]]:
        """List feeds flagged active, ordered by name."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE is_active = 1 ORDER BY name ASC, id ASC")
            return [_row_to_feed(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def set_feed_active(self, feed_id: int, is_active: bool) -> bool:
        """Flag a feed active or inactive. Returns False if the feed does not exist."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET is_active = ?, updated_at = ? WHERE id = ?",
                (1 if is_active else 0, to_db_timestamp(utcnow()), feed_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed and, through the foreign key cascade, all of its posts."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            self.conn.commit()
            deleted = cursor.rowcount > 0
        finally:
            cursor.close()
        if deleted:
            logger.info(f"Deleted feed ID {feed_id} and its posts")
        return deleted

    def update_last_fetched(self, feed_id: int, fetched_at: Optional[datetime] = None) -> bool:
        """Update the last_fetched_at timestamp for a feed."""
        fetched_at = fetched_at or utcnow()
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
                (to_db_timestamp(fetched_at), to_db_timestamp(utcnow()), feed_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    # Error Tracking Operations
    def record_feed_error(self, feed_id: int, last_error: str) -> int:
        """Increment the error count for a feed and store the error message.

        last_fetched_at is left alone: it records the last successful fetch.

        Returns:
            The new error count (0 if the feed does not exist).
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                UPDATE feeds
                SET error_count = COALESCE(error_count, 0) + 1, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (last_error, to_db_timestamp(utcnow()), feed_id),
            )
            self.conn.commit()
            if cursor.rowcount == 0:
                logger.warning(f"No feed found with ID {feed_id} to record error")
                return 0
            cursor.execute("SELECT error_count FROM feeds WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return int(row[0]) if row else 0
        finally:
            cursor.close()

    def reset_feed_error(self, feed_id: int) -> bool:
        """Reset the error count and last error for a feed after a successful fetch."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET error_count = 0, last_error = NULL WHERE id = ?",
                (feed_id,),
            )
            self.conn.commit()
            success = cursor.rowcount > 0
        finally:
            cursor.close()
        if not success:
            logger.warning(f"No feed found with ID {feed_id} to reset errors")
        return success

    def get_feed_error_info(self, feed_id: int) -> Dict[str, Any]:
        """Get error tracking information for a feed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT error_count, last_error FROM feeds WHERE id = ?", (feed_id,))
            result = cursor.fetchone()
            if result:
                return {'error_count': result[0] or 0, 'last_error': result[1]}
            return {'error_count': 0, 'last_error': None}
        finally:
            cursor.close()

    # Post Management Operations
    def get_post_by_guid(self, feed_id: int, guid: str) -> Optional[Dict[str, Any]]:
        """Look up a post by its (feed_id, guid) pair. Returns None when not found."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"SELECT {POST_COLUMNS} FROM posts WHERE feed_id = ? AND guid = ?",
                (feed_id, guid),
            )
            row = cursor.fetchone()
            return _row_to_post(row) if row else None
        finally:
            cursor.close()

    def create_post(self, feed_id: int, post: Dict[str, Any]) -> int:
        """Insert a new post for a feed and return its ID.

        Raises:
            DuplicatePostError: If the feed already has a post with this guid.
        """
        now = to_db_timestamp(utcnow())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO posts (feed_id, title, link, description, content, author,
                                   published_at, image_url, guid, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feed_id,
                    post.get('title') or '',
                    post.get('link') or '',
                    post.get('description') or '',
                    post.get('content') or '',
                    post.get('author') or '',
                    to_db_timestamp(post.get('published_at')),
                    post.get('image_url') or '',
                    post['guid'],
                    now,
                    now,
                ),
            )
            self.conn.commit()
            return cursor.lastrowid
        except IntegrityError as e:
            self.conn.rollback()
            if "UNIQUE" in str(e).upper():
                raise DuplicatePostError(feed_id, post['guid']) from e
            raise
        finally:
            cursor.close()

    def count_posts(self, feed_id: Optional[int] = None) -> int:
        """Count posts, optionally restricted to one feed."""
        cursor = self.conn.cursor()
        try:
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM posts")
            else:
                cursor.execute("SELECT COUNT(*) FROM posts WHERE feed_id = ?", (feed_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def list_posts(self, feed_id: Optional[int] = None, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """List posts newest first with their feed name, optionally for one feed."""
        query = (
            "SELECT p.id, p.feed_id, p.title, p.link, p.description, p.content, p.author, "
            "p.published_at, p.image_url, p.guid, p.is_read, p.created_at, p.updated_at, "
            "f.name AS feed_name "
            "FROM posts p JOIN feeds f ON p.feed_id = f.id"
        )
        params: List[Any] = []
        if feed_id is not None:
            query += " WHERE p.feed_id = ?"
            params.append(feed_id)
        query += " ORDER BY p.published_at DESC, p.id DESC LIMIT ? OFFSET ?"
        params.extend([max(0, int(limit)), max(0, int(offset))])

        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            return [_row_to_post(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # Seed data
    def seed_default_feeds(self, seeds: List[Dict[str, Any]]) -> int:
        """Insert seed feeds if the feeds table is empty. Returns the number inserted."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM feeds")
            if cursor.fetchone()[0] > 0:
                logger.info("Feeds already exist, skipping seed")
                return 0
        finally:
            cursor.close()

        logger.info("Seeding default feeds...")
        seeded = 0
        for seed in seeds:
            try:
                self.create_feed(
                    name=seed['name'],
                    url=seed['url'],
                    category=seed.get('category'),
                    site_url=seed.get('site_url'),
                    description=seed.get('description'),
                )
                seeded += 1
            except (DuplicateFeedError, Error, KeyError) as e:
                logger.warning(f"Failed to seed feed {seed.get('name')}: {e}")
        logger.info(f"Seeded {seeded} default feeds")
        return seeded
