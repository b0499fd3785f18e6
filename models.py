#!/usr/bin/env python3
"""
Database models and operations for Feed Keeper.

All store access goes through a single DatabaseQueue worker so that every
named operation runs as one serialized transaction. Operations are plain
methods; callers use ``await db.execute('operation_name', **params)``.
"""

from os import path, access, R_OK
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any, Iterable

from config import config, get_logger
from errors import DatabaseError
from telemetry import trace_span
from utils import now_ts

# Module-specific logger
logger = get_logger("models")

SUMMARY_STATUSES = ("pending", "processing", "completed", "failed")

# Columns added after the first release; applied to existing databases on startup
_COLUMN_MIGRATIONS = {
    "feed": {
        "parsed_at": "INTEGER",
        "feed_updated_at": "INTEGER",
        "reader_mode": "INTEGER NOT NULL DEFAULT 0",
    },
    "entry_summary": {
        "claim_token": "TEXT",
        "lease_expires_at": "INTEGER",
        "attempts": "INTEGER NOT NULL DEFAULT 0",
    },
}


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feed'")
        feed_table_exists = cursor.fetchone() is not None

        # Statements are idempotent (IF NOT EXISTS), so new tables and indexes also land on old databases
        cursor.executescript(_read_schema_file())
        conn.commit()
        if not feed_table_exists:
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add columns that older databases are missing."""
    cursor = conn.cursor()
    try:
        for table, columns in _COLUMN_MIGRATIONS.items():
            cursor.execute(f"PRAGMA table_info({table})")
            existing = {row[1] for row in cursor.fetchall()}
            for column, ddl in columns.items():
                if column not in existing:
                    logger.info(f"Adding {column} column to {table} table")
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
        conn.commit()
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
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
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _placeholders(values: Iterable[Any]) -> str:
    return ','.join('?' for _ in values)


class DatabaseQueue:
    """A queue for database operations to ensure serialized, single-connection access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

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

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")

        initialize_database(self.conn)

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if not operation_name.startswith('_') and hasattr(self, operation_name):
                        method = getattr(self, operation_name)
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

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
            DatabaseError: the operation raised, is unknown, or the worker stopped.
        """
        operation_id = str(uuid4())

        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise DatabaseError(result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # ------------------------------------------------------------------
    # Category & feed operations
    # ------------------------------------------------------------------
    def ensure_category(self, name: str) -> Optional[int]:
        """Return the id of a category, creating it when missing."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO category (name, created_at) VALUES (?, ?)",
                (name, now_ts())
            )
            cursor.execute("SELECT id FROM category WHERE name = ?", (name,))
            row = cursor.fetchone()
            self.conn.commit()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error ensuring category {name}: {e}")
            return None

    def register_feed(self, category_id: int, url: str, reader_mode: bool = False) -> Optional[int]:
        """Register a feed under a category (idempotent) and return its id."""
        try:
            now = now_ts()
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO feed (category_id, url, reader_mode, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (category_id, url, 1 if reader_mode else 0, now, now)
            )
            if cursor.rowcount == 0:
                cursor.execute(
                    "UPDATE feed SET reader_mode = ?, updated_at = ? WHERE category_id = ? AND url = ? AND reader_mode != ?",
                    (1 if reader_mode else 0, now, category_id, url, 1 if reader_mode else 0)
                )
            cursor.execute("SELECT id FROM feed WHERE category_id = ? AND url = ?", (category_id, url))
            row = cursor.fetchone()
            self.conn.commit()
            return row['id'] if row else None
        except Error as e:
            logger.error(f"Error registering feed {url}: {e}")
            return None

    def get_feed(self, feed_id: int) -> Optional[Dict[str, Any]]:
        """Get a feed row as a dict, or None when it no longer exists."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM feed WHERE id = ?", (feed_id,))
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error getting feed ID {feed_id}: {e}")
            return None

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all feeds with the fields the scheduler and sync engine need."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT f.id, f.category_id, c.name AS category, f.url, f.title, f.etag,
                       f.last_modified, f.fetched_at, f.fetch_error, f.reader_mode
                FROM feed f JOIN category c ON c.id = f.category_id
                ORDER BY f.id
                """
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing feeds: {e}")
            return []

    def record_not_modified(self, feed_id: int, fetched_at: int) -> bool:
        """Record a 304 response: only the fetch time changes (and the error clears)."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE feed SET fetched_at = ?, fetch_error = NULL, updated_at = ? WHERE id = ?",
                (fetched_at, fetched_at, feed_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording not-modified for feed ID {feed_id}: {e}")
            return False

    def record_fetch_error(self, feed_id: int, fetched_at: int, error: str) -> bool:
        """Record a failed fetch or parse; previous entries are left untouched."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE feed SET fetched_at = ?, fetch_error = ?, updated_at = ? WHERE id = ?",
                (fetched_at, error, fetched_at, feed_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording fetch error for feed ID {feed_id}: {e}")
            return False

    def record_fetch_success(
        self,
        feed_id: int,
        fetched_at: int,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        site_url: Optional[str] = None,
        new_entries: int = 0,
    ) -> bool:
        """Record a successful fetch and parse.

        Validators are stored as received (including None). Metadata only
        overwrites when the document provided a value, and feed_updated_at
        only moves when at least one entry was inserted.
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE feed SET
                    fetched_at = ?,
                    parsed_at = ?,
                    fetch_error = NULL,
                    etag = ?,
                    last_modified = ?,
                    title = COALESCE(?, title),
                    description = COALESCE(?, description),
                    site_url = COALESCE(?, site_url),
                    feed_updated_at = CASE WHEN ? > 0 THEN ? ELSE feed_updated_at END,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    fetched_at, fetched_at, etag, last_modified,
                    title or None, description or None, site_url or None,
                    new_entries, fetched_at, fetched_at, feed_id,
                )
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error recording fetch success for feed ID {feed_id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Entry operations
    # ------------------------------------------------------------------
    def check_existing_urls(self, feed_id: int, urls: List[str]) -> Set[str]:
        """Return which of the given URLs are already stored for this feed."""
        if not urls:
            return set()
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT url FROM entry WHERE feed_id = ? AND url IN ({_placeholders(urls)})",
                [feed_id] + list(urls)
            )
            return {row[0] for row in cursor.fetchall()}
        except Error as e:
            logger.error(f"Error checking existing URLs for feed ID {feed_id}: {e}")
            return set()

    def insert_entries(self, feed_id: int, entries: List[Dict[str, Any]], fetched_at: int) -> List[int]:
        """Insert new entries in the given order, ignoring (feed_id, url) duplicates.

        Returns the ids of the rows actually inserted. A feed that was deleted
        concurrently yields an empty list rather than an error.
        """
        inserted: List[int] = []
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT 1 FROM feed WHERE id = ?", (feed_id,))
            if cursor.fetchone() is None:
                logger.info(f"Feed ID {feed_id} no longer exists; skipping {len(entries)} entries")
                return []
            for entry in entries:
                try:
                    cursor.execute(
                        """
                        INSERT OR IGNORE INTO entry
                            (feed_id, guid, url, title, content, author, published_at, fetched_at, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            feed_id,
                            entry.get('guid'),
                            entry['url'],
                            entry.get('title'),
                            entry.get('content'),
                            entry.get('author'),
                            entry.get('published_at'),
                            fetched_at,
                            fetched_at,
                            fetched_at,
                        )
                    )
                except (Error, OverflowError) as e:
                    # A failed statement leaves earlier rows in the transaction intact
                    logger.warning(f"Skipping entry {entry.get('url')} for feed ID {feed_id}: {e}")
                    continue
                if cursor.rowcount > 0:
                    inserted.append(cursor.lastrowid)
            self.conn.commit()
            return inserted
        except Error as e:
            self.conn.rollback()
            logger.error(f"Error inserting entries for feed ID {feed_id}: {e}")
            return []

    def get_entry(self, entry_id: int) -> Optional[Dict[str, Any]]:
        """Get an entry row as a dict, or None when it does not exist."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT id, feed_id, guid, url, title, content, author, published_at FROM entry WHERE id = ?",
                (entry_id,)
            )
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error getting entry ID {entry_id}: {e}")
            return None

    def list_entries(self, feed_id: int) -> List[Dict[str, Any]]:
        """List a feed's entries in insertion order."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT id, guid, url, title, content, author, published_at FROM entry WHERE feed_id = ? ORDER BY id",
                (feed_id,)
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing entries for feed ID {feed_id}: {e}")
            return []

    def delete_entry(self, entry_id: int) -> bool:
        """Delete an entry; its summary record is left for cleanup."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM entry WHERE id = ?", (entry_id,))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error deleting entry ID {entry_id}: {e}")
            return False

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed and (by cascade) its entries."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM feed WHERE id = ?", (feed_id,))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error deleting feed ID {feed_id}: {e}")
            return False

    def count_entries(self, feed_id: Optional[int] = None) -> int:
        """Return the number of stored entries, optionally for one feed."""
        try:
            cursor = self.conn.cursor()
            if feed_id is None:
                cursor.execute("SELECT COUNT(*) FROM entry")
            else:
                cursor.execute("SELECT COUNT(*) FROM entry WHERE feed_id = ?", (feed_id,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        except Error as e:
            logger.error(f"Error counting entries: {e}")
            return 0

    def get_status_counts(self) -> Dict[str, Any]:
        """Aggregate counts for the status command and health checks."""
        try:
            cursor = self.conn.cursor()
            counts: Dict[str, Any] = {}
            for table in ("category", "feed", "entry", "image"):
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM feed WHERE fetch_error IS NOT NULL")
            counts["feeds_with_errors"] = cursor.fetchone()[0]
            cursor.execute("SELECT status, COUNT(*) FROM entry_summary GROUP BY status")
            counts["summaries"] = {status: 0 for status in SUMMARY_STATUSES}
            for status, count in cursor.fetchall():
                counts["summaries"][status] = count
            return counts
        except Error as e:
            logger.error(f"Error getting status counts: {e}")
            return {}

    # ------------------------------------------------------------------
    # Image cache operations
    # ------------------------------------------------------------------
    def get_image(self, object_type: str, object_id: int) -> Optional[Dict[str, Any]]:
        """Get a cached image by its (object_type, object_id) key."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT data, content_type, source_url, etag, last_modified, fetched_at
                FROM image WHERE object_type = ? AND object_id = ?
                """,
                (object_type, object_id)
            )
            row = cursor.fetchone()
            return dict(row) if row else None
        except Error as e:
            logger.error(f"Error getting image {object_type}/{object_id}: {e}")
            return None

    def upsert_image(
        self,
        object_type: str,
        object_id: int,
        data: bytes,
        content_type: str,
        fetched_at: int,
        source_url: Optional[str] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> bool:
        """Insert or replace the cached image for a key."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO image
                    (object_type, object_id, data, content_type, source_url, etag, last_modified, fetched_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(object_type, object_id) DO UPDATE SET
                    data = excluded.data,
                    content_type = excluded.content_type,
                    source_url = excluded.source_url,
                    etag = excluded.etag,
                    last_modified = excluded.last_modified,
                    fetched_at = excluded.fetched_at
                """,
                (object_type, object_id, data, content_type, source_url, etag, last_modified, fetched_at, fetched_at)
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error storing image {object_type}/{object_id}: {e}")
            return False

    def touch_image(self, object_type: str, object_id: int, fetched_at: int) -> bool:
        """Mark a cached image as revalidated."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE image SET fetched_at = ? WHERE object_type = ? AND object_id = ?",
                (fetched_at, object_type, object_id)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error touching image {object_type}/{object_id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Summary record operations
    # ------------------------------------------------------------------
    def _fetch_summary(self, cursor, entry_id: int) -> Optional[Dict[str, Any]]:
        cursor.execute(
            """
            SELECT entry_id, status, summary_text, error_message, claim_token,
                   lease_expires_at, attempts, created_at, updated_at
            FROM entry_summary WHERE entry_id = ?
            """,
            (entry_id,)
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_summary(self, entry_id: int) -> Optional[Dict[str, Any]]:
        """Get the summary record for an entry, or None."""
        try:
            return self._fetch_summary(self.conn.cursor(), entry_id)
        except Error as e:
            logger.error(f"Error getting summary for entry ID {entry_id}: {e}")
            return None

    def request_summary(self, entry_id: int, now: int, force: bool = False) -> Dict[str, Any]:
        """Find or create the summary record for an entry.

        Runs as a single queued operation, so concurrent requests for the same
        entry observe one record. ``force`` resets a terminal record (completed
        or failed) to pending; in-flight records are returned as they are.

        Returns:
            {"record": dict | None, "enqueue": bool} where ``enqueue`` tells the
            caller that the record is pending and should be queued for work.
            ``record`` is None when the entry does not exist.
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM entry WHERE id = ?", (entry_id,))
        if cursor.fetchone() is None:
            return {"record": None, "enqueue": False}

        record = self._fetch_summary(cursor, entry_id)
        if record is None:
            cursor.execute(
                """
                INSERT INTO entry_summary (entry_id, status, created_at, updated_at)
                VALUES (?, 'pending', ?, ?)
                """,
                (entry_id, now, now)
            )
        elif force and record['status'] in ('completed', 'failed'):
            cursor.execute(
                """
                UPDATE entry_summary SET status = 'pending', summary_text = NULL, error_message = NULL,
                    claim_token = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE entry_id = ?
                """,
                (now, entry_id)
            )
        else:
            return {"record": record, "enqueue": record['status'] == 'pending'}
        self.conn.commit()
        return {"record": self._fetch_summary(cursor, entry_id), "enqueue": True}

    def claim_summary(self, entry_id: int, claim_token: str, now: int, lease_seconds: int) -> Optional[Dict[str, Any]]:
        """Move a pending (or lease-expired processing) record to processing.

        Returns the claimed record, or None when another worker holds a live
        lease, the record is terminal, or it no longer exists.
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE entry_summary SET status = 'processing', claim_token = ?, lease_expires_at = ?,
                    attempts = attempts + 1, updated_at = ?
                WHERE entry_id = ?
                  AND (status = 'pending' OR (status = 'processing' AND lease_expires_at <= ?))
                """,
                (claim_token, now + lease_seconds, now, entry_id, now)
            )
            self.conn.commit()
            if cursor.rowcount == 0:
                return None
            return self._fetch_summary(cursor, entry_id)
        except Error as e:
            logger.error(f"Error claiming summary for entry ID {entry_id}: {e}")
            return None

    def complete_summary(self, entry_id: int, claim_token: str, summary_text: str, now: int) -> bool:
        """Store a finished summary if the caller still holds the claim."""
        return self._finish_summary(entry_id, claim_token, 'completed', summary_text, None, now)

    def fail_summary(self, entry_id: int, claim_token: str, error_message: str, now: int) -> bool:
        """Mark a summary failed if the caller still holds the claim."""
        return self._finish_summary(entry_id, claim_token, 'failed', None, error_message, now)

    def _finish_summary(
        self,
        entry_id: int,
        claim_token: str,
        status: str,
        summary_text: Optional[str],
        error_message: Optional[str],
        now: int,
    ) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE entry_summary SET status = ?, summary_text = ?, error_message = ?,
                    claim_token = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE entry_id = ? AND status = 'processing' AND claim_token = ?
                """,
                (status, summary_text, error_message, now, entry_id, claim_token)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error finishing summary for entry ID {entry_id}: {e}")
            return False

    def release_summary(self, entry_id: int, claim_token: str, now: int) -> bool:
        """Return a claimed record to pending so a later sweep retries it."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE entry_summary SET status = 'pending', claim_token = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE entry_id = ? AND status = 'processing' AND claim_token = ?
                """,
                (now, entry_id, claim_token)
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error releasing summary for entry ID {entry_id}: {e}")
            return False

    def delete_summary(self, entry_id: int) -> bool:
        """Delete the summary record for an entry."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM entry_summary WHERE entry_id = ?", (entry_id,))
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error deleting summary for entry ID {entry_id}: {e}")
            return False

    def list_incomplete_summaries(self, now: int) -> List[int]:
        """Entry ids whose records are pending or processing with an expired lease."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT entry_id FROM entry_summary
                WHERE status = 'pending' OR (status = 'processing' AND (lease_expires_at IS NULL OR lease_expires_at <= ?))
                ORDER BY updated_at, entry_id
                """,
                (now,)
            )
            return [row[0] for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing incomplete summaries: {e}")
            return []

    def list_completed_summaries(self, limit: int) -> List[Dict[str, Any]]:
        """Most recently completed summaries, newest first."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT entry_id, summary_text, updated_at FROM entry_summary
                WHERE status = 'completed' ORDER BY updated_at DESC, entry_id DESC LIMIT ?
                """,
                (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing completed summaries: {e}")
            return []

    def _delete_summaries_where(self, where: str, params: tuple) -> List[int]:
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT entry_id FROM entry_summary WHERE {where}", params)
        entry_ids = [row[0] for row in cursor.fetchall()]
        if entry_ids:
            cursor.execute(
                f"DELETE FROM entry_summary WHERE entry_id IN ({_placeholders(entry_ids)})",
                entry_ids
            )
        self.conn.commit()
        return entry_ids

    def delete_failed_summaries(self, older_than: int) -> List[int]:
        """Delete failed records last updated before a cutoff; returns their entry ids."""
        try:
            return self._delete_summaries_where("status = 'failed' AND updated_at < ?", (older_than,))
        except Error as e:
            logger.error(f"Error deleting failed summaries: {e}")
            return []

    def delete_orphan_summaries(self) -> List[int]:
        """Delete records whose entry no longer exists; returns their entry ids."""
        try:
            return self._delete_summaries_where(
                "NOT EXISTS (SELECT 1 FROM entry e WHERE e.id = entry_summary.entry_id)", ()
            )
        except Error as e:
            logger.error(f"Error deleting orphan summaries: {e}")
            return []

    def delete_completed_summaries(self, older_than: int) -> List[int]:
        """Delete completed records last updated before a cutoff; returns their entry ids."""
        try:
            return self._delete_summaries_where("status = 'completed' AND updated_at < ?", (older_than,))
        except Error as e:
            logger.error(f"Error deleting completed summaries: {e}")
            return []
