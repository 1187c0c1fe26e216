"""
Progress Cache - SQLite store of edition mappings and last-synced progress

One row per (user, identifier, identifier type, title). Rows are created the
first time a book is resolved and updated after every successful sync. Read
failures are treated as cache misses so a broken cache leads to a re-sync.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

from .models import CacheInfo, CacheKey, IdentifierType, SyncChanges, SyncCheck

PROGRESS_EPSILON = 0.01
BUSY_TIMEOUT_SECONDS = 30.0
RECENT_DAYS = 7

_INFO_COLUMNS = (
    "edition_id, author, progress_percent, status_id, "
    "started_at, finished_at, last_sync"
)


def _type_value(identifier_type: Any) -> str:
    return IdentifierType(identifier_type).value


def _normalize_title(title: str) -> str:
    return (title or "").lower().strip()


class ProgressCache:
    """SQLite-based cache for edition mappings and progress, keyed per user"""

    def __init__(self, cache_file: str = "data/.book_cache.db"):
        self.cache_file = cache_file
        self.logger = logging.getLogger(__name__)
        self.logger.debug(
            f"ProgressCache: database file {self.cache_file} "
            f"(absolute: {os.path.abspath(self.cache_file)})"
        )
        self._init_database()

    def _init_database(self) -> None:
        """Create the books table and its indexes if needed"""
        cache_dir = os.path.dirname(self.cache_file)
        if cache_dir and not os.path.exists(cache_dir):
            os.makedirs(cache_dir, exist_ok=True)
            self.logger.info(f"Created cache directory: {cache_dir}")

        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS books (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    identifier TEXT NOT NULL,
                    identifier_type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    author TEXT,
                    edition_id INTEGER,
                    progress_percent REAL,
                    status_id INTEGER,
                    last_listened_at TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    last_sync TIMESTAMP,
                    updated_at TIMESTAMP,
                    UNIQUE(user_id, identifier, identifier_type, title)
                )
                """
            )
            for column in (
                "user_id",
                "identifier",
                "identifier_type",
                "title",
                "edition_id",
                "author",
            ):
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{column} ON books({column})"
                )

        self.logger.debug(f"Database schema initialized at {self.cache_file}")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """One connection per operation, committed on success and always closed"""
        conn = sqlite3.connect(self.cache_file, timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def get_cached_info(
        self,
        user_id: str,
        identifier: str,
        title: str,
        identifier_type: Any = IdentifierType.ISBN,
    ) -> CacheInfo:
        """
        Everything the cache knows about one book

        Never raises: a storage error is reported as ``exists=False`` with the
        error message attached.
        """
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_INFO_COLUMNS} FROM books "
                    "WHERE user_id = ? AND identifier = ? AND identifier_type = ? AND title = ?",
                    (
                        str(user_id),
                        identifier,
                        _type_value(identifier_type),
                        _normalize_title(title),
                    ),
                ).fetchone()
        except sqlite3.Error as e:
            self.logger.error(f"Error reading cache for {title}: {str(e)}")
            return CacheInfo(exists=False, error=str(e))

        if row is None:
            return CacheInfo(exists=False)

        return CacheInfo(
            exists=True,
            edition_id=row["edition_id"],
            progress_percent=row["progress_percent"],
            status_id=row["status_id"],
            author=row["author"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            last_sync=row["last_sync"],
        )

    def find_cached_info(
        self, user_id: str, keys: Iterable[CacheKey], title: str
    ) -> Tuple[Optional[CacheKey], CacheInfo]:
        """
        Check each (identifier, identifier_type) key in order

        Returns the first key with a cache row, or (None, miss) when no key hits.
        A storage error on any key ends the lookup as a miss.
        """
        for identifier, identifier_type in keys:
            info = self.get_cached_info(user_id, identifier, title, identifier_type)
            if info.exists:
                self.logger.debug(
                    f"Cache hit for {title} via {_type_value(identifier_type)}: {identifier}"
                )
                return (identifier, IdentifierType(identifier_type)), info
            if info.error:
                return None, info
        return None, CacheInfo(exists=False)

    def store_sync_data(
        self,
        user_id: str,
        identifier: str,
        title: str,
        edition_id: Optional[int],
        identifier_type: Any = IdentifierType.ISBN,
        author: Optional[str] = None,
        progress_percent: Optional[float] = None,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
        status_id: Optional[int] = None,
        last_listened_at: Optional[str] = None,
    ) -> bool:
        """
        Insert or update the row for a book

        On update every column whose new value is None keeps its stored value.
        Returns False when the write failed.
        """
        now = datetime.now().isoformat()
        values = (
            str(user_id),
            identifier,
            _type_value(identifier_type),
            _normalize_title(title),
            author,
            edition_id,
            progress_percent,
            status_id,
            last_listened_at,
            started_at,
            finished_at,
            now,
            now,
        )

        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO books (
                        user_id, identifier, identifier_type, title, author,
                        edition_id, progress_percent, status_id, last_listened_at,
                        started_at, finished_at, last_sync, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, identifier, identifier_type, title) DO UPDATE SET
                        author = COALESCE(excluded.author, books.author),
                        edition_id = COALESCE(excluded.edition_id, books.edition_id),
                        progress_percent = COALESCE(excluded.progress_percent, books.progress_percent),
                        status_id = COALESCE(excluded.status_id, books.status_id),
                        last_listened_at = COALESCE(excluded.last_listened_at, books.last_listened_at),
                        started_at = COALESCE(excluded.started_at, books.started_at),
                        finished_at = COALESCE(excluded.finished_at, books.finished_at),
                        last_sync = excluded.last_sync,
                        updated_at = excluded.updated_at
                    """,
                    values,
                )
        except sqlite3.Error as e:
            self.logger.error(f"Error storing sync data for {title}: {str(e)}")
            return False

        self.logger.debug(
            f"Cached {title}: {identifier} ({_type_value(identifier_type)}) -> "
            f"edition {edition_id}, progress {progress_percent}"
        )
        return True

    def has_progress_changed(
        self,
        user_id: str,
        identifier: str,
        title: str,
        new_progress: float,
        identifier_type: Any = IdentifierType.ISBN,
    ) -> bool:
        """
        Check if progress has moved by more than PROGRESS_EPSILON since last sync
        A missing row, a NULL progress or a cache error count as changed.
        """
        info = self.get_cached_info(user_id, identifier, title, identifier_type)

        if not info.exists or info.progress_percent is None:
            self.logger.debug(
                f"🔍 No previous progress for {title} ({_type_value(identifier_type)}: {identifier}), "
                f"considering as changed"
            )
            return True

        progress_diff = abs(float(new_progress) - float(info.progress_percent))
        has_changed = progress_diff > PROGRESS_EPSILON

        if has_changed:
            self.logger.debug(
                f"🔍 Progress changed for {title}: {info.progress_percent:.3f}% -> "
                f"{new_progress:.3f}% (diff: {progress_diff:.3f}%)"
            )
        return has_changed

    def needs_sync_check(
        self,
        user_id: str,
        identifier: str,
        title: str,
        new_progress: float,
        identifier_type: Any = IdentifierType.ISBN,
        new_edition_id: Optional[int] = None,
        new_status_id: Optional[int] = None,
    ) -> SyncCheck:
        """Decide whether a book needs a remote sync, and why"""
        info = self.get_cached_info(user_id, identifier, title, identifier_type)

        if info.error:
            return SyncCheck(True, "cache error", SyncChanges(progress_changed=True))

        if not info.exists:
            return SyncCheck(True, "not in cache", SyncChanges(progress_changed=True))

        progress_changed = (
            info.progress_percent is None
            or abs(float(new_progress) - float(info.progress_percent)) > PROGRESS_EPSILON
        )
        status_changed = (
            new_status_id is not None
            and info.status_id is not None
            and int(new_status_id) != int(info.status_id)
        )
        edition_changed = (
            new_edition_id is not None
            and info.edition_id is not None
            and int(new_edition_id) != int(info.edition_id)
        )
        changes = SyncChanges(progress_changed, status_changed, edition_changed)

        reasons = []
        if progress_changed:
            reasons.append("progress changed")
        if status_changed:
            reasons.append("status changed")
        if edition_changed:
            reasons.append("edition changed")

        if not reasons:
            return SyncCheck(False, "no changes", changes)
        return SyncCheck(True, ", ".join(reasons), changes)

    def clear(self) -> None:
        """Delete every cached row"""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM books")
        self.logger.info("Book cache cleared")

    def clear_edition_mappings(self) -> int:
        """
        Forget edition and author mappings but keep progress

        Returns:
            Number of rows touched
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE books SET edition_id = NULL, author = NULL, updated_at = ? "
                "WHERE edition_id IS NOT NULL OR author IS NOT NULL",
                (datetime.now().isoformat(),),
            )
            cleared = cursor.rowcount

        self.logger.info(f"Cleared edition mappings for {cleared} books")
        return cleared

    def stats(self) -> Dict[str, int]:
        """Get cache statistics"""
        recent_cutoff = (datetime.now() - timedelta(days=RECENT_DAYS)).isoformat()

        try:
            with self._get_connection() as conn:
                total_books = conn.execute(
                    "SELECT COUNT(*) AS total FROM books"
                ).fetchone()["total"]
                recent_books = conn.execute(
                    "SELECT COUNT(*) AS count FROM books WHERE updated_at >= ?",
                    (recent_cutoff,),
                ).fetchone()["count"]
        except sqlite3.Error as e:
            self.logger.error(f"Error getting cache stats: {str(e)}")
            total_books = recent_books = 0

        cache_size_bytes = (
            os.path.getsize(self.cache_file) if os.path.exists(self.cache_file) else 0
        )

        return {
            "total_books": total_books,
            "recent_books": recent_books,
            "cache_size_bytes": cache_size_bytes,
        }

    def export_to_json(self, filename: str = "book_cache_export.json") -> int:
        """
        Export cache rows to JSON for backup or debugging

        Returns:
            Number of exported rows
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM books ORDER BY user_id, identifier, title"
            ).fetchall()

        export_data: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            record = dict(row)
            record.pop("id", None)
            key = f"{row['user_id']}:{row['identifier_type']}:{row['identifier']}:{row['title']}"
            export_data[key] = record

        with open(filename, "w") as f:
            json.dump(export_data, f, indent=2)

        self.logger.info(f"Cache exported to {filename} ({len(export_data)} books)")
        return len(export_data)
