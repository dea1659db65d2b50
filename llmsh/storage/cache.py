"""
SQLite-backed prediction cache.

Maps a context fingerprint to a previously generated command, counting hits
and evicting by age (TTL) and by capacity (least recently used first).
"""

import logging
import sqlite3
import time
from datetime import timedelta
from typing import Callable, Optional, Tuple, Union

from llmsh.core.errors import StorageError
from .db import get_connection
from .models import CacheEntry

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS predictions (
        context_hash TEXT PRIMARY KEY,
        command TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        hit_count INTEGER DEFAULT 0,
        last_used INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_last_used ON predictions(last_used);
"""


class PredictionCache:
    """Keyed cache of predicted commands.

    Safe to open concurrently from several shell sessions: SQLite serializes
    writers, and the read-and-bump in `get` runs in one immediate transaction.
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        """Open (or create) the cache database.

        Args:
            db_path: Path to SQLite database file
            clock: Source of the current time in epoch seconds

        Raises:
            StorageError: If the database location cannot be created or opened
        """
        self.db_path = db_path
        self._clock = clock
        try:
            self._conn: Optional[sqlite3.Connection] = get_connection(db_path)
            self._conn.executescript(SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"open cache {db_path}: {e}") from e

    def __enter__(self) -> "PredictionCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _now(self) -> int:
        return int(self._clock())

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("cache is closed")
        return self._conn

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Look up a cached prediction.

        On a hit the stored hit count is incremented and last_used is moved
        to now before returning; the returned entry carries the values read
        before the update.

        Args:
            fingerprint: Context fingerprint

        Returns:
            The cached entry, or None on a miss
        """
        conn = self._connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("""
                    SELECT context_hash, command, created_at, hit_count, last_used
                    FROM predictions
                    WHERE context_hash = ?
                """, (fingerprint,)).fetchone()
                if row is not None:
                    conn.execute("""
                        UPDATE predictions
                        SET hit_count = hit_count + 1, last_used = ?
                        WHERE context_hash = ?
                    """, (max(self._now(), row[2]), fingerprint))
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageError(f"cache lookup: {e}") from e

        if row is None:
            return None
        return CacheEntry(
            fingerprint=row[0],
            command=row[1],
            created_at=row[2],
            hit_count=row[3],
            last_used=row[4],
        )

    def set(self, fingerprint: str, command: str) -> None:
        """Store a prediction, replacing any previous entry for the key.

        A replaced entry starts over: hit count 0, created_at and last_used now.
        """
        conn = self._connection()
        now = self._now()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO predictions
                (context_hash, command, created_at, hit_count, last_used)
                VALUES (?, ?, ?, 0, ?)
            """, (fingerprint, command, now, now))
        except sqlite3.Error as e:
            raise StorageError(f"cache write: {e}") from e

    def cleanup(self, max_age: Union[timedelta, float], max_entries: int) -> int:
        """Evict expired entries, then trim the cache to its capacity.

        Entries whose last_used is older than now - max_age are deleted.
        If more than max_entries remain, the least recently used are deleted
        (ties broken by fingerprint) until exactly max_entries are left.
        A non-positive max_entries disables the capacity limit.

        Args:
            max_age: Maximum idle time, as a timedelta or in seconds
            max_entries: Capacity limit

        Returns:
            Number of entries deleted
        """
        conn = self._connection()
        if isinstance(max_age, timedelta):
            max_age = max_age.total_seconds()
        cutoff = self._now() - int(max_age)

        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                deleted = conn.execute(
                    "DELETE FROM predictions WHERE last_used < ?", (cutoff,)
                ).rowcount
                if max_entries > 0:
                    deleted += conn.execute("""
                        DELETE FROM predictions
                        WHERE context_hash NOT IN (
                            SELECT context_hash FROM predictions
                            ORDER BY last_used DESC, context_hash DESC
                            LIMIT ?
                        )
                    """, (max_entries,)).rowcount
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageError(f"cache cleanup: {e}") from e

        if deleted:
            self._compact()
        return deleted

    def _compact(self) -> None:
        try:
            self._connection().execute("VACUUM")
        except sqlite3.Error as e:
            # Another session holding the database makes VACUUM fail.
            logger.debug("Cache vacuum skipped: %s", e)

    def clear(self) -> int:
        """Delete every entry and return how many were removed."""
        conn = self._connection()
        try:
            deleted = conn.execute("DELETE FROM predictions").rowcount
        except sqlite3.Error as e:
            raise StorageError(f"cache clear: {e}") from e
        if deleted:
            self._compact()
        return deleted

    def stats(self) -> Tuple[int, int]:
        """Return (total_entries, total_hits)."""
        conn = self._connection()
        try:
            row = conn.execute("""
                SELECT COUNT(*), COALESCE(SUM(hit_count), 0)
                FROM predictions
            """).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"cache stats: {e}") from e
        return row[0], row[1]

    def close(self) -> None:
        """Release the connection; later operations raise StorageError."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def open_cache(db_path: str, clock: Callable[[], float] = time.time) -> PredictionCache:
    """Open the prediction cache at db_path.

    Opening is idempotent: repeated opens against the same path share the
    same table.

    Raises:
        StorageError: If the database location cannot be created or opened
    """
    return PredictionCache(db_path, clock=clock)
