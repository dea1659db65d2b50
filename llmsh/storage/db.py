"""
Database connection management.

Provides the SQLite connection backing the prediction cache.
"""

import sqlite3
from pathlib import Path

# Seconds a writer waits on a lock held by another shell session.
BUSY_TIMEOUT = 5.0


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    The parent directory is created when missing. Transactions are opened
    explicitly by callers that need them.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout for cross-process access

    Raises:
        OSError: If the parent directory cannot be created
        sqlite3.Error: If the database cannot be opened
    """
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.execute(f"PRAGMA busy_timeout = {int(BUSY_TIMEOUT * 1000)}")
    return conn
