"""
Database connection management.

Provides SQLite connections and serializable write transactions.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "usage_ledger.db"
DEFAULT_TIMEOUT_SECONDS = 5.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Transactions are controlled explicitly (``isolation_level=None``) so
    callers decide when a write lock is taken.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None,
                           check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def serializable_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside a serializable write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so a balance read inside the block cannot be invalidated by a concurrent
    writer before commit. A competing writer waits up to the connection
    timeout and then fails with ``sqlite3.OperationalError``.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def is_write_conflict(error: BaseException) -> bool:
    """Classify an error as a retryable write conflict."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message
