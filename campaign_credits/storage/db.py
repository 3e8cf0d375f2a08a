"""
Database connection management.

Provides SQLite connections and explicit write transactions for the ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "campaign_credits.db"

# Seconds a writer waits for a competing writer's lock before failing.
BUSY_TIMEOUT = 30.0


class LedgerStoreError(Exception):
    """Raised when the ledger store cannot complete an operation.

    The operation did not happen: any open transaction was rolled back,
    so no partial balance change or transaction row was written.
    """


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Writes must go through :func:`write_transaction` so that the
    read-modify-write of a balance runs under a single write lock.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled

    Raises:
        LedgerStoreError: If the database cannot be opened
    """
    path = Path(db_path)
    try:
        conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as e:
        raise LedgerStoreError(f"Cannot open ledger store {db_path}: {e}") from e
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

    BEGIN IMMEDIATE takes the database write lock up front, so two
    connections can never interleave a check with a decrement.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")
