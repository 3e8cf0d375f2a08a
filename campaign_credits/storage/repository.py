"""
Repository pattern for data access.

Owns the credit account table and the append-only transaction log. Every
balance mutation is a single write transaction that updates the balance
and appends the matching transaction row together, or does neither.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, LedgerStoreError, get_connection, write_transaction
from .models import (
    Account,
    Transaction,
    TransactionFilter,
    TransactionKind,
    TransactionPage,
)

logger = logging.getLogger(__name__)

_TRANSACTION_COLUMNS = (
    "id, account_id, kind, amount, balance_after, description, provider_ref, created_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _row_to_transaction(row: Tuple) -> Transaction:
    return Transaction(
        id=row[0],
        account_id=row[1],
        kind=TransactionKind(row[2]),
        amount=row[3],
        balance_after=row[4],
        description=row[5],
        provider_ref=row[6],
        created_at=datetime.fromisoformat(row[7]),
    )


class LedgerRepository:
    """Repository for credit balances and their transaction log.

    Opens one connection per operation, so a single instance can be shared
    across threads. Concurrent writers serialize on SQLite's write lock.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_account(self, account_id: str) -> Optional[Account]:
        """Return the account row, or None if it was never touched."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT account_id, balance, created_at, updated_at "
                "FROM credit_account WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to read account {account_id}: {e}") from e
        finally:
            conn.close()

        if row is None:
            return None
        return Account(
            account_id=row[0],
            balance=row[1],
            created_at=datetime.fromisoformat(row[2]),
            updated_at=datetime.fromisoformat(row[3]),
        )

    def get_balance(self, account_id: str) -> int:
        """Current balance; accounts that do not exist yet hold 0."""
        account = self.get_account(account_id)
        return account.balance if account else 0

    def debit_if_sufficient(
        self,
        account_id: str,
        amount: int,
        description: str,
        provider_ref: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Atomically deduct ``amount`` if the balance covers it.

        The balance check lives in the UPDATE's WHERE clause, so the check
        and the decrement are one statement under the write lock. An
        account that was never touched matches no row and is not created.

        Returns:
            The appended usage transaction, or None if the balance was too
            low, in which case nothing was written.

        Raises:
            LedgerStoreError: On any storage failure
        """
        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                now = _now()
                cursor = conn.execute(
                    "UPDATE credit_account SET balance = balance - ?, updated_at = ? "
                    "WHERE account_id = ? AND balance >= ?",
                    (amount, now, account_id, amount),
                )
                if cursor.rowcount == 0:
                    return None
                return self._append(
                    conn, account_id, TransactionKind.USAGE, -amount,
                    description, provider_ref, now,
                )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to debit account {account_id}: {e}") from e
        finally:
            conn.close()

    def credit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        description: str,
        provider_ref: Optional[str] = None,
    ) -> Transaction:
        """Atomically add ``amount`` and append a top-up or refund row.

        Raises:
            LedgerStoreError: On any storage failure
        """
        if kind is TransactionKind.USAGE:
            raise ValueError("credit() cannot record usage transactions")

        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                now = _now()
                self._ensure_account(conn, account_id, now)
                conn.execute(
                    "UPDATE credit_account SET balance = balance + ?, updated_at = ? "
                    "WHERE account_id = ?",
                    (amount, now, account_id),
                )
                return self._append(
                    conn, account_id, kind, amount, description, provider_ref, now,
                )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to credit account {account_id}: {e}") from e
        finally:
            conn.close()

    def fetch_transactions(
        self,
        account_id: str,
        filters: Optional[TransactionFilter] = None,
        page: int = 1,
        per_page: int = 20,
        ascending: bool = False,
    ) -> TransactionPage:
        """Get one page of an account's transactions.

        Args:
            account_id: Account to query
            filters: Optional kind and time-range filter
            page: 1-based page number
            per_page: Page size
            ascending: Oldest first when True, newest first otherwise

        Returns:
            TransactionPage with the matching items and the total count
        """
        filters = filters or TransactionFilter()
        page = max(1, page)
        per_page = max(1, per_page)

        conditions = ["account_id = ?"]
        params: List = [account_id]
        if filters.kind is not None:
            conditions.append("kind = ?")
            params.append(filters.kind.value)
        if filters.since is not None:
            conditions.append("created_at >= ?")
            params.append(_as_utc(filters.since))
        if filters.until is not None:
            conditions.append("created_at <= ?")
            params.append(_as_utc(filters.until))
        where = " WHERE " + " AND ".join(conditions)
        order = "ASC" if ascending else "DESC"

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM credit_transaction" + where, params
            ).fetchone()[0]
            cursor = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM credit_transaction{where} "
                f"ORDER BY id {order} LIMIT ? OFFSET ?",
                params + [per_page, (page - 1) * per_page],
            )
            items = [_row_to_transaction(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to read transactions of {account_id}: {e}") from e
        finally:
            conn.close()

        return TransactionPage(items=items, total=total, page=page, per_page=per_page)

    def balance_and_ledger_sum(self, account_id: str) -> Tuple[int, int]:
        """Read the stored balance and the sum of all transaction amounts.

        Both values come from one read transaction, so they describe the
        same point in time.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN")
            row = conn.execute(
                "SELECT balance FROM credit_account WHERE account_id = ?", (account_id,)
            ).fetchone()
            total = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM credit_transaction WHERE account_id = ?",
                (account_id,),
            ).fetchone()[0]
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to reconcile {account_id}: {e}") from e
        finally:
            conn.close()

        return (row[0] if row else 0), total

    def _ensure_account(self, conn: sqlite3.Connection, account_id: str, now: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO credit_account (account_id, balance, created_at, updated_at) "
            "VALUES (?, 0, ?, ?)",
            (account_id, now, now),
        )

    def _append(
        self,
        conn: sqlite3.Connection,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        description: str,
        provider_ref: Optional[str],
        now: str,
    ) -> Transaction:
        balance_after = conn.execute(
            "SELECT balance FROM credit_account WHERE account_id = ?", (account_id,)
        ).fetchone()[0]
        cursor = conn.execute(
            """
            INSERT INTO credit_transaction
            (account_id, kind, amount, balance_after, description, provider_ref, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (account_id, kind.value, amount, balance_after, description, provider_ref, now),
        )
        logger.debug(
            "Ledger %s %+d on %s (balance %d)", kind.value, amount, account_id, balance_after
        )
        return Transaction(
            id=cursor.lastrowid,
            account_id=account_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            description=description,
            provider_ref=provider_ref,
            created_at=datetime.fromisoformat(now),
        )


# Repository instances by database path
_repositories: Dict[str, LedgerRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> LedgerRepository:
    """Get the shared repository instance for a database path.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of LedgerRepository
    """
    if db_path not in _repositories:
        _repositories[db_path] = LedgerRepository(db_path)
    return _repositories[db_path]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the account and transaction tables if they don't exist.

    ``credit_transaction`` is an append-only ledger. No UPDATE or DELETE
    is ever issued against it. Balances carry a ``balance >= 0`` CHECK
    in addition to the conditional UPDATE in
    :meth:`LedgerRepository.debit_if_sufficient`.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        with write_transaction(conn):
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credit_account (
                    account_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credit_transaction (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL REFERENCES credit_account (account_id),
                    kind TEXT NOT NULL CHECK (kind IN ('topup', 'usage', 'refund')),
                    amount INTEGER NOT NULL,
                    balance_after INTEGER NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    provider_ref TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_credit_transaction_account_time
                ON credit_transaction (account_id, created_at)
            """)
    except sqlite3.Error as e:
        raise LedgerStoreError(f"Failed to initialize ledger schema: {e}") from e
    finally:
        conn.close()
