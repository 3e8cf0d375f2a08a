"""
Data models for storage layer.

Defines the credit account, the immutable transaction log entry and the
paging structures used for audit queries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class TransactionKind(Enum):
    """Kinds of balance mutation recorded in the transaction log."""
    TOP_UP = "topup"
    USAGE = "usage"
    REFUND = "refund"


@dataclass(frozen=True)
class Account:
    """Current credit balance of one account."""
    account_id: str
    balance: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Transaction:
    """Immutable record of one balance mutation.

    Append-only: once written, a transaction is never updated or deleted.
    ``amount`` is signed, negative for usage and positive for top-ups and
    refunds, so summing all amounts of an account yields its balance.
    """
    id: int
    account_id: str
    kind: TransactionKind
    amount: int
    balance_after: int
    description: str
    provider_ref: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Reservation:
    """Credits taken from an account by a successful reserve call."""
    account_id: str
    amount: int
    transaction_id: int
    balance_after: int


@dataclass(frozen=True)
class TransactionFilter:
    """Optional criteria for transaction history queries."""
    kind: Optional[TransactionKind] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


@dataclass
class TransactionPage:
    """One page of transaction history."""
    items: List[Transaction] = field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 20

    @property
    def total_pages(self) -> int:
        if self.per_page <= 0:
            return 1
        return (self.total + self.per_page - 1) // self.per_page
