"""
Credit ledger.

The only API through which an account balance changes. Usage credits leave
an account exclusively through :meth:`CreditLedger.reserve`, which checks
and deducts in one atomic store operation.
"""

import logging
from typing import Optional, Tuple

from campaign_credits.storage.db import LedgerStoreError
from campaign_credits.storage.models import (
    Reservation,
    TransactionFilter,
    TransactionKind,
    TransactionPage,
)
from campaign_credits.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

__all__ = ["CreditLedger", "InsufficientCredits", "LedgerStoreError"]


class InsufficientCredits(Exception):
    """Raised by reserve when the balance cannot cover the amount.

    Nothing was deducted and nothing was logged, so there is nothing to
    refund. Not retryable: the operator has to top up first.
    """
    def __init__(self, account_id: str, required: int, balance: int):
        super().__init__(
            f"Insufficient credits. This operation requires {required} credits "
            f"but your balance is {balance}."
        )
        self.account_id = account_id
        self.required = required
        self.balance = balance


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Credit amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise ValueError("Credit amount must be greater than zero")


class CreditLedger:
    """Invariant-enforcing API over the ledger store.

    Guarantees, for every account and at every point between calls:

    * ``balance >= 0``
    * ``balance == sum(t.amount for t in transactions)``
    """

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def get_balance(self, account_id: str) -> int:
        """Current balance in credits. Side-effect free."""
        return self.repository.get_balance(account_id)

    def has_sufficient_credits(self, account_id: str, amount: int) -> bool:
        """Advisory check for UI estimates.

        Never use this to gate a provider call: another request can spend
        the credits between this read and the call. Use reserve instead.
        """
        return self.get_balance(account_id) >= amount

    def reserve(
        self,
        account_id: str,
        amount: int,
        description: str,
        provider_ref: Optional[str] = None,
    ) -> Reservation:
        """Check and deduct ``amount`` atomically.

        Args:
            account_id: Account to charge
            amount: Credits to deduct (positive integer)
            description: Human-readable usage description
            provider_ref: Provider/model/task the credits pay for

        Returns:
            Reservation holding the usage transaction and new balance

        Raises:
            InsufficientCredits: If the balance is lower than ``amount``
            LedgerStoreError: If the store failed (nothing was deducted)
            ValueError: If ``amount`` is not a positive integer
        """
        _validate_amount(amount)
        transaction = self.repository.debit_if_sufficient(
            account_id, amount, description, provider_ref
        )
        if transaction is None:
            balance = self.repository.get_balance(account_id)
            logger.info(
                "Reserve of %d credits refused for %s (balance %d)",
                amount, account_id, balance,
            )
            raise InsufficientCredits(account_id, amount, balance)

        return Reservation(
            account_id=account_id,
            amount=amount,
            transaction_id=transaction.id,
            balance_after=transaction.balance_after,
        )

    def commit(self, reservation: Reservation) -> None:
        """Finalize a reservation.

        The reservation already is the deduction, so there is nothing to
        write. Kept so callers can mark the point where spent credits
        become final.
        """
        logger.debug(
            "Committed %d credits on %s (transaction %d)",
            reservation.amount, reservation.account_id, reservation.transaction_id,
        )

    def refund(
        self,
        account_id: str,
        amount: int,
        description: str,
        provider_ref: Optional[str] = None,
    ) -> int:
        """Give back credits taken by an earlier reserve.

        ``amount`` must be exactly the reserved amount. Refunds are never
        refused.

        Returns:
            The new balance

        Raises:
            LedgerStoreError: If the store failed (nothing was credited)
        """
        _validate_amount(amount)
        transaction = self.repository.credit(
            account_id, amount, TransactionKind.REFUND, description, provider_ref
        )
        return transaction.balance_after

    def top_up(
        self,
        account_id: str,
        amount: int,
        description: str = "",
        payment_ref: Optional[str] = None,
    ) -> int:
        """Add purchased credits. Called once per confirmed payment.

        Returns:
            The new balance
        """
        _validate_amount(amount)
        transaction = self.repository.credit(
            account_id, amount, TransactionKind.TOP_UP, description, payment_ref
        )
        logger.info("Topped up %d credits on %s", amount, account_id)
        return transaction.balance_after

    def history(
        self,
        account_id: str,
        filters: Optional[TransactionFilter] = None,
        page: int = 1,
        per_page: int = 20,
        ascending: bool = False,
    ) -> TransactionPage:
        """Paged, read-only view of an account's transactions."""
        return self.repository.fetch_transactions(
            account_id, filters=filters, page=page, per_page=per_page, ascending=ascending
        )

    def reconcile(self, account_id: str) -> Tuple[int, int]:
        """Return ``(balance, sum of transaction amounts)``.

        The two values are equal for a healthy account. A mismatch is
        logged as a reconciliation alert.
        """
        balance, ledger_sum = self.repository.balance_and_ledger_sum(account_id)
        if balance != ledger_sum:
            logger.critical(
                "Reconciliation alert: account %s balance %d != ledger sum %d",
                account_id, balance, ledger_sum,
            )
        return balance, ledger_sum
