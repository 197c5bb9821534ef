"""
Ledger Store

Append-only credit ledger per tenant. The balance is never stored: it is the
sum of the tenant's transactions, read inside the same locked unit of work as
the insert that depends on it.

A transaction carrying a ``reference_id`` is applied at most once per
(tenant, type). Re-delivery returns ``LedgerOutcome.DUPLICATE_EVENT`` with the
originally recorded row instead of raising.
"""

from dataclasses import dataclass
from typing import List, Optional
import structlog

from persistence.database import Database
from persistence.models import CreditTransaction, new_id
from persistence.repository import LedgerRepository

from .errors import InsufficientCredits
from .types import ADMIN_TRANSACTION_TYPES, LedgerOutcome, TransactionType

logger = structlog.get_logger()


@dataclass
class ApplyResult:
    """Outcome of ``LedgerStore.apply_transaction``."""
    outcome: LedgerOutcome
    transaction: CreditTransaction
    balance: int

    @property
    def applied(self) -> bool:
        return self.outcome is LedgerOutcome.APPLIED

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "transaction": self.transaction.to_dict(),
            "balance": self.balance,
        }


class LedgerStore:
    """
    Tenant credit ledger.

    Usage:
        ledger = LedgerStore(db)
        result = ledger.apply_transaction("t1", 1000, TransactionType.PURCHASE,
                                          "Purchased 1000 credits", reference_id="pi_123")
        ledger.get_balance("t1")  # 1000
    """

    def __init__(self, db: Database):
        self.db = db
        self.transactions = LedgerRepository(db)

    def apply_transaction(
        self,
        tenant_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: Optional[str] = None,
        allow_negative: bool = False,
    ) -> ApplyResult:
        """
        Atomically append one transaction.

        Raises:
            ValueError: amount is zero
            InsufficientCredits: a debit would overdraw and ``allow_negative`` is False
        """
        if amount == 0:
            raise ValueError("Transaction amount must be non-zero")

        with self.db.transaction(lock_key=tenant_id):
            if reference_id is not None:
                prior = self.transactions.find_by_reference(tenant_id, type, reference_id)
                if prior is not None:
                    balance = self.transactions.balance(tenant_id)
                    logger.info(
                        "ledger_duplicate_suppressed",
                        tenant_id=tenant_id,
                        type=type.value,
                        reference_id=reference_id,
                        transaction_id=prior.id,
                    )
                    return ApplyResult(LedgerOutcome.DUPLICATE_EVENT, prior, balance)

            balance = self.transactions.balance(tenant_id)
            if amount < 0 and not allow_negative and balance + amount < 0:
                raise InsufficientCredits(tenant_id, balance, -amount)

            txn = CreditTransaction(
                id=new_id("txn"),
                tenant_id=tenant_id,
                amount=amount,
                type=type,
                description=description,
                reference_id=reference_id,
            )
            self.transactions.insert(txn)
            new_balance = balance + amount

        logger.info(
            "ledger_transaction_applied",
            tenant_id=tenant_id,
            type=type.value,
            amount=amount,
            reference_id=reference_id,
            balance=new_balance,
        )
        return ApplyResult(LedgerOutcome.APPLIED, txn, new_balance)

    def get_balance(self, tenant_id: str) -> int:
        return self.transactions.balance(tenant_id)

    def list_transactions(self, tenant_id: str, limit: int = 50) -> List[CreditTransaction]:
        return self.transactions.list_for_tenant(tenant_id, limit)

    def admin_adjust(
        self,
        tenant_id: str,
        amount: int,
        type: TransactionType,
        reason: str,
        override: bool = False,
    ) -> ApplyResult:
        """
        Operator credit or debit.

        Debits that would take the balance negative are refused unless
        ``override`` is set.
        """
        if type not in ADMIN_TRANSACTION_TYPES:
            raise ValueError(f"Transaction type {type.value} is not an administrative type")
        if amount == 0:
            raise ValueError("Transaction amount must be non-zero")

        with self.db.transaction(lock_key=tenant_id):
            balance = self.transactions.balance(tenant_id)
            if amount < 0 and not override and balance + amount < 0:
                raise InsufficientCredits(
                    tenant_id,
                    balance,
                    -amount,
                    message=f"Cannot deduct {-amount} credits. Current balance: {balance}",
                )
            result = self.apply_transaction(
                tenant_id,
                amount,
                type,
                f"[ADMIN] {reason}",
                reference_id=new_id("admin"),
                allow_negative=True,
            )

        logger.warning(
            "ledger_admin_adjustment",
            tenant_id=tenant_id,
            type=type.value,
            amount=amount,
            override=override,
            balance=result.balance,
        )
        return result
