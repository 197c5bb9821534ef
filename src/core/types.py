"""
Domain enumerations shared by the ledger, billing and persistence layers.
"""

from enum import Enum


class TransactionType(Enum):
    """Kinds of credit-affecting ledger rows."""
    PURCHASE = "purchase"
    CALL_CHARGE = "call_charge"
    SMS_CHARGE = "sms_charge"
    PHONE_NUMBER_CHARGE = "phone_number_charge"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    BONUS = "bonus"
    PENALTY = "penalty"


# Types an operator may post by hand
ADMIN_TRANSACTION_TYPES = frozenset({
    TransactionType.ADJUSTMENT,
    TransactionType.BONUS,
    TransactionType.REFUND,
    TransactionType.PENALTY,
})


class LedgerOutcome(Enum):
    """Result of applying a transaction."""
    APPLIED = "APPLIED"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"  # reference_id already recorded, no-op


class ServiceType(Enum):
    """Metered services and the ledger type they settle into."""
    CALL = "call"
    SMS = "sms"

    @property
    def transaction_type(self) -> TransactionType:
        if self is ServiceType.CALL:
            return TransactionType.CALL_CHARGE
        return TransactionType.SMS_CHARGE


class PaymentStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ReconciliationKind(Enum):
    """Why an item landed in the manual review queue."""
    CREDIT_APPLY_FAILED = "credit_apply_failed"  # charge succeeded, ledger apply did not
    CHARGE_STATUS_UNKNOWN = "charge_status_unknown"  # processor call timed out
    AMOUNT_MISMATCH = "amount_mismatch"


class ReconciliationStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"  # gave up after max attempts


class AlertLevel(Enum):
    """Balance health as reported by the balance check."""
    CRITICAL = "critical"  # below the tenant's threshold
    WARNING = "warning"  # cannot cover the next round of phone number charges
    LOW = "low"  # under twice the threshold
    GOOD = "good"
