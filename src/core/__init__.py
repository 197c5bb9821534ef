"""
CREDIT RAIL - Core Module

Prepaid credit ledger, usage authorization and the shared error taxonomy.
The ledger and authorizer live in ``core.ledger`` and ``core.authorizer``.
"""

from .config import Settings
from .errors import (
    CreditRailError,
    InsufficientCredits,
    NotFoundError,
    PaymentProviderError,
    ReconciliationInconsistency,
    RecordValidationError,
    SchedulerPartialFailure,
    WebhookSignatureError,
)
from .types import LedgerOutcome, ServiceType, TransactionType

__all__ = [
    "Settings",
    "CreditRailError",
    "InsufficientCredits",
    "NotFoundError",
    "PaymentProviderError",
    "ReconciliationInconsistency",
    "RecordValidationError",
    "SchedulerPartialFailure",
    "WebhookSignatureError",
    "LedgerOutcome",
    "ServiceType",
    "TransactionType",
]
