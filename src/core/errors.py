"""
Error taxonomy for the credit ledger.

Synchronous validation/authorization errors propagate straight to the caller.
Webhook-path and cron-path errors are logged with their correlation id and
either queued for manual reconciliation or aggregated into a batch report.
A replayed event is not an error: see ``LedgerOutcome.DUPLICATE_EVENT``.
"""

from typing import Any, Optional


class CreditRailError(Exception):
    """Base class for all ledger errors."""
    pass


class InsufficientCredits(CreditRailError):
    """A debit was rejected before any mutation."""

    def __init__(self, tenant_id: str, balance: int, required: int, message: Optional[str] = None):
        self.tenant_id = tenant_id
        self.balance = balance
        self.required = required
        super().__init__(
            message or f"Insufficient credits: required {required}, available {balance}"
        )

    def to_dict(self) -> dict:
        return {
            "error": "Insufficient credits",
            "detail": str(self),
            "required": self.required,
            "available": self.balance,
        }


class PaymentProviderError(CreditRailError):
    """Declined card, processor timeout, invalid payment method."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: bool = False,
        external_id: Optional[str] = None,
    ):
        self.code = code
        self.retryable = retryable
        self.external_id = external_id  # processor intent id, when one was created
        super().__init__(message)

    @property
    def is_decline(self) -> bool:
        return self.code == "card_declined"


class ReconciliationInconsistency(CreditRailError):
    """
    An external charge succeeded but the ledger apply failed.

    Always queued for manual review. Never retried blindly: the first apply
    may have committed after the transient fault was reported.
    """

    def __init__(self, external_id: str, tenant_id: Optional[str], reason: str):
        self.external_id = external_id
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Reconciliation required for {external_id}: {reason}")


class SchedulerPartialFailure(CreditRailError):
    """One or more items of a batch failed; the rest were processed."""

    def __init__(self, report: Any):
        self.report = report
        failures = getattr(report, "failures", [])
        super().__init__(f"{len(failures)} item(s) failed during batch run")


class WebhookSignatureError(CreditRailError):
    """Webhook payload did not verify against the shared secret."""
    pass


class NotFoundError(CreditRailError):
    """Referenced entity does not exist for this tenant."""
    pass


class RecordValidationError(CreditRailError):
    """A persisted row failed validation at the data-layer boundary."""
    pass
