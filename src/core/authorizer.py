"""
Debit Authorizer

Gatekeeper between metered services and the ledger:

1. ``pre_authorize`` before a call or SMS starts (read-only, may refuse)
2. ``post_charge`` once the action has completed (always settles, may overdraw)

Settlement of an already-started action is never refused. The balance check
only happens up front.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional
import math
import structlog

from persistence.repository import NotificationPreferencesRepository

from .config import Settings
from .errors import InsufficientCredits
from .ledger import ApplyResult, LedgerStore
from .types import ServiceType

logger = structlog.get_logger()

# (tenant_id, balance_before, balance_after)
BalanceObserver = Callable[[str, int, int], Any]


@dataclass
class PricingTable:
    """Credits per billable unit."""
    call_credits_per_minute: int = 15
    sms_credits_per_message: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingTable":
        return cls(
            call_credits_per_minute=settings.call_credits_per_minute,
            sms_credits_per_message=settings.sms_credits_per_message,
        )

    def unit_cost(self, service: ServiceType) -> int:
        if service is ServiceType.CALL:
            return self.call_credits_per_minute
        return self.sms_credits_per_message

    def billable_units(self, service: ServiceType, quantity: float) -> int:
        """
        Round usage up to whole units, minimum one.

        Calls are metered in seconds and billed per started minute; SMS are
        billed per segment.
        """
        if quantity < 0:
            raise ValueError("Usage quantity cannot be negative")
        if service is ServiceType.CALL:
            return max(1, math.ceil(quantity / 60))
        return max(1, math.ceil(quantity))

    def cost(self, service: ServiceType, quantity: float) -> int:
        return self.billable_units(service, quantity) * self.unit_cost(service)


@dataclass
class Authorization:
    """A granted pre-authorization. Nothing is reserved."""
    tenant_id: str
    service: ServiceType
    required: int
    balance: int

    def to_dict(self) -> dict:
        return {
            "authorized": True,
            "tenant_id": self.tenant_id,
            "service": self.service.value,
            "required": self.required,
            "balance": self.balance,
        }


class DebitAuthorizer:
    """
    Usage authorization and settlement.

    ``observers`` are called with ``(tenant_id, balance_before, balance_after)``
    after every applied settlement; the auto-recharge controller registers
    itself here. ``outbox`` receives ``low_balance`` notifications when a
    settlement crosses the tenant's own threshold, falling back to
    ``low_balance_threshold`` for tenants without stored preferences.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        pricing: Optional[PricingTable] = None,
        low_balance_threshold: int = 100,
        outbox: Optional[Any] = None,
        preferences: Optional[NotificationPreferencesRepository] = None,
    ):
        self.ledger = ledger
        self.pricing = pricing or PricingTable()
        self.low_balance_threshold = low_balance_threshold
        self.outbox = outbox
        self.preferences = preferences or NotificationPreferencesRepository(ledger.db)
        self._observers: List[BalanceObserver] = []

    def add_observer(self, observer: BalanceObserver) -> None:
        self._observers.append(observer)

    def pre_authorize(
        self,
        tenant_id: str,
        service: ServiceType,
        estimated_cost: Optional[int] = None,
    ) -> Authorization:
        """
        Check that the tenant can afford to start an action.

        Raises:
            InsufficientCredits: balance below max(unit cost, estimated cost)
        """
        required = max(self.pricing.unit_cost(service), estimated_cost or 0)
        balance = self.ledger.get_balance(tenant_id)
        if balance < required:
            logger.info(
                "usage_authorization_denied",
                tenant_id=tenant_id,
                service=service.value,
                required=required,
                balance=balance,
            )
            raise InsufficientCredits(tenant_id, balance, required)
        return Authorization(tenant_id, service, required, balance)

    def post_charge(
        self,
        tenant_id: str,
        service: ServiceType,
        quantity: float,
        reference_id: str,
    ) -> ApplyResult:
        """Settle a completed action. Replays of ``reference_id`` are no-ops."""
        units = self.pricing.billable_units(service, quantity)
        cost = units * self.pricing.unit_cost(service)
        if service is ServiceType.CALL:
            description = f"Call charge: {units} min"
        else:
            description = f"SMS charge: {units} segment{'s' if units != 1 else ''}"

        result = self.ledger.apply_transaction(
            tenant_id,
            -cost,
            service.transaction_type,
            description,
            reference_id=reference_id,
            allow_negative=True,
        )
        if result.applied:
            if result.balance < 0:
                logger.warning(
                    "usage_settled_into_overdraft",
                    tenant_id=tenant_id,
                    reference_id=reference_id,
                    balance=result.balance,
                )
            self._after_settlement(tenant_id, result.balance + cost, result.balance)
        return result

    def settle_call(
        self,
        tenant_id: str,
        call_id: str,
        duration_seconds: Optional[float] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> ApplyResult:
        if duration_seconds is None:
            if started_at is None or ended_at is None:
                raise ValueError("Either duration_seconds or started_at/ended_at is required")
            duration_seconds = max(0.0, (ended_at - started_at).total_seconds())
        return self.post_charge(tenant_id, ServiceType.CALL, duration_seconds, call_id)

    def settle_sms(self, tenant_id: str, message_id: str, segments: int = 1) -> ApplyResult:
        return self.post_charge(tenant_id, ServiceType.SMS, segments, message_id)

    def _after_settlement(self, tenant_id: str, before: int, after: int) -> None:
        if self.outbox is not None:
            prefs = self.preferences.get_or_default(tenant_id, self.low_balance_threshold)
            threshold = prefs.low_balance_threshold
            if prefs.email_enabled and before >= threshold > after:
                self.outbox.enqueue(
                    "low_balance",
                    tenant_id,
                    {
                        "tenant_id": tenant_id,
                        "balance": after,
                        "threshold": threshold,
                        "email": prefs.notification_email,
                    },
                )

        for observer in self._observers:
            try:
                observer(tenant_id, before, after)
            except Exception:
                logger.exception("balance_observer_failed", tenant_id=tenant_id, balance=after)
