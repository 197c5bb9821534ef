"""
Data Models for Persistence Layer

One dataclass per persisted entity. Rows coming back from either driver are
validated in ``from_row`` so services never handle loosely-shaped dicts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar
import json
import uuid

from core.errors import RecordValidationError
from core.types import (
    NotificationStatus,
    PaymentStatus,
    ReconciliationKind,
    ReconciliationStatus,
    SubscriptionStatus,
    TransactionType,
)

E = TypeVar("E", bound=Enum)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so TEXT columns compare chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as e:
            raise RecordValidationError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _required(row: Dict[str, Any], key: str) -> Any:
    if row.get(key) is None:
        raise RecordValidationError(f"Missing required column: {key}")
    return row[key]


def _enum(enum_cls: Type[E], value: Any) -> E:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise RecordValidationError(f"Invalid {enum_cls.__name__}: {value!r}") from e


def _json(value: Any) -> Dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


@dataclass
class CreditTransaction:
    """Immutable ledger row."""
    id: str
    tenant_id: str
    amount: int
    type: TransactionType
    description: str
    reference_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "amount": self.amount,
            "type": self.type.value,
            "description": self.description,
            "reference_id": self.reference_id,
            "created_at": to_iso(self.created_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.amount,
            self.type.value,
            self.description,
            self.reference_id,
            to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditTransaction":
        amount = _required(row, "amount")
        if isinstance(amount, float) and not amount.is_integer():
            raise RecordValidationError(f"Fractional credit amount: {amount}")
        return cls(
            id=_required(row, "id"),
            tenant_id=_required(row, "tenant_id"),
            amount=int(amount),
            type=_enum(TransactionType, _required(row, "type")),
            description=row.get("description") or "",
            reference_id=row.get("reference_id"),
            created_at=parse_timestamp(_required(row, "created_at")),
        )


@dataclass
class CreditPackage:
    """Purchasable bundle of credits."""
    id: str
    name: str
    credits: int
    price_cents: int
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditPackage":
        return cls(
            id=_required(row, "id"),
            name=_required(row, "name"),
            credits=int(_required(row, "credits")),
            price_cents=int(_required(row, "price_cents")),
            is_active=bool(row.get("is_active", 1)),
        )


@dataclass
class ProcessorCustomer:
    tenant_id: str
    customer_id: str
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProcessorCustomer":
        return cls(
            tenant_id=_required(row, "tenant_id"),
            customer_id=_required(row, "customer_id"),
            created_at=parse_timestamp(_required(row, "created_at")),
        )


@dataclass
class PaymentMethod:
    """Saved card. ``external_id`` is the processor token."""
    id: str
    tenant_id: str
    external_id: str
    customer_id: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "external_id": self.external_id,
            "card_brand": self.card_brand,
            "card_last4": self.card_last4,
            "card_exp_month": self.card_exp_month,
            "card_exp_year": self.card_exp_year,
            "is_default": self.is_default,
            "is_active": self.is_active,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.external_id,
            self.customer_id,
            self.card_brand,
            self.card_last4,
            self.card_exp_month,
            self.card_exp_year,
            self.is_default,
            self.is_active,
            to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentMethod":
        return cls(
            id=_required(row, "id"),
            tenant_id=_required(row, "tenant_id"),
            external_id=_required(row, "external_id"),
            customer_id=row.get("customer_id"),
            card_brand=row.get("card_brand"),
            card_last4=row.get("card_last4"),
            card_exp_month=row.get("card_exp_month"),
            card_exp_year=row.get("card_exp_year"),
            is_default=bool(row.get("is_default", 0)),
            is_active=bool(row.get("is_active", 1)),
            created_at=parse_timestamp(_required(row, "created_at")),
        )


@dataclass
class AutoRechargeSettings:
    """Tenant-configured automatic top-up."""
    tenant_id: str
    enabled: bool = False
    minimum_balance: int = 100
    recharge_amount: int = 1000
    payment_method_id: Optional[str] = None
    last_triggered_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "enabled": self.enabled,
            "minimum_balance": self.minimum_balance,
            "recharge_amount": self.recharge_amount,
            "payment_method_id": self.payment_method_id,
            "last_triggered_at": to_iso(self.last_triggered_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AutoRechargeSettings":
        return cls(
            tenant_id=_required(row, "tenant_id"),
            enabled=bool(row.get("is_enabled", 0)),
            minimum_balance=int(row.get("minimum_balance", 100)),
            recharge_amount=int(row.get("recharge_amount", 1000)),
            payment_method_id=row.get("payment_method_id"),
            last_triggered_at=parse_timestamp(row.get("last_triggered_at")),
            updated_at=parse_timestamp(_required(row, "updated_at")),
        )


@dataclass
class NotificationPreferences:
    """Per-tenant low-balance alerting."""
    tenant_id: str
    low_balance_threshold: int = 100
    email_enabled: bool = True
    notification_email: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "low_balance_threshold": self.low_balance_threshold,
            "email_enabled": self.email_enabled,
            "notification_email": self.notification_email,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "NotificationPreferences":
        return cls(
            tenant_id=_required(row, "tenant_id"),
            low_balance_threshold=int(row.get("low_balance_threshold", 100)),
            email_enabled=bool(row.get("email_notifications", 1)),
            notification_email=row.get("notification_email"),
            updated_at=parse_timestamp(_required(row, "updated_at")),
        )


@dataclass
class PaymentRecord:
    """
    One charge attempt.

    Created ``pending`` before the processor is called (keyed by our own
    ``charge_key``) and moved out of pending once; a failed record may still
    become succeeded when the processor later reports the money taken.
    """
    id: str
    charge_key: str
    tenant_id: str
    amount_cents: int
    subtotal_cents: int
    credits_purchased: int
    status: PaymentStatus = PaymentStatus.PENDING
    external_payment_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    tax_cents: int = 0
    tax_rate: float = 0.0
    tax_name: Optional[str] = None
    is_auto_recharge: bool = False
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "charge_key": self.charge_key,
            "external_payment_id": self.external_payment_id,
            "tenant_id": self.tenant_id,
            "amount_cents": self.amount_cents,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "tax_rate": self.tax_rate,
            "tax_name": self.tax_name,
            "credits_purchased": self.credits_purchased,
            "status": self.status.value,
            "is_auto_recharge": self.is_auto_recharge,
            "description": self.description,
            "failure_reason": self.failure_reason,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.charge_key,
            self.external_payment_id,
            self.tenant_id,
            self.customer_id,
            self.payment_method_id,
            self.amount_cents,
            self.subtotal_cents,
            self.tax_cents,
            self.tax_rate,
            self.tax_name,
            self.credits_purchased,
            self.status.value,
            self.is_auto_recharge,
            self.description,
            self.failure_reason,
            to_iso(self.created_at),
            to_iso(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            id=_required(row, "id"),
            charge_key=_required(row, "charge_key"),
            external_payment_id=row.get("external_payment_id"),
            tenant_id=_required(row, "tenant_id"),
            customer_id=row.get("customer_id"),
            payment_method_id=row.get("payment_method_id"),
            amount_cents=int(_required(row, "amount_cents")),
            subtotal_cents=int(_required(row, "subtotal_cents")),
            tax_cents=int(row.get("tax_cents") or 0),
            tax_rate=float(row.get("tax_rate") or 0.0),
            tax_name=row.get("tax_name"),
            credits_purchased=int(_required(row, "credits_purchased")),
            status=_enum(PaymentStatus, _required(row, "status")),
            is_auto_recharge=bool(row.get("is_auto_recharge", 0)),
            description=row.get("description"),
            failure_reason=row.get("failure_reason"),
            created_at=parse_timestamp(_required(row, "created_at")),
            updated_at=parse_timestamp(_required(row, "updated_at")),
        )


@dataclass
class MeteredSubscription:
    """Recurring, periodically billed resource (e.g. a rented phone number)."""
    id: str
    tenant_id: str
    resource: str
    monthly_cost: int
    next_billing_date: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "resource": self.resource,
            "monthly_cost": self.monthly_cost,
            "next_billing_date": to_iso(self.next_billing_date),
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.resource,
            self.monthly_cost,
            to_iso(self.next_billing_date),
            self.status.value,
            to_iso(self.created_at),
            to_iso(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MeteredSubscription":
        return cls(
            id=_required(row, "id"),
            tenant_id=_required(row, "tenant_id"),
            resource=_required(row, "resource"),
            monthly_cost=int(_required(row, "monthly_cost")),
            next_billing_date=parse_timestamp(_required(row, "next_billing_date")),
            status=_enum(SubscriptionStatus, _required(row, "status")),
            created_at=parse_timestamp(_required(row, "created_at")),
            updated_at=parse_timestamp(_required(row, "updated_at")),
        )


@dataclass
class ReconciliationItem:
    """Manual review entry."""
    id: str
    kind: ReconciliationKind
    tenant_id: Optional[str]
    external_id: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    status: ReconciliationStatus = ReconciliationStatus.OPEN
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "tenant_id": self.tenant_id,
            "external_id": self.external_id,
            "details": self.details,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "resolved_at": to_iso(self.resolved_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReconciliationItem":
        return cls(
            id=_required(row, "id"),
            kind=_enum(ReconciliationKind, _required(row, "kind")),
            tenant_id=row.get("tenant_id"),
            external_id=row.get("external_id"),
            details=_json(row.get("details")),
            status=_enum(ReconciliationStatus, _required(row, "status")),
            created_at=parse_timestamp(_required(row, "created_at")),
            resolved_at=parse_timestamp(row.get("resolved_at")),
        )


@dataclass
class Notification:
    """Outbox row."""
    id: str
    kind: str
    tenant_id: str
    payload: Dict[str, Any]
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    sent_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "tenant_id": self.tenant_id,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "sent_at": to_iso(self.sent_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Notification":
        return cls(
            id=_required(row, "id"),
            kind=_required(row, "kind"),
            tenant_id=_required(row, "tenant_id"),
            payload=_json(_required(row, "payload")),
            status=_enum(NotificationStatus, _required(row, "status")),
            attempts=int(row.get("attempts") or 0),
            last_error=row.get("last_error"),
            created_at=parse_timestamp(_required(row, "created_at")),
            sent_at=parse_timestamp(row.get("sent_at")),
        )
