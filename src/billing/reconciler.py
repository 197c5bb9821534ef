"""
Payment Reconciler

Turns payment-processor outcomes into ledger credits. Events may arrive
duplicated and in any order; correctness rests on two guards only:

- the ledger credit is keyed by the processor's payment intent id, so every
  delivery path for one payment (intent webhook, checkout webhook, the
  synchronous confirm response) credits at most once
- a PaymentRecord leaves ``pending`` once; only failed -> succeeded follows

Both user checkout and auto-recharge start charges through
``initiate_purchase``.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from core.errors import (
    NotFoundError,
    PaymentProviderError,
    ReconciliationInconsistency,
)
from core.ledger import ApplyResult, LedgerStore
from core.types import (
    PaymentStatus,
    ReconciliationKind,
    ReconciliationStatus,
    TransactionType,
)
from persistence.database import Database
from persistence.models import PaymentMethod, PaymentRecord, ReconciliationItem, new_id
from persistence.repository import (
    AutoRechargeRepository,
    CreditPackageRepository,
    PaymentMethodRepository,
    PaymentRecordRepository,
    ProcessorCustomerRepository,
    ReconciliationRepository,
)

from .stripe_integration import PaymentIntentResult, PaymentProcessor
from .tax import TaxCalculator

logger = structlog.get_logger()


@dataclass
class PurchaseResult:
    """Outcome of ``initiate_purchase``."""
    record: PaymentRecord
    intent_status: str
    client_secret: Optional[str] = None
    ledger: Optional[ApplyResult] = None

    @property
    def credited(self) -> bool:
        return self.ledger is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment": self.record.to_dict(),
            "intent_status": self.intent_status,
            "client_secret": self.client_secret,
            "credited": self.credited,
            "balance": self.ledger.balance if self.ledger else None,
        }


def _metadata_int(metadata: Dict[str, str], key: str) -> Optional[int]:
    value = metadata.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaymentReconciler:
    """
    Usage:
        reconciler = PaymentReconciler(db, ledger, StripeIntegration(...), TaxCalculator())
        reconciler.initiate_purchase("t1", package_id="pkg_1000")
        reconciler.handle_webhook(payload, signature)
    """

    def __init__(
        self,
        db: Database,
        ledger: LedgerStore,
        processor: PaymentProcessor,
        tax: Optional[TaxCalculator] = None,
        currency: str = "usd",
    ):
        self.db = db
        self.ledger = ledger
        self.processor = processor
        self.tax = tax or TaxCalculator()
        self.currency = currency

        self.packages = CreditPackageRepository(db)
        self.customers = ProcessorCustomerRepository(db)
        self.methods = PaymentMethodRepository(db)
        self.records = PaymentRecordRepository(db)
        self.reconciliation = ReconciliationRepository(db)
        self.auto_recharge = AutoRechargeRepository(db)

    # =========================================================================
    # Purchases
    # =========================================================================

    def ensure_customer(self, tenant_id: str) -> str:
        """Processor customer id for the tenant, created on first use."""
        existing = self.customers.get(tenant_id)
        if existing:
            return existing.customer_id
        customer_id = self.processor.create_customer(tenant_id)
        return self.customers.create(tenant_id, customer_id).customer_id

    def initiate_purchase(
        self,
        tenant_id: str,
        package_id: Optional[str] = None,
        credits: Optional[int] = None,
        subtotal_cents: Optional[int] = None,
        payment_method_id: Optional[str] = None,
        off_session: bool = False,
        is_auto_recharge: bool = False,
        description: Optional[str] = None,
    ) -> PurchaseResult:
        """
        Start a credit purchase.

        With ``off_session`` the intent is confirmed immediately against the
        saved ``payment_method_id``; otherwise the caller completes it client
        side with the returned ``client_secret`` and the credit arrives by
        webhook.

        Raises:
            NotFoundError: unknown package or payment method
            PaymentProviderError: declined, or charge status unknown after a timeout
        """
        if package_id is not None:
            package = self.packages.get(package_id)
            if package is None or not package.is_active:
                raise NotFoundError(f"Credit package {package_id} not found")
            credits = package.credits
            subtotal_cents = package.price_cents
            prefix = "Auto-recharge" if is_auto_recharge else "Credit purchase"
            description = description or f"{prefix}: {package.name} - {package.credits} credits"
        if not credits or credits <= 0 or subtotal_cents is None or subtotal_cents <= 0:
            raise ValueError("A package or positive credits and subtotal are required")
        description = description or f"Credit purchase: {credits} credits"

        method: Optional[PaymentMethod] = None
        if payment_method_id is not None:
            method = self.methods.get(payment_method_id)
            if method is None or method.tenant_id != tenant_id or not method.is_active:
                raise NotFoundError(f"Payment method {payment_method_id} not found")
        elif off_session:
            raise ValueError("Off-session purchases require a saved payment method")

        breakdown = self.tax.calculate(subtotal_cents)
        customer_id = self.ensure_customer(tenant_id)

        record = self.records.insert(PaymentRecord(
            id=new_id("pay"),
            charge_key=new_id("chg"),
            tenant_id=tenant_id,
            customer_id=customer_id,
            payment_method_id=method.id if method else None,
            amount_cents=breakdown.total_cents,
            subtotal_cents=breakdown.subtotal_cents,
            tax_cents=breakdown.tax_cents,
            tax_rate=breakdown.rate,
            tax_name=breakdown.name or None,
            credits_purchased=credits,
            is_auto_recharge=is_auto_recharge,
            description=description,
        ))

        metadata = {
            "tenant_id": tenant_id,
            "credits": str(credits),
            "description": description,
            "charge_key": record.charge_key,
            "is_auto_recharge": "true" if is_auto_recharge else "false",
            **breakdown.to_metadata(),
        }

        try:
            intent = self.processor.create_payment_intent(
                amount_cents=breakdown.total_cents,
                currency=self.currency,
                customer_id=customer_id,
                metadata=metadata,
                idempotency_key=record.charge_key,
                payment_method_id=method.external_id if method else None,
                off_session=off_session,
                confirm=off_session,
            )
        except PaymentProviderError as e:
            if e.retryable:
                self.reconciliation.enqueue(
                    ReconciliationKind.CHARGE_STATUS_UNKNOWN,
                    tenant_id,
                    record.charge_key,
                    {"payment_record_id": record.id, "amount_cents": record.amount_cents, "error": str(e)},
                )
                raise
            if e.external_id:
                self.records.bind_external_id(record.id, e.external_id)
            self.records.transition(record.id, PaymentStatus.FAILED, failure_reason=str(e))
            logger.warning(
                "purchase_failed",
                tenant_id=tenant_id,
                charge_key=record.charge_key,
                code=e.code,
                is_auto_recharge=is_auto_recharge,
            )
            raise

        self.records.bind_external_id(record.id, intent.id)
        logger.info(
            "purchase_initiated",
            tenant_id=tenant_id,
            charge_key=record.charge_key,
            external_payment_id=intent.id,
            amount_cents=breakdown.total_cents,
            credits=credits,
            status=intent.status,
            is_auto_recharge=is_auto_recharge,
        )

        applied = None
        if intent.succeeded:
            applied = self.on_payment_succeeded(intent)
        elif off_session and intent.status in ("requires_payment_method", "canceled"):
            reason = intent.failure_message or f"Payment {intent.status}"
            self.records.transition(record.id, PaymentStatus.FAILED, failure_reason=reason)
            raise PaymentProviderError(reason, code="card_declined", external_id=intent.id)

        return PurchaseResult(
            record=self.records.get(record.id),
            intent_status=intent.status,
            client_secret=intent.client_secret,
            ledger=applied,
        )

    # =========================================================================
    # Processor events
    # =========================================================================

    def _find_record(self, intent: PaymentIntentResult) -> Optional[PaymentRecord]:
        record = self.records.get_by_external_id(intent.id)
        if record is None and intent.metadata.get("charge_key"):
            record = self.records.get_by_charge_key(intent.metadata["charge_key"])
            if record is not None and record.external_payment_id is None:
                self.records.bind_external_id(record.id, intent.id)
        return record

    def _record_from_metadata(self, intent: PaymentIntentResult) -> Optional[PaymentRecord]:
        metadata = intent.metadata
        tenant_id = metadata.get("tenant_id")
        credits = _metadata_int(metadata, "credits")
        if not tenant_id or not credits:
            logger.error("payment_intent_missing_metadata", external_payment_id=intent.id)
            return None

        subtotal = _metadata_int(metadata, "subtotal_cents") or intent.amount_cents
        return self.records.insert(PaymentRecord(
            id=new_id("pay"),
            charge_key=metadata.get("charge_key") or f"ext_{intent.id}",
            external_payment_id=intent.id,
            tenant_id=tenant_id,
            customer_id=intent.customer_id,
            amount_cents=intent.amount_cents,
            subtotal_cents=subtotal,
            tax_cents=_metadata_int(metadata, "tax_cents") or 0,
            tax_rate=float(metadata.get("tax_rate") or 0.0),
            tax_name=metadata.get("tax_name") or None,
            credits_purchased=credits,
            is_auto_recharge=metadata.get("is_auto_recharge") == "true",
            description=metadata.get("description"),
        ))

    def on_payment_succeeded(self, intent: PaymentIntentResult) -> Optional[ApplyResult]:
        """
        Credit the ledger for a succeeded payment. Safe to call any number of times.

        Raises:
            ReconciliationInconsistency: the ledger apply failed; queued for review
        """
        record = self._find_record(intent) or self._record_from_metadata(intent)
        if record is None:
            return None

        mismatch = intent.amount_cents and intent.amount_cents != record.amount_cents
        if mismatch and record.status is PaymentStatus.PENDING:
            self.reconciliation.enqueue(
                ReconciliationKind.AMOUNT_MISMATCH,
                record.tenant_id,
                intent.id,
                {"expected_cents": record.amount_cents, "charged_cents": intent.amount_cents},
            )

        description = record.description or f"Credit purchase: {record.credits_purchased} credits"
        try:
            with self.db.transaction(lock_key=record.tenant_id):
                transitioned = self.records.transition(
                    record.id,
                    PaymentStatus.SUCCEEDED,
                    from_statuses=(PaymentStatus.PENDING, PaymentStatus.FAILED),
                )
                result = self.ledger.apply_transaction(
                    record.tenant_id,
                    record.credits_purchased,
                    TransactionType.PURCHASE,
                    description,
                    reference_id=intent.id,
                )
        except Exception as e:
            logger.critical(
                "payment_credit_apply_failed",
                tenant_id=record.tenant_id,
                external_payment_id=intent.id,
                charge_key=record.charge_key,
                error=str(e),
            )
            self.reconciliation.enqueue(
                ReconciliationKind.CREDIT_APPLY_FAILED,
                record.tenant_id,
                intent.id,
                {"payment_record_id": record.id, "credits": record.credits_purchased, "error": str(e)},
            )
            raise ReconciliationInconsistency(intent.id, record.tenant_id, str(e)) from e

        if transitioned and record.status is PaymentStatus.FAILED:
            logger.warning(
                "payment_succeeded_after_failure",
                tenant_id=record.tenant_id,
                external_payment_id=intent.id,
            )

        if intent.payment_method_id:
            try:
                self.save_payment_method(record.tenant_id, intent.payment_method_id)
            except PaymentProviderError as e:
                logger.warning(
                    "payment_method_save_failed",
                    tenant_id=record.tenant_id,
                    payment_method=intent.payment_method_id,
                    error=str(e),
                )

        return result

    def on_payment_failed(self, intent: PaymentIntentResult) -> bool:
        """Mark the pending record failed. A failure after success is ignored."""
        record = self._find_record(intent)
        if record is None:
            logger.warning("payment_failed_unknown_intent", external_payment_id=intent.id)
            return False

        reason = intent.failure_message or intent.failure_code or "payment_failed"
        if self.records.transition(record.id, PaymentStatus.FAILED, failure_reason=reason):
            logger.warning(
                "payment_failed",
                tenant_id=record.tenant_id,
                external_payment_id=intent.id,
                reason=reason,
            )
            return True

        logger.info(
            "payment_failure_ignored",
            tenant_id=record.tenant_id,
            external_payment_id=intent.id,
            status=self.records.get(record.id).status.value,
        )
        return False

    def on_checkout_completed(self, session: Dict[str, Any]) -> Optional[ApplyResult]:
        """Credit a completed checkout session under its payment intent id."""
        intent_id = session.get("payment_intent")
        if isinstance(intent_id, dict):
            intent_id = intent_id.get("id")
        metadata = dict(session.get("metadata") or {})
        if not intent_id or not metadata.get("tenant_id"):
            logger.error("checkout_session_missing_metadata", session_id=session.get("id"))
            return None
        if session.get("payment_status") not in (None, "paid"):
            logger.info("checkout_session_unpaid", session_id=session.get("id"))
            return None

        return self.on_payment_succeeded(PaymentIntentResult(
            id=intent_id,
            status="succeeded",
            amount_cents=int(session.get("amount_total") or 0),
            customer_id=session.get("customer"),
            metadata=metadata,
        ))

    def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify and dispatch one webhook delivery.

        Raises:
            WebhookSignatureError: signature did not verify
            ReconciliationInconsistency: charge succeeded but the credit did not apply
        """
        event = self.processor.construct_event(payload, signature)
        summary: Dict[str, Any] = {"event_id": event.id, "event_type": event.type, "processed": True}

        if event.type == "payment_intent.succeeded":
            result = self.on_payment_succeeded(PaymentIntentResult.from_stripe(event.data))
            summary["outcome"] = result.outcome.value if result else "ignored"
        elif event.type == "payment_intent.payment_failed":
            failed = self.on_payment_failed(PaymentIntentResult.from_stripe(event.data))
            summary["outcome"] = "failed" if failed else "ignored"
        elif event.type == "checkout.session.completed":
            result = self.on_checkout_completed(event.data)
            summary["outcome"] = result.outcome.value if result else "ignored"
        elif event.type == "payment_method.attached":
            customer = self.customers.get_by_customer_id(event.data.get("customer") or "")
            if customer is None:
                summary["outcome"] = "ignored"
            else:
                saved = self.save_payment_method(customer.tenant_id, event.data["id"])
                summary["outcome"] = "saved" if saved else "ignored"
        else:
            summary["processed"] = False

        return summary

    # =========================================================================
    # Payment methods
    # =========================================================================

    def save_payment_method(self, tenant_id: str, external_id: str) -> Optional[PaymentMethod]:
        """Record a card once. The tenant's first active method becomes default."""
        existing = self.methods.get_by_external_id(external_id)
        if existing is not None:
            return existing if existing.tenant_id == tenant_id else None

        card = self.processor.retrieve_payment_method(external_id)
        if card.last4 is None:
            logger.info("payment_method_not_card", tenant_id=tenant_id, payment_method=external_id)
            return None

        with self.db.transaction(lock_key=tenant_id):
            existing = self.methods.get_by_external_id(external_id)
            if existing is not None:
                return existing
            return self.methods.insert(PaymentMethod(
                id=new_id("pm"),
                tenant_id=tenant_id,
                external_id=external_id,
                customer_id=card.customer_id,
                card_brand=card.brand,
                card_last4=card.last4,
                card_exp_month=card.exp_month,
                card_exp_year=card.exp_year,
                is_default=not self.methods.list_active(tenant_id),
            ))

    def list_payment_methods(self, tenant_id: str) -> List[PaymentMethod]:
        return self.methods.list_active(tenant_id)

    def add_payment_method(self, tenant_id: str, external_id: str, make_default: bool = False) -> PaymentMethod:
        """Attach a processor payment method to the tenant's customer and save it."""
        customer_id = self.ensure_customer(tenant_id)
        self.processor.attach_payment_method(external_id, customer_id)
        method = self.save_payment_method(tenant_id, external_id)
        if method is None:
            raise PaymentProviderError("Only card payment methods are supported", code="unsupported_method")
        if make_default and not method.is_default:
            self.methods.set_default(tenant_id, method.id)
            method = self.methods.get(method.id)
        return method

    def remove_payment_method(self, tenant_id: str, method_id: str) -> None:
        """Deactivate a saved method, detach it, and promote another default."""
        method = self.methods.get(method_id)
        if method is None or method.tenant_id != tenant_id or not method.is_active:
            raise NotFoundError(f"Payment method {method_id} not found")

        with self.db.transaction(lock_key=tenant_id):
            self.methods.deactivate(tenant_id, method_id)
            self.auto_recharge.clear_payment_method(tenant_id, method_id)
            remaining = self.methods.list_active(tenant_id)
            if method.is_default and remaining:
                self.methods.set_default(tenant_id, remaining[0].id)

        self.processor.detach_payment_method(method.external_id)
        logger.info("payment_method_removed", tenant_id=tenant_id, method_id=method_id)

    # =========================================================================
    # Manual reconciliation
    # =========================================================================

    def list_reconciliation(
        self,
        status: ReconciliationStatus = ReconciliationStatus.OPEN,
    ) -> List[ReconciliationItem]:
        return self.reconciliation.list(status)

    def resolve_reconciliation(self, item_id: str) -> ReconciliationItem:
        item = self.reconciliation.get(item_id)
        if item is None:
            raise NotFoundError(f"Reconciliation item {item_id} not found")
        self.reconciliation.resolve(item_id)
        return self.reconciliation.get(item_id)
