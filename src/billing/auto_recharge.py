"""
Auto-Recharge Controller

Tops a tenant up automatically when its balance falls to the configured
minimum. Triggered by balance changes after usage settlement, by the cron
sweep, and manually through the API.

At most one automatic charge starts per tenant per cooldown window: the
window is claimed with a compare-and-set on ``last_triggered_at`` before the
processor is called, so concurrent triggers race on the claim rather than on
the charge.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import structlog

from core.errors import NotFoundError, PaymentProviderError
from core.ledger import LedgerStore
from persistence.database import Database
from persistence.models import AutoRechargeSettings, utc_now
from persistence.repository import (
    AutoRechargeRepository,
    CreditPackageRepository,
    PaymentMethodRepository,
)

from .reconciler import PaymentReconciler, PurchaseResult

logger = structlog.get_logger()


@dataclass
class RechargeDecision:
    triggered: bool
    reason: str
    tenant_id: str
    balance: Optional[int] = None
    purchase: Optional[PurchaseResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "reason": self.reason,
            "tenant_id": self.tenant_id,
            "balance": self.balance,
            "purchase": self.purchase.to_dict() if self.purchase else None,
        }


@dataclass
class SweepReport:
    processed: int = 0
    recharged: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "recharged": self.recharged,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


class AutoRechargeController:
    """
    Usage:
        controller = AutoRechargeController(db, ledger, reconciler)
        authorizer.add_observer(controller.on_balance_changed)
        controller.sweep()
    """

    def __init__(
        self,
        db: Database,
        ledger: LedgerStore,
        reconciler: PaymentReconciler,
        cooldown: timedelta = timedelta(hours=1),
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.cooldown = cooldown
        self.settings = AutoRechargeRepository(db)
        self.packages = CreditPackageRepository(db)
        self.methods = PaymentMethodRepository(db)

    def get_settings(self, tenant_id: str) -> Optional[AutoRechargeSettings]:
        return self.settings.get(tenant_id)

    def update_settings(
        self,
        tenant_id: str,
        enabled: bool,
        minimum_balance: Optional[int] = None,
        recharge_amount: Optional[int] = None,
        payment_method_id: Optional[str] = None,
    ) -> AutoRechargeSettings:
        """
        Raises:
            ValueError: enabling without all of minimum, amount and method
            NotFoundError: payment method not active or not owned by the tenant
        """
        if enabled and (minimum_balance is None or recharge_amount is None or payment_method_id is None):
            raise ValueError(
                "Minimum balance, recharge amount, and payment method are required "
                "when enabling auto-recharge"
            )
        if minimum_balance is not None and minimum_balance < 0:
            raise ValueError("Minimum balance cannot be negative")
        if recharge_amount is not None and recharge_amount <= 0:
            raise ValueError("Recharge amount must be positive")
        if payment_method_id is not None:
            method = self.methods.get(payment_method_id)
            if method is None or method.tenant_id != tenant_id or not method.is_active:
                raise NotFoundError(f"Payment method {payment_method_id} not found")

        current = self.settings.get(tenant_id) or AutoRechargeSettings(tenant_id=tenant_id)
        current.enabled = enabled
        if minimum_balance is not None:
            current.minimum_balance = minimum_balance
        if recharge_amount is not None:
            current.recharge_amount = recharge_amount
        if payment_method_id is not None:
            current.payment_method_id = payment_method_id

        self.settings.upsert(current)
        logger.info(
            "auto_recharge_settings_updated",
            tenant_id=tenant_id,
            enabled=enabled,
            minimum_balance=current.minimum_balance,
            recharge_amount=current.recharge_amount,
        )
        return self.settings.get(tenant_id)

    def evaluate(
        self,
        tenant_id: str,
        triggered_by: str = "manual",
        now: Optional[datetime] = None,
    ) -> RechargeDecision:
        """
        Decide on, and possibly start, one automatic recharge.

        Raises:
            PaymentProviderError: the charge was attempted and declined or timed out
        """
        now = now or utc_now()
        settings = self.settings.get(tenant_id)
        if settings is None or not settings.enabled:
            return RechargeDecision(False, "disabled", tenant_id)
        if settings.payment_method_id is None:
            return RechargeDecision(False, "no_payment_method", tenant_id)

        balance = self.ledger.get_balance(tenant_id)
        if balance > settings.minimum_balance:
            return RechargeDecision(False, "above_minimum", tenant_id, balance)

        cutoff = now - self.cooldown
        if settings.last_triggered_at is not None and settings.last_triggered_at > cutoff:
            return RechargeDecision(False, "cooldown", tenant_id, balance)

        package = self.packages.smallest_covering(settings.recharge_amount)
        if package is None:
            logger.warning(
                "auto_recharge_no_package",
                tenant_id=tenant_id,
                recharge_amount=settings.recharge_amount,
            )
            return RechargeDecision(False, "no_package", tenant_id, balance)

        if not self.settings.claim(tenant_id, now, cutoff):
            logger.info("auto_recharge_claim_lost", tenant_id=tenant_id, triggered_by=triggered_by)
            return RechargeDecision(False, "cooldown", tenant_id, balance)

        logger.info(
            "auto_recharge_triggered",
            tenant_id=tenant_id,
            triggered_by=triggered_by,
            balance=balance,
            minimum_balance=settings.minimum_balance,
            package_id=package.id,
        )
        try:
            purchase = self.reconciler.initiate_purchase(
                tenant_id,
                package_id=package.id,
                payment_method_id=settings.payment_method_id,
                off_session=True,
                is_auto_recharge=True,
            )
        except PaymentProviderError as e:
            logger.warning(
                "auto_recharge_payment_failed",
                tenant_id=tenant_id,
                code=e.code,
                retryable=e.retryable,
                error=str(e),
            )
            raise

        return RechargeDecision(
            True,
            "charged" if purchase.credited else "pending",
            tenant_id,
            purchase.ledger.balance if purchase.ledger else balance,
            purchase,
        )

    def on_balance_changed(self, tenant_id: str, before: int, after: int) -> None:
        """Balance observer registered with the debit authorizer."""
        if after < before:
            self.evaluate(tenant_id, triggered_by="usage")

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Evaluate every enabled tenant. One tenant's failure does not stop the sweep."""
        now = now or utc_now()
        report = SweepReport()
        for settings in self.settings.list_enabled():
            report.processed += 1
            try:
                decision = self.evaluate(settings.tenant_id, triggered_by="sweep", now=now)
            except Exception as e:
                report.failed += 1
                report.errors.append({"tenant_id": settings.tenant_id, "error": str(e)})
                logger.error("auto_recharge_sweep_failed", tenant_id=settings.tenant_id, error=str(e))
                continue

            if decision.triggered:
                report.recharged += 1
            else:
                report.skipped += 1

        logger.info(
            "auto_recharge_sweep_complete",
            processed=report.processed,
            recharged=report.recharged,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report
