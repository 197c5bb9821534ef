"""
Billing Cycle Scheduler

Charges recurring metered subscriptions (rented phone numbers) when their
billing date has passed. A subscription the tenant cannot afford is
suspended and retried after ``suspension_retry``; a later successful charge
reactivates it.

Each subscription is billed in one store transaction: the re-read, the debit
and the date advance commit together, and the debit's reference id names the
billing period, so re-running a cycle never double-charges.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import threading
import structlog

from core.errors import InsufficientCredits, SchedulerPartialFailure
from core.ledger import LedgerStore
from core.types import SubscriptionStatus, TransactionType
from persistence.database import Database
from persistence.models import MeteredSubscription, new_id, to_iso, utc_now
from persistence.repository import NotificationPreferencesRepository, SubscriptionRepository

logger = structlog.get_logger()


@dataclass
class CycleReport:
    billed: List[str] = field(default_factory=list)
    suspended: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise SchedulerPartialFailure(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billed": len(self.billed),
            "suspended": len(self.suspended),
            "skipped": len(self.skipped),
            "failures": self.failures,
        }


class BillingCycleScheduler:
    """
    Usage:
        scheduler = BillingCycleScheduler(db, ledger, outbox)
        report = scheduler.run_cycle()
        report.raise_for_failures()
    """

    def __init__(
        self,
        db: Database,
        ledger: LedgerStore,
        outbox: Optional[Any] = None,
        period: timedelta = timedelta(days=30),
        suspension_retry: timedelta = timedelta(days=7),
        max_workers: int = 4,
        setup_cost: int = 0,
        low_balance_threshold: int = 100,
    ):
        self.db = db
        self.ledger = ledger
        self.outbox = outbox
        self.period = period
        self.suspension_retry = suspension_retry
        self.max_workers = max_workers
        self.setup_cost = setup_cost
        self.low_balance_threshold = low_balance_threshold
        self.subscriptions = SubscriptionRepository(db)
        self.preferences = NotificationPreferencesRepository(db)
        self._report_lock = threading.Lock()

    def create_subscription(
        self,
        tenant_id: str,
        resource: str,
        monthly_cost: int,
        next_billing_date: Optional[datetime] = None,
        setup_cost: Optional[int] = None,
    ) -> MeteredSubscription:
        """
        Register a recurring charge and take its one-time setup fee.

        The row and the setup debit commit together; the debit references the
        subscription id. The first monthly charge is due at ``next_billing_date``,
        one period from now by default.

        Raises:
            ValueError: non-positive monthly cost or negative setup cost
            InsufficientCredits: the balance does not cover the setup fee
        """
        if monthly_cost <= 0:
            raise ValueError("Monthly cost must be positive")
        setup_cost = self.setup_cost if setup_cost is None else setup_cost
        if setup_cost < 0:
            raise ValueError("Setup cost cannot be negative")

        subscription = MeteredSubscription(
            id=new_id("sub"),
            tenant_id=tenant_id,
            resource=resource,
            monthly_cost=monthly_cost,
            next_billing_date=next_billing_date or utc_now() + self.period,
        )
        with self.db.transaction(lock_key=tenant_id):
            if setup_cost:
                balance = self.ledger.get_balance(tenant_id)
                if balance < setup_cost:
                    raise InsufficientCredits(
                        tenant_id,
                        balance,
                        setup_cost,
                        f"Insufficient credits. Need {setup_cost} credits for setup.",
                    )
            self.subscriptions.insert(subscription)
            if setup_cost:
                self.ledger.apply_transaction(
                    tenant_id,
                    -setup_cost,
                    TransactionType.PHONE_NUMBER_CHARGE,
                    f"Phone number setup: {resource}",
                    reference_id=subscription.id,
                )
        return subscription

    def list_subscriptions(self, tenant_id: str) -> List[MeteredSubscription]:
        return self.subscriptions.list_for_tenant(tenant_id)

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Bill every due subscription.

        Tenants are processed in parallel, each tenant's subscriptions
        serially. Per-subscription failures are collected in the report.
        """
        now = now or utc_now()
        report = CycleReport()

        by_tenant: Dict[str, List[MeteredSubscription]] = {}
        for subscription in self.subscriptions.list_due(now):
            by_tenant.setdefault(subscription.tenant_id, []).append(subscription)

        if not by_tenant:
            logger.info("billing_cycle_complete", billed=0, suspended=0, skipped=0, failed=0)
            return report

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._process_tenant, tenant_id, subscriptions, now, report)
                for tenant_id, subscriptions in by_tenant.items()
            ]
            for future in as_completed(futures):
                future.result()

        logger.info(
            "billing_cycle_complete",
            billed=len(report.billed),
            suspended=len(report.suspended),
            skipped=len(report.skipped),
            failed=len(report.failures),
        )
        return report

    def _process_tenant(
        self,
        tenant_id: str,
        subscriptions: List[MeteredSubscription],
        now: datetime,
        report: CycleReport,
    ) -> None:
        try:
            for subscription in subscriptions:
                try:
                    outcome, notice = self._bill(subscription, now)
                except Exception as e:
                    logger.error(
                        "billing_cycle_item_failed",
                        tenant_id=tenant_id,
                        subscription_id=subscription.id,
                        error=str(e),
                    )
                    with self._report_lock:
                        report.failures.append({
                            "subscription_id": subscription.id,
                            "tenant_id": tenant_id,
                            "error": str(e),
                        })
                    continue

                with self._report_lock:
                    getattr(report, outcome).append(subscription.id)
                if notice is not None and self.outbox is not None:
                    self._notify_suspension(tenant_id, notice)
        finally:
            # Worker threads keep their own SQLite connection
            self.db.close()

    def _notify_suspension(self, tenant_id: str, notice: Dict[str, Any]) -> None:
        prefs = self.preferences.get_or_default(tenant_id, self.low_balance_threshold)
        if not prefs.email_enabled:
            logger.info("suspension_notice_muted", tenant_id=tenant_id, subscription_id=notice["subscription_id"])
            return
        notice["threshold"] = prefs.low_balance_threshold
        notice["email"] = prefs.notification_email
        self.outbox.enqueue("low_balance", tenant_id, notice)

    def _bill(
        self,
        subscription: MeteredSubscription,
        now: datetime,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        with self.db.transaction(lock_key=subscription.tenant_id):
            current = self.subscriptions.get(subscription.id)
            if current is None or current.next_billing_date > now:
                return "skipped", None

            balance = self.ledger.get_balance(current.tenant_id)
            if balance < current.monthly_cost:
                self.subscriptions.update_billing(
                    current.id,
                    SubscriptionStatus.SUSPENDED,
                    now + self.suspension_retry,
                )
                logger.warning(
                    "subscription_suspended",
                    tenant_id=current.tenant_id,
                    subscription_id=current.id,
                    resource=current.resource,
                    balance=balance,
                    required=current.monthly_cost,
                )
                return "suspended", {
                    "tenant_id": current.tenant_id,
                    "balance": balance,
                    "required": current.monthly_cost,
                    "subscription_id": current.id,
                    "resource": current.resource,
                }

            self.ledger.apply_transaction(
                current.tenant_id,
                -current.monthly_cost,
                TransactionType.PHONE_NUMBER_CHARGE,
                f"Monthly billing: {current.resource}",
                reference_id=f"{current.id}:{to_iso(current.next_billing_date)}",
            )
            next_date = current.next_billing_date + self.period
            if next_date <= now:
                next_date = now + self.period
            self.subscriptions.update_billing(current.id, SubscriptionStatus.ACTIVE, next_date)

        logger.info(
            "subscription_billed",
            tenant_id=current.tenant_id,
            subscription_id=current.id,
            amount=current.monthly_cost,
            next_billing_date=to_iso(next_date),
        )
        return "billed", None
