"""
Repository Layer for the Credit Rail

Provides CRUD operations for all persisted entities. Repositories go through
``Database.execute``, so a call made inside ``db.transaction()`` joins it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import json

import structlog

from core.types import (
    NotificationStatus,
    PaymentStatus,
    ReconciliationKind,
    ReconciliationStatus,
    SubscriptionStatus,
    TransactionType,
)
from .database import Database
from .models import (
    AutoRechargeSettings,
    CreditPackage,
    CreditTransaction,
    MeteredSubscription,
    Notification,
    NotificationPreferences,
    PaymentMethod,
    PaymentRecord,
    ProcessorCustomer,
    ReconciliationItem,
    new_id,
    to_iso,
    utc_now,
)

logger = structlog.get_logger()


class LedgerRepository:
    """Append-only access to ``credit_transactions``."""

    def __init__(self, db: Database):
        self.db = db

    def balance(self, tenant_id: str) -> int:
        results = self.db.execute(
            "SELECT COALESCE(SUM(amount), 0) AS balance FROM credit_transactions WHERE tenant_id = ?",
            (tenant_id,)
        )
        return int(results[0]["balance"]) if results else 0

    def find_by_reference(
        self,
        tenant_id: str,
        type: TransactionType,
        reference_id: str,
    ) -> Optional[CreditTransaction]:
        results = self.db.execute(
            """SELECT * FROM credit_transactions
               WHERE tenant_id = ? AND type = ? AND reference_id = ?""",
            (tenant_id, type.value, reference_id)
        )
        return CreditTransaction.from_row(results[0]) if results else None

    def insert(self, txn: CreditTransaction) -> CreditTransaction:
        self.db.execute_update(
            """INSERT INTO credit_transactions
               (id, tenant_id, amount, type, description, reference_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            txn.to_db_tuple()
        )
        return txn

    def list_for_tenant(self, tenant_id: str, limit: int = 50) -> List[CreditTransaction]:
        """Newest first."""
        results = self.db.execute(
            """SELECT * FROM credit_transactions WHERE tenant_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (tenant_id, limit)
        )
        return [CreditTransaction.from_row(r) for r in results]


class CreditPackageRepository:
    """Repository for the package catalogue."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, package_id: str) -> Optional[CreditPackage]:
        results = self.db.execute("SELECT * FROM credit_packages WHERE id = ?", (package_id,))
        return CreditPackage.from_row(results[0]) if results else None

    def list_active(self) -> List[CreditPackage]:
        results = self.db.execute(
            "SELECT * FROM credit_packages WHERE is_active = ? ORDER BY credits ASC",
            (True,)
        )
        return [CreditPackage.from_row(r) for r in results]

    def smallest_covering(self, credits: int) -> Optional[CreditPackage]:
        """Smallest active package holding at least ``credits``."""
        results = self.db.execute(
            """SELECT * FROM credit_packages WHERE is_active = ? AND credits >= ?
               ORDER BY credits ASC, price_cents ASC LIMIT 1""",
            (True, credits)
        )
        return CreditPackage.from_row(results[0]) if results else None

    def upsert(self, package: CreditPackage) -> CreditPackage:
        updated = self.db.execute_update(
            """UPDATE credit_packages SET name = ?, credits = ?, price_cents = ?, is_active = ?
               WHERE id = ?""",
            (package.name, package.credits, package.price_cents, package.is_active, package.id)
        )
        if not updated:
            self.db.execute_update(
                """INSERT INTO credit_packages (id, name, credits, price_cents, is_active)
                   VALUES (?, ?, ?, ?, ?)""",
                (package.id, package.name, package.credits, package.price_cents, package.is_active)
            )
        return package


class ProcessorCustomerRepository:
    """Tenant to processor customer mapping."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, tenant_id: str) -> Optional[ProcessorCustomer]:
        results = self.db.execute(
            "SELECT * FROM processor_customers WHERE tenant_id = ?",
            (tenant_id,)
        )
        return ProcessorCustomer.from_row(results[0]) if results else None

    def get_by_customer_id(self, customer_id: str) -> Optional[ProcessorCustomer]:
        results = self.db.execute(
            "SELECT * FROM processor_customers WHERE customer_id = ?",
            (customer_id,)
        )
        return ProcessorCustomer.from_row(results[0]) if results else None

    def create(self, tenant_id: str, customer_id: str) -> ProcessorCustomer:
        """Insert the mapping unless one exists; returns the stored row."""
        inserted = self.db.execute_update(
            """INSERT INTO processor_customers (tenant_id, customer_id, created_at) VALUES (?, ?, ?)
               ON CONFLICT (tenant_id) DO NOTHING""",
            (tenant_id, customer_id, to_iso(utc_now()))
        )
        if inserted:
            logger.info("processor_customer_created", tenant_id=tenant_id, customer_id=customer_id)
        return self.get(tenant_id)


class PaymentMethodRepository:
    """Repository for saved payment methods."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, method_id: str) -> Optional[PaymentMethod]:
        results = self.db.execute("SELECT * FROM payment_methods WHERE id = ?", (method_id,))
        return PaymentMethod.from_row(results[0]) if results else None

    def get_by_external_id(self, external_id: str) -> Optional[PaymentMethod]:
        results = self.db.execute(
            "SELECT * FROM payment_methods WHERE external_id = ?",
            (external_id,)
        )
        return PaymentMethod.from_row(results[0]) if results else None

    def list_active(self, tenant_id: str) -> List[PaymentMethod]:
        results = self.db.execute(
            """SELECT * FROM payment_methods WHERE tenant_id = ? AND is_active = ?
               ORDER BY is_default DESC, created_at ASC""",
            (tenant_id, True)
        )
        return [PaymentMethod.from_row(r) for r in results]

    def insert(self, method: PaymentMethod) -> PaymentMethod:
        self.db.execute_update(
            """INSERT INTO payment_methods
               (id, tenant_id, external_id, customer_id, card_brand, card_last4,
                card_exp_month, card_exp_year, is_default, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            method.to_db_tuple()
        )
        logger.info("payment_method_saved", tenant_id=method.tenant_id, method_id=method.id)
        return method

    def set_default(self, tenant_id: str, method_id: str) -> None:
        self.db.execute_update(
            "UPDATE payment_methods SET is_default = ? WHERE tenant_id = ?",
            (False, tenant_id)
        )
        self.db.execute_update(
            "UPDATE payment_methods SET is_default = ? WHERE tenant_id = ? AND id = ?",
            (True, tenant_id, method_id)
        )

    def deactivate(self, tenant_id: str, method_id: str) -> bool:
        updated = self.db.execute_update(
            """UPDATE payment_methods SET is_active = ?, is_default = ?
               WHERE tenant_id = ? AND id = ? AND is_active = ?""",
            (False, False, tenant_id, method_id, True)
        )
        return updated == 1


class AutoRechargeRepository:
    """Per-tenant auto-recharge settings and the cooldown claim."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, tenant_id: str) -> Optional[AutoRechargeSettings]:
        results = self.db.execute(
            "SELECT * FROM auto_recharge_settings WHERE tenant_id = ?",
            (tenant_id,)
        )
        return AutoRechargeSettings.from_row(results[0]) if results else None

    def upsert(self, settings: AutoRechargeSettings) -> AutoRechargeSettings:
        """Write tenant-editable fields. ``last_triggered_at`` is only moved by ``claim``."""
        settings.updated_at = utc_now()
        params = (
            settings.enabled,
            settings.minimum_balance,
            settings.recharge_amount,
            settings.payment_method_id,
            to_iso(settings.updated_at),
            settings.tenant_id,
        )
        updated = self.db.execute_update(
            """UPDATE auto_recharge_settings
               SET is_enabled = ?, minimum_balance = ?, recharge_amount = ?,
                   payment_method_id = ?, updated_at = ?
               WHERE tenant_id = ?""",
            params
        )
        if not updated:
            self.db.execute_update(
                """INSERT INTO auto_recharge_settings
                   (is_enabled, minimum_balance, recharge_amount, payment_method_id,
                    updated_at, tenant_id)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                params
            )
        return settings

    def claim(self, tenant_id: str, now: datetime, cooldown_cutoff: datetime) -> bool:
        """
        Compare-and-set on ``last_triggered_at``.

        Succeeds for exactly one caller per cooldown window: the row is only
        updated while the previous trigger is older than ``cooldown_cutoff``.
        """
        updated = self.db.execute_update(
            """UPDATE auto_recharge_settings SET last_triggered_at = ?
               WHERE tenant_id = ? AND is_enabled = ?
                 AND (last_triggered_at IS NULL OR last_triggered_at <= ?)""",
            (to_iso(now), tenant_id, True, to_iso(cooldown_cutoff))
        )
        return updated == 1

    def list_enabled(self) -> List[AutoRechargeSettings]:
        results = self.db.execute(
            "SELECT * FROM auto_recharge_settings WHERE is_enabled = ? ORDER BY tenant_id",
            (True,)
        )
        return [AutoRechargeSettings.from_row(r) for r in results]

    def clear_payment_method(self, tenant_id: str, method_id: str) -> None:
        self.db.execute_update(
            """UPDATE auto_recharge_settings SET payment_method_id = NULL, is_enabled = ?, updated_at = ?
               WHERE tenant_id = ? AND payment_method_id = ?""",
            (False, to_iso(utc_now()), tenant_id, method_id)
        )


class PaymentRecordRepository:
    """Repository for payment records."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, record: PaymentRecord) -> PaymentRecord:
        self.db.execute_update(
            """INSERT INTO payment_records
               (id, charge_key, external_payment_id, tenant_id, customer_id, payment_method_id,
                amount_cents, subtotal_cents, tax_cents, tax_rate, tax_name, credits_purchased,
                status, is_auto_recharge, description, failure_reason, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get(self, record_id: str) -> Optional[PaymentRecord]:
        results = self.db.execute("SELECT * FROM payment_records WHERE id = ?", (record_id,))
        return PaymentRecord.from_row(results[0]) if results else None

    def get_by_charge_key(self, charge_key: str) -> Optional[PaymentRecord]:
        results = self.db.execute(
            "SELECT * FROM payment_records WHERE charge_key = ?",
            (charge_key,)
        )
        return PaymentRecord.from_row(results[0]) if results else None

    def get_by_external_id(self, external_id: str) -> Optional[PaymentRecord]:
        results = self.db.execute(
            "SELECT * FROM payment_records WHERE external_payment_id = ?",
            (external_id,)
        )
        return PaymentRecord.from_row(results[0]) if results else None

    def bind_external_id(self, record_id: str, external_id: str) -> None:
        self.db.execute_update(
            """UPDATE payment_records SET external_payment_id = ?, updated_at = ?
               WHERE id = ? AND external_payment_id IS NULL""",
            (external_id, to_iso(utc_now()), record_id)
        )

    def transition(
        self,
        record_id: str,
        status: PaymentStatus,
        failure_reason: Optional[str] = None,
        from_statuses: Sequence[PaymentStatus] = (PaymentStatus.PENDING,),
    ) -> bool:
        """
        Move a record to `status` if it is currently in one of `from_statuses`.

        Returns False when the record was in any other state.
        """
        placeholders = ", ".join("?" for _ in from_statuses)
        updated = self.db.execute_update(
            f"""UPDATE payment_records SET status = ?, failure_reason = ?, updated_at = ?
               WHERE id = ? AND status IN ({placeholders})""",
            (status.value, failure_reason, to_iso(utc_now()), record_id,
             *(s.value for s in from_statuses))
        )
        if updated:
            logger.info("payment_record_transitioned", record_id=record_id, status=status.value)
        return updated == 1

    def list_for_tenant(self, tenant_id: str, limit: int = 50) -> List[PaymentRecord]:
        results = self.db.execute(
            "SELECT * FROM payment_records WHERE tenant_id = ? ORDER BY created_at DESC LIMIT ?",
            (tenant_id, limit)
        )
        return [PaymentRecord.from_row(r) for r in results]


class SubscriptionRepository:
    """Repository for metered subscriptions."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, subscription: MeteredSubscription) -> MeteredSubscription:
        self.db.execute_update(
            """INSERT INTO metered_subscriptions
               (id, tenant_id, resource, monthly_cost, next_billing_date, status,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            subscription.to_db_tuple()
        )
        logger.info(
            "subscription_created",
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            resource=subscription.resource,
        )
        return subscription

    def get(self, subscription_id: str) -> Optional[MeteredSubscription]:
        results = self.db.execute(
            "SELECT * FROM metered_subscriptions WHERE id = ?",
            (subscription_id,)
        )
        return MeteredSubscription.from_row(results[0]) if results else None

    def list_for_tenant(self, tenant_id: str) -> List[MeteredSubscription]:
        results = self.db.execute(
            "SELECT * FROM metered_subscriptions WHERE tenant_id = ? ORDER BY created_at ASC",
            (tenant_id,)
        )
        return [MeteredSubscription.from_row(r) for r in results]

    def list_due(self, now: datetime) -> List[MeteredSubscription]:
        """Active or suspended subscriptions whose billing date has passed."""
        results = self.db.execute(
            """SELECT * FROM metered_subscriptions
               WHERE status IN (?, ?) AND next_billing_date <= ?
               ORDER BY tenant_id, next_billing_date, id""",
            (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.SUSPENDED.value, to_iso(now))
        )
        return [MeteredSubscription.from_row(r) for r in results]

    def update_billing(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        next_billing_date: datetime,
    ) -> None:
        self.db.execute_update(
            """UPDATE metered_subscriptions SET status = ?, next_billing_date = ?, updated_at = ?
               WHERE id = ?""",
            (status.value, to_iso(next_billing_date), to_iso(utc_now()), subscription_id)
        )


class ReconciliationRepository:
    """Manual review queue."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(
        self,
        kind: ReconciliationKind,
        tenant_id: Optional[str],
        external_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationItem:
        item = ReconciliationItem(
            id=new_id("rec"),
            kind=kind,
            tenant_id=tenant_id,
            external_id=external_id,
            details=details or {},
        )
        self.db.execute_update(
            """INSERT INTO reconciliation_queue
               (id, kind, tenant_id, external_id, details, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                item.id,
                item.kind.value,
                item.tenant_id,
                item.external_id,
                json.dumps(item.details, default=str),
                item.status.value,
                to_iso(item.created_at),
            )
        )
        logger.warning(
            "reconciliation_enqueued",
            item_id=item.id,
            kind=kind.value,
            tenant_id=tenant_id,
            external_id=external_id,
        )
        return item

    def get(self, item_id: str) -> Optional[ReconciliationItem]:
        results = self.db.execute("SELECT * FROM reconciliation_queue WHERE id = ?", (item_id,))
        return ReconciliationItem.from_row(results[0]) if results else None

    def list(
        self,
        status: ReconciliationStatus = ReconciliationStatus.OPEN,
        limit: int = 100,
    ) -> List[ReconciliationItem]:
        results = self.db.execute(
            "SELECT * FROM reconciliation_queue WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (status.value, limit)
        )
        return [ReconciliationItem.from_row(r) for r in results]

    def resolve(self, item_id: str) -> bool:
        updated = self.db.execute_update(
            "UPDATE reconciliation_queue SET status = ?, resolved_at = ? WHERE id = ? AND status = ?",
            (
                ReconciliationStatus.RESOLVED.value,
                to_iso(utc_now()),
                item_id,
                ReconciliationStatus.OPEN.value,
            )
        )
        if updated:
            logger.info("reconciliation_resolved", item_id=item_id)
        return updated == 1


class NotificationPreferencesRepository:
    """Per-tenant low-balance alert settings."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, tenant_id: str) -> Optional[NotificationPreferences]:
        results = self.db.execute(
            "SELECT * FROM notification_preferences WHERE tenant_id = ?",
            (tenant_id,)
        )
        return NotificationPreferences.from_row(results[0]) if results else None

    def get_or_default(self, tenant_id: str, default_threshold: int = 100) -> NotificationPreferences:
        """Stored preferences, or alerts on at ``default_threshold`` for a tenant with none."""
        return self.get(tenant_id) or NotificationPreferences(
            tenant_id=tenant_id,
            low_balance_threshold=default_threshold,
        )

    def upsert(self, preferences: NotificationPreferences) -> NotificationPreferences:
        preferences.updated_at = utc_now()
        params = (
            preferences.low_balance_threshold,
            preferences.email_enabled,
            preferences.notification_email,
            to_iso(preferences.updated_at),
            preferences.tenant_id,
        )
        updated = self.db.execute_update(
            """UPDATE notification_preferences
               SET low_balance_threshold = ?, email_notifications = ?,
                   notification_email = ?, updated_at = ?
               WHERE tenant_id = ?""",
            params
        )
        if not updated:
            self.db.execute_update(
                """INSERT INTO notification_preferences
                   (low_balance_threshold, email_notifications, notification_email,
                    updated_at, tenant_id)
                   VALUES (?, ?, ?, ?, ?)""",
                params
            )
        logger.info(
            "notification_preferences_updated",
            tenant_id=preferences.tenant_id,
            threshold=preferences.low_balance_threshold,
            email_enabled=preferences.email_enabled,
        )
        return preferences


class NotificationRepository:
    """Outbox of tenant notifications."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, kind: str, tenant_id: str, payload: Dict[str, Any]) -> Notification:
        notification = Notification(
            id=new_id("ntf"),
            kind=kind,
            tenant_id=tenant_id,
            payload=payload,
        )
        self.db.execute_update(
            """INSERT INTO notifications (id, kind, tenant_id, payload, status, attempts, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                notification.id,
                kind,
                tenant_id,
                json.dumps(payload, default=str),
                notification.status.value,
                0,
                to_iso(notification.created_at),
            )
        )
        return notification

    def pending(self, limit: int = 100) -> List[Notification]:
        results = self.db.execute(
            "SELECT * FROM notifications WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (NotificationStatus.PENDING.value, limit)
        )
        return [Notification.from_row(r) for r in results]

    def list_for_tenant(self, tenant_id: str) -> List[Notification]:
        results = self.db.execute(
            "SELECT * FROM notifications WHERE tenant_id = ? ORDER BY created_at ASC",
            (tenant_id,)
        )
        return [Notification.from_row(r) for r in results]

    def mark_sent(self, notification_id: str) -> None:
        self.db.execute_update(
            "UPDATE notifications SET status = ?, attempts = attempts + 1, sent_at = ? WHERE id = ?",
            (NotificationStatus.SENT.value, to_iso(utc_now()), notification_id)
        )

    def record_failure(self, notification: Notification, error: str, max_attempts: int) -> NotificationStatus:
        """Count a failed delivery; give up once ``max_attempts`` is reached."""
        attempts = notification.attempts + 1
        status = NotificationStatus.FAILED if attempts >= max_attempts else NotificationStatus.PENDING
        self.db.execute_update(
            "UPDATE notifications SET status = ?, attempts = ?, last_error = ? WHERE id = ?",
            (status.value, attempts, error[:500], notification.id)
        )
        return status
