"""
Balance check and low-balance preferences.

Grades a tenant's balance against its alert threshold and the monthly cost of
its active phone number rentals:

- critical: below the threshold
- warning: enough for the threshold but not for the next monthly charges
- low: under twice the threshold
- good: anything else
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import structlog

from core.ledger import LedgerStore
from core.types import AlertLevel, SubscriptionStatus
from persistence.database import Database
from persistence.models import NotificationPreferences
from persistence.repository import NotificationPreferencesRepository, SubscriptionRepository

logger = structlog.get_logger()


@dataclass
class BalanceCheck:
    tenant_id: str
    balance: int
    threshold: int
    alert_level: AlertLevel
    message: str
    upcoming_phone_number_costs: int
    email_enabled: bool
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "balance": self.balance,
            "threshold": self.threshold,
            "alert_level": self.alert_level.value,
            "message": self.message,
            "recommendations": self.recommendations,
            "upcoming_costs": {"phone_numbers": self.upcoming_phone_number_costs},
            "notifications": {"email_enabled": self.email_enabled},
        }


class BalanceMonitor:
    """
    Usage:
        monitor = BalanceMonitor(db, ledger, default_threshold=100)
        monitor.update_preferences("t1", low_balance_threshold=250)
        check = monitor.check("t1")
    """

    def __init__(self, db: Database, ledger: LedgerStore, default_threshold: int = 100):
        self.ledger = ledger
        self.default_threshold = default_threshold
        self.preferences = NotificationPreferencesRepository(db)
        self.subscriptions = SubscriptionRepository(db)

    def get_preferences(self, tenant_id: str) -> NotificationPreferences:
        return self.preferences.get_or_default(tenant_id, self.default_threshold)

    def update_preferences(
        self,
        tenant_id: str,
        low_balance_threshold: Optional[int] = None,
        email_enabled: Optional[bool] = None,
        notification_email: Optional[str] = None,
    ) -> NotificationPreferences:
        """Change the given fields, keeping the rest. A threshold must be non-negative."""
        if low_balance_threshold is not None and low_balance_threshold < 0:
            raise ValueError("Low balance threshold cannot be negative")

        prefs = self.get_preferences(tenant_id)
        if low_balance_threshold is not None:
            prefs.low_balance_threshold = low_balance_threshold
        if email_enabled is not None:
            prefs.email_enabled = email_enabled
        if notification_email is not None:
            prefs.notification_email = notification_email or None
        return self.preferences.upsert(prefs)

    def check(self, tenant_id: str) -> BalanceCheck:
        balance = self.ledger.get_balance(tenant_id)
        prefs = self.get_preferences(tenant_id)
        threshold = prefs.low_balance_threshold
        upcoming = sum(
            s.monthly_cost
            for s in self.subscriptions.list_for_tenant(tenant_id)
            if s.status is SubscriptionStatus.ACTIVE
        )

        recommendations = []
        if balance < threshold:
            level = AlertLevel.CRITICAL
            message = f"Your balance ({balance} credits) is below the alert threshold ({threshold} credits)."
            recommendations.append("Add credits immediately to avoid service interruptions")
            recommendations.append("Consider purchasing a larger credit package for better rates")
        elif balance < upcoming:
            level = AlertLevel.WARNING
            message = (
                f"Your balance ({balance} credits) may not cover upcoming "
                f"phone number charges ({upcoming} credits)."
            )
            recommendations.append("Add credits to ensure uninterrupted phone service")
        elif balance < threshold * 2:
            level = AlertLevel.LOW
            message = f"Your balance ({balance} credits) is getting low."
            recommendations.append("Consider adding credits soon")
        else:
            level = AlertLevel.GOOD
            message = "Your credit balance is healthy."

        if level is not AlertLevel.GOOD:
            logger.info("balance_check_alert", tenant_id=tenant_id, level=level.value, balance=balance)

        return BalanceCheck(
            tenant_id=tenant_id,
            balance=balance,
            threshold=threshold,
            alert_level=level,
            message=message,
            upcoming_phone_number_costs=upcoming,
            email_enabled=prefs.email_enabled,
            recommendations=recommendations,
        )
