"""
Persistence Layer for the Credit Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

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
)
from .repository import (
    AutoRechargeRepository,
    CreditPackageRepository,
    LedgerRepository,
    NotificationPreferencesRepository,
    NotificationRepository,
    PaymentMethodRepository,
    PaymentRecordRepository,
    ProcessorCustomerRepository,
    ReconciliationRepository,
    SubscriptionRepository,
)

__all__ = [
    "Database",
    "AutoRechargeSettings",
    "CreditPackage",
    "CreditTransaction",
    "MeteredSubscription",
    "Notification",
    "NotificationPreferences",
    "PaymentMethod",
    "PaymentRecord",
    "ProcessorCustomer",
    "ReconciliationItem",
    "AutoRechargeRepository",
    "CreditPackageRepository",
    "LedgerRepository",
    "NotificationPreferencesRepository",
    "NotificationRepository",
    "PaymentMethodRepository",
    "PaymentRecordRepository",
    "ProcessorCustomerRepository",
    "ReconciliationRepository",
    "SubscriptionRepository",
]
