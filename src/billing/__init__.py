"""
CREDIT RAIL - Billing Module

Everything that moves money or time against the ledger:
- Payment reconciliation (purchases, processor webhooks, payment methods)
- Auto-recharge with a per-tenant cooldown
- Recurring billing cycle for metered subscriptions
- Balance check against per-tenant alert preferences
- Tax step and notification outbox
"""

from .auto_recharge import AutoRechargeController, RechargeDecision, SweepReport
from .balance_check import BalanceCheck, BalanceMonitor
from .billing_cycle import BillingCycleScheduler, CycleReport
from .notifications import (
    DrainReport,
    LogNotificationSender,
    NotificationOutbox,
    NotificationSender,
    WebhookNotificationSender,
)
from .reconciler import PaymentReconciler, PurchaseResult
from .stripe_integration import (
    CardDetails,
    PaymentIntentResult,
    PaymentProcessor,
    StripeIntegration,
    WebhookEvent,
)
from .tax import TaxBreakdown, TaxCalculator

__all__ = [
    "AutoRechargeController",
    "RechargeDecision",
    "SweepReport",
    "BalanceCheck",
    "BalanceMonitor",
    "BillingCycleScheduler",
    "CycleReport",
    "DrainReport",
    "LogNotificationSender",
    "NotificationOutbox",
    "NotificationSender",
    "WebhookNotificationSender",
    "PaymentReconciler",
    "PurchaseResult",
    "CardDetails",
    "PaymentIntentResult",
    "PaymentProcessor",
    "StripeIntegration",
    "WebhookEvent",
    "TaxBreakdown",
    "TaxCalculator",
]
