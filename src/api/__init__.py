"""
CREDIT RAIL - API Module

Production FastAPI server implementing:
- Ledger balance and administrative adjustments
- Usage authorization and settlement callbacks
- Credit purchases, payment methods and auto-recharge
- Stripe webhooks
- Cron-triggered billing cycle
"""

from .server import AppState, app, create_app

__all__ = ["AppState", "app", "create_app"]
