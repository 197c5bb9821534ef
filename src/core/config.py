"""
Runtime configuration.

Settings are read from the environment exactly once, by ``Settings.from_env``,
and handed to each service constructor.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Process configuration."""
    database_url: str = "sqlite:///credit_rail.db"
    api_key: str = "dev-key-change-in-production"
    cron_secret: Optional[str] = None

    # Payment processor
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    currency: str = "usd"

    # Tax step
    tax_enabled: bool = False
    tax_rate: float = 0.13
    tax_name: str = "HST"
    tax_description: str = "Harmonized Sales Tax (Ontario)"

    # Metering
    sms_credits_per_message: int = 5
    call_credits_per_minute: int = 15
    low_balance_threshold: int = 100
    phone_number_setup_credits: int = 500

    # Scheduling
    auto_recharge_cooldown_seconds: int = 3600
    billing_period_days: int = 30
    suspension_retry_days: int = 7
    billing_max_workers: int = 4

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_max_attempts: int = 5

    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///credit_rail.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            cron_secret=os.environ.get("CRON_SECRET"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            currency=os.environ.get("CURRENCY", "usd"),
            tax_enabled=_env_bool("MANUAL_TAX_ENABLED"),
            tax_rate=float(os.environ.get("TAX_RATE", "0.13")),
            tax_name=os.environ.get("TAX_NAME", "HST"),
            tax_description=os.environ.get("TAX_DESCRIPTION", "Harmonized Sales Tax (Ontario)"),
            sms_credits_per_message=int(os.environ.get("SMS_CREDITS_PER_MESSAGE", "5")),
            call_credits_per_minute=int(os.environ.get("CALL_CREDITS_PER_MINUTE", "15")),
            low_balance_threshold=int(os.environ.get("LOW_BALANCE_THRESHOLD", "100")),
            phone_number_setup_credits=int(os.environ.get("PHONE_NUMBER_SETUP_CREDITS", "500")),
            auto_recharge_cooldown_seconds=int(os.environ.get("AUTO_RECHARGE_COOLDOWN_SECONDS", "3600")),
            billing_period_days=int(os.environ.get("BILLING_PERIOD_DAYS", "30")),
            suspension_retry_days=int(os.environ.get("SUSPENSION_RETRY_DAYS", "7")),
            billing_max_workers=int(os.environ.get("BILLING_MAX_WORKERS", "4")),
            notification_webhook_url=os.environ.get("NOTIFICATION_WEBHOOK_URL"),
            notification_max_attempts=int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "5")),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        )
