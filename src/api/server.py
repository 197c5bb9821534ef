"""
CREDIT RAIL - Production FastAPI Server

Prepaid credit ledger API.

Endpoints:
- GET  /tenants/{id}/credits - Balance and recent transactions
- POST /usage/authorize - Pre-authorize a call or SMS
- POST /usage/calls/completed, /usage/sms/completed - Settle usage
- POST /tenants/{id}/purchases - Buy a credit package
- GET|PUT /tenants/{id}/auto-recharge - Auto-recharge settings
- GET|PUT /tenants/{id}/notification-preferences, GET /tenants/{id}/balance-check - Low-balance alerts
- POST /webhooks/stripe - Payment processor events
- GET|POST /cron/tick - Billing cycle, auto-recharge sweep, notification outbox
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional
import os

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from billing.auto_recharge import AutoRechargeController
from billing.balance_check import BalanceMonitor
from billing.billing_cycle import BillingCycleScheduler
from billing.notifications import (
    LogNotificationSender,
    NotificationOutbox,
    NotificationSender,
    WebhookNotificationSender,
)
from billing.reconciler import PaymentReconciler
from billing.stripe_integration import PaymentProcessor, StripeIntegration
from billing.tax import TaxCalculator
from core.authorizer import DebitAuthorizer, PricingTable
from core.config import Settings
from core.errors import (
    InsufficientCredits,
    NotFoundError,
    PaymentProviderError,
    ReconciliationInconsistency,
    WebhookSignatureError,
)
from core.ledger import LedgerStore
from core.types import ReconciliationStatus, ServiceType, TransactionType
from persistence.database import Database
from persistence.repository import CreditPackageRepository

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class AdjustCreditsRequest(BaseModel):
    """Administrative credit adjustment."""
    amount: int = Field(..., description="Signed credit amount; negative deducts")
    type: str = Field(default="adjustment", description="adjustment, bonus, refund or penalty")
    reason: str = Field(..., min_length=1)
    override: bool = Field(default=False, description="Allow the balance to go negative")


class AuthorizeRequest(BaseModel):
    """Pre-authorization before starting a metered action."""
    tenant_id: str
    service: str = Field(..., description="call or sms")
    estimated_cost: Optional[int] = Field(None, ge=0)


class CallCompletedRequest(BaseModel):
    """Completion callback from the voice provider."""
    tenant_id: str
    call_id: str
    duration_seconds: Optional[float] = Field(None, ge=0)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class SmsCompletedRequest(BaseModel):
    """Completion callback from the SMS provider."""
    tenant_id: str
    message_id: str
    segments: int = Field(default=1, ge=1)


class PurchaseRequest(BaseModel):
    package_id: str
    payment_method_id: Optional[str] = Field(None, description="Saved method to charge off-session")


class AutoRechargeRequest(BaseModel):
    enabled: bool
    minimum_balance: Optional[int] = Field(None, ge=0)
    recharge_amount: Optional[int] = Field(None, gt=0)
    payment_method_id: Optional[str] = None


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., description="Processor payment method token")
    make_default: bool = False


class SubscriptionRequest(BaseModel):
    resource: str = Field(..., description="Rented resource, e.g. a phone number")
    monthly_cost: int = Field(..., gt=0)
    next_billing_date: Optional[datetime] = None
    setup_cost: Optional[int] = Field(None, ge=0, description="One-time fee; defaults to the configured setup charge")


class NotificationPreferencesRequest(BaseModel):
    low_balance_threshold: Optional[int] = Field(None, ge=0)
    email_enabled: Optional[bool] = None
    notification_email: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container. Every service is built from one ``Settings``."""

    def __init__(
        self,
        settings: Settings,
        processor: Optional[PaymentProcessor] = None,
        sender: Optional[NotificationSender] = None,
    ):
        self.settings = settings
        self.db = Database(settings.database_url)
        self.db.initialize()

        if sender is None:
            if settings.notification_webhook_url:
                sender = WebhookNotificationSender(settings.notification_webhook_url)
            else:
                sender = LogNotificationSender()
        self.outbox = NotificationOutbox(self.db, sender, settings.notification_max_attempts)

        self.ledger = LedgerStore(self.db)
        self.monitor = BalanceMonitor(self.db, self.ledger, settings.low_balance_threshold)
        self.processor = processor or StripeIntegration.from_settings(settings)
        self.reconciler = PaymentReconciler(
            self.db,
            self.ledger,
            self.processor,
            TaxCalculator.from_settings(settings),
            currency=settings.currency,
        )
        self.auto_recharge = AutoRechargeController(
            self.db,
            self.ledger,
            self.reconciler,
            cooldown=timedelta(seconds=settings.auto_recharge_cooldown_seconds),
        )
        self.authorizer = DebitAuthorizer(
            self.ledger,
            PricingTable.from_settings(settings),
            low_balance_threshold=settings.low_balance_threshold,
            outbox=self.outbox,
            preferences=self.monitor.preferences,
        )
        self.authorizer.add_observer(self.auto_recharge.on_balance_changed)
        self.scheduler = BillingCycleScheduler(
            self.db,
            self.ledger,
            self.outbox,
            period=timedelta(days=settings.billing_period_days),
            suspension_retry=timedelta(days=settings.suspension_retry_days),
            max_workers=settings.billing_max_workers,
            setup_cost=settings.phone_number_setup_credits,
            low_balance_threshold=settings.low_balance_threshold,
        )
        self.packages = CreditPackageRepository(self.db)
        self.start_time = datetime.now(timezone.utc)

    def close(self) -> None:
        self.db.close()


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "rail", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    state: AppState = Depends(get_state),
) -> None:
    """Scheduler calls authenticate with ``Authorization: Bearer <CRON_SECRET>``."""
    secret = state.settings.cron_secret
    if not secret or authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _parse_service(value: str) -> ServiceType:
    try:
        return ServiceType(value.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid service: {value}")


def _parse_admin_type(value: str) -> TransactionType:
    try:
        return TransactionType(value.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid transaction type: {value}")


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="postgres" if state.db.is_postgres else "sqlite",
        uptime_seconds=uptime,
    )


@router.get("/tenants/{tenant_id}/credits", tags=["Ledger"])
def get_credits(
    tenant_id: str,
    limit: int = 50,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Current balance and the most recent transactions."""
    transactions = state.ledger.list_transactions(tenant_id, limit=min(limit, 500))
    return {
        "tenant_id": tenant_id,
        "balance": state.ledger.get_balance(tenant_id),
        "transactions": [t.to_dict() for t in transactions],
    }


@router.post("/tenants/{tenant_id}/credits/adjust", tags=["Ledger"])
def adjust_credits(
    tenant_id: str,
    request: AdjustCreditsRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Administrative credit or debit."""
    result = state.ledger.admin_adjust(
        tenant_id,
        request.amount,
        _parse_admin_type(request.type),
        request.reason,
        override=request.override,
    )
    return result.to_dict()


@router.post("/usage/authorize", tags=["Usage"])
def authorize_usage(
    request: AuthorizeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Check the tenant can afford to start a call or send an SMS.

    Returns 402 with ``required`` and ``available`` when it cannot.
    Nothing is reserved.
    """
    authorization = state.authorizer.pre_authorize(
        request.tenant_id,
        _parse_service(request.service),
        request.estimated_cost,
    )
    return authorization.to_dict()


@router.post("/usage/calls/completed", tags=["Usage"])
def call_completed(
    request: CallCompletedRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settle a finished call. Replays of the same ``call_id`` are no-ops."""
    result = state.authorizer.settle_call(
        request.tenant_id,
        request.call_id,
        duration_seconds=request.duration_seconds,
        started_at=request.started_at,
        ended_at=request.ended_at,
    )
    return result.to_dict()


@router.post("/usage/sms/completed", tags=["Usage"])
def sms_completed(
    request: SmsCompletedRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settle a sent SMS. Replays of the same ``message_id`` are no-ops."""
    result = state.authorizer.settle_sms(request.tenant_id, request.message_id, request.segments)
    return result.to_dict()


@router.get("/credit-packages", tags=["Billing"])
def list_credit_packages(state: AppState = Depends(get_state)):
    """Active credit packages, smallest first."""
    return {"packages": [p.to_dict() for p in state.packages.list_active()]}


@router.post("/tenants/{tenant_id}/purchases", tags=["Billing"])
def create_purchase(
    tenant_id: str,
    request: PurchaseRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Start a credit purchase.

    Without ``payment_method_id`` the response carries a ``client_secret`` to
    confirm client side; credits arrive with the processor webhook.
    """
    result = state.reconciler.initiate_purchase(
        tenant_id,
        package_id=request.package_id,
        payment_method_id=request.payment_method_id,
        off_session=request.payment_method_id is not None,
    )
    return result.to_dict()


@router.get("/tenants/{tenant_id}/auto-recharge", tags=["Billing"])
def get_auto_recharge(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    settings = state.auto_recharge.get_settings(tenant_id)
    return {"settings": settings.to_dict() if settings else None}


@router.put("/tenants/{tenant_id}/auto-recharge", tags=["Billing"])
def update_auto_recharge(
    tenant_id: str,
    request: AutoRechargeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    settings = state.auto_recharge.update_settings(
        tenant_id,
        enabled=request.enabled,
        minimum_balance=request.minimum_balance,
        recharge_amount=request.recharge_amount,
        payment_method_id=request.payment_method_id,
    )
    return {"settings": settings.to_dict(), "success": True}


@router.post("/tenants/{tenant_id}/auto-recharge/trigger", tags=["Billing"])
def trigger_auto_recharge(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Evaluate auto-recharge now, subject to the same cooldown as automatic triggers."""
    return state.auto_recharge.evaluate(tenant_id, triggered_by="manual").to_dict()


@router.get("/tenants/{tenant_id}/payment-methods", tags=["Billing"])
def list_payment_methods(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    methods = state.reconciler.list_payment_methods(tenant_id)
    return {"payment_methods": [m.to_dict() for m in methods]}


@router.post("/tenants/{tenant_id}/payment-methods", tags=["Billing"])
def add_payment_method(
    tenant_id: str,
    request: PaymentMethodRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    method = state.reconciler.add_payment_method(
        tenant_id,
        request.payment_method_id,
        make_default=request.make_default,
    )
    return {"payment_method": method.to_dict()}


@router.delete("/tenants/{tenant_id}/payment-methods/{method_id}", tags=["Billing"])
def remove_payment_method(
    tenant_id: str,
    method_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    state.reconciler.remove_payment_method(tenant_id, method_id)
    return {"success": True}


@router.post("/tenants/{tenant_id}/subscriptions", tags=["Billing"])
def create_subscription(
    tenant_id: str,
    request: SubscriptionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    subscription = state.scheduler.create_subscription(
        tenant_id,
        request.resource,
        request.monthly_cost,
        next_billing_date=request.next_billing_date,
        setup_cost=request.setup_cost,
    )
    setup_cost = state.settings.phone_number_setup_credits if request.setup_cost is None else request.setup_cost
    return {"subscription": subscription.to_dict(), "credits_deducted": setup_cost}


@router.get("/tenants/{tenant_id}/subscriptions", tags=["Billing"])
def list_subscriptions(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    subscriptions = state.scheduler.list_subscriptions(tenant_id)
    return {"subscriptions": [s.to_dict() for s in subscriptions]}


@router.get("/tenants/{tenant_id}/notification-preferences", tags=["Notifications"])
def get_notification_preferences(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"preferences": state.monitor.get_preferences(tenant_id).to_dict()}


@router.put("/tenants/{tenant_id}/notification-preferences", tags=["Notifications"])
def update_notification_preferences(
    tenant_id: str,
    request: NotificationPreferencesRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    preferences = state.monitor.update_preferences(
        tenant_id,
        low_balance_threshold=request.low_balance_threshold,
        email_enabled=request.email_enabled,
        notification_email=request.notification_email,
    )
    return {"success": True, "preferences": preferences.to_dict()}


@router.get("/tenants/{tenant_id}/balance-check", tags=["Notifications"])
def balance_check(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.monitor.check(tenant_id).to_dict()


@router.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """
    Payment processor webhook.

    Authenticated by signature only. A 500 asks the processor to re-deliver;
    re-delivery is absorbed by the ledger's reference id.
    """
    payload = await request.body()
    return await run_in_threadpool(state.reconciler.handle_webhook, payload, stripe_signature)


@router.api_route("/cron/tick", methods=["GET", "POST"], tags=["Scheduler"])
def cron_tick(
    state: AppState = Depends(get_state),
    _: None = Depends(verify_cron_secret),
):
    """Run the billing cycle, the auto-recharge sweep and drain the notification outbox."""
    now = datetime.now(timezone.utc)
    cycle = state.scheduler.run_cycle(now)
    sweep = state.auto_recharge.sweep(now)
    notifications = state.outbox.drain()
    return {
        "billing_cycle": cycle.to_dict(),
        "auto_recharge": sweep.to_dict(),
        "notifications": notifications.to_dict(),
        "ran_at": now.isoformat(),
    }


@router.get("/reconciliation", tags=["Audit"])
def list_reconciliation(
    status: str = "open",
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Manual review queue."""
    try:
        parsed = ReconciliationStatus(status.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    items = state.reconciler.list_reconciliation(parsed)
    return {"total": len(items), "items": [i.to_dict() for i in items]}


@router.post("/reconciliation/{item_id}/resolve", tags=["Audit"])
def resolve_reconciliation(
    item_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"item": state.reconciler.resolve_reconciliation(item_id).to_dict()}


# ============================================================================
# Error Handlers
# ============================================================================

def _install_error_handlers(application: FastAPI) -> None:

    @application.exception_handler(InsufficientCredits)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCredits):
        return JSONResponse(status_code=402, content=exc.to_dict())

    @application.exception_handler(PaymentProviderError)
    async def payment_provider_handler(request: Request, exc: PaymentProviderError):
        return JSONResponse(
            status_code=402 if exc.is_decline else 502,
            content={"error": "Payment failed", "detail": str(exc), "code": exc.code},
        )

    @application.exception_handler(WebhookSignatureError)
    async def webhook_signature_handler(request: Request, exc: WebhookSignatureError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @application.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @application.exception_handler(ReconciliationInconsistency)
    async def reconciliation_handler(request: Request, exc: ReconciliationInconsistency):
        return JSONResponse(
            status_code=500,
            content={"error": "Reconciliation required", "external_id": exc.external_id},
        )

    @application.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": str(exc)})


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    processor: Optional[PaymentProcessor] = None,
    sender: Optional[NotificationSender] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        """Application lifespan handler."""
        logger.info("credit_rail_starting", version=VERSION)
        application.state.rail = AppState(config, processor=processor, sender=sender)
        yield
        application.state.rail.close()
        logger.info("credit_rail_stopping")

    application = FastAPI(
        title="Credit Rail",
        description="""
# Prepaid Credit Ledger

Meters voice minutes, SMS and recurring phone-number rent against a
per-tenant prepaid balance, and reconciles Stripe payments into it.

## Features
- **Append-only ledger**: balance is always the sum of transactions
- **Idempotent settlement**: usage callbacks and webhooks may be replayed
- **Auto-recharge**: off-session top-up with a per-tenant cooldown
- **Billing cycle**: monthly charges with suspension on insufficient balance
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _install_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
