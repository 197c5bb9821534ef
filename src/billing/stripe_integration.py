"""
Stripe Integration for the Credit Rail

Integrates with Stripe for:
- Processor customers per tenant
- One-off and off-session payment intents (credit purchases, auto-recharge)
- Saved payment methods
- Webhook signature verification

Services depend on the ``PaymentProcessor`` interface; ``StripeIntegration``
is the production implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import json

import stripe
import structlog

from core.config import Settings
from core.errors import PaymentProviderError, WebhookSignatureError

logger = structlog.get_logger()


@dataclass
class PaymentIntentResult:
    """Processor view of a payment intent."""
    id: str
    status: str
    amount_cents: int
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def from_stripe(cls, intent: Any) -> "PaymentIntentResult":
        payment_method = intent.get("payment_method")
        if isinstance(payment_method, dict):
            payment_method = payment_method.get("id")
        error = intent.get("last_payment_error") or {}
        return cls(
            id=intent["id"],
            status=intent["status"],
            amount_cents=int(intent.get("amount") or 0),
            customer_id=intent.get("customer"),
            payment_method_id=payment_method,
            metadata=dict(intent.get("metadata") or {}),
            failure_code=error.get("decline_code") or error.get("code"),
            failure_message=error.get("message"),
            client_secret=intent.get("client_secret"),
        )


@dataclass
class CardDetails:
    """Card metadata of a saved payment method."""
    external_id: str
    customer_id: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    @classmethod
    def from_stripe(cls, method: Any) -> "CardDetails":
        card = method.get("card") or {}
        return cls(
            external_id=method["id"],
            customer_id=method.get("customer"),
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )


@dataclass
class WebhookEvent:
    """Verified webhook event with its ``data.object`` as a plain dict."""
    id: str
    type: str
    data: Dict[str, Any]


class PaymentProcessor(ABC):
    """Narrow interface to the external payment processor."""

    @abstractmethod
    def create_customer(self, tenant_id: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """Create a customer and return its processor id."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        payment_method_id: Optional[str] = None,
        off_session: bool = False,
        confirm: bool = False,
    ) -> PaymentIntentResult:
        """Create (and optionally confirm) a payment intent."""

    @abstractmethod
    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        ...

    @abstractmethod
    def find_payment_intent(self, charge_key: str) -> Optional[PaymentIntentResult]:
        """Look up an intent by the ``charge_key`` we put in its metadata."""

    @abstractmethod
    def retrieve_payment_method(self, external_id: str) -> CardDetails:
        ...

    @abstractmethod
    def attach_payment_method(self, external_id: str, customer_id: str) -> CardDetails:
        ...

    @abstractmethod
    def detach_payment_method(self, external_id: str) -> None:
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify the signature and decode the event, or raise WebhookSignatureError."""


class StripeIntegration(PaymentProcessor):
    """
    Stripe-backed payment processor.

    Charge creation is keyed by our own ``idempotency_key`` so a retry after a
    timeout can never produce a second charge. On a connection failure the
    intent is first searched by ``charge_key`` metadata; only if it is not
    found is the create retried, once, with the same key.

    Each instance owns its ``stripe.StripeClient``; the module-level
    ``stripe.api_key`` is never set.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        max_network_retries: int = 2,
        client: Optional[stripe.StripeClient] = None,
    ):
        """
        Initialize Stripe integration.

        Args:
            api_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            max_network_retries: SDK-level retries for idempotent requests
            client: preconfigured client, used instead of building one from ``api_key``
        """
        self.webhook_secret = webhook_secret
        self._client = client

        if self._client is None and api_key:
            self._client = stripe.StripeClient(api_key, max_network_retries=max_network_retries)

        if self._client is not None:
            logger.info("stripe_integration_initialized")
        else:
            logger.warning("stripe_not_configured", api_key_set=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeIntegration":
        return cls(api_key=settings.stripe_api_key, webhook_secret=settings.stripe_webhook_secret)

    @property
    def is_available(self) -> bool:
        """Check if Stripe integration is available."""
        return self._client is not None

    def _require_configured(self) -> stripe.StripeClient:
        if self._client is None:
            raise PaymentProviderError("Stripe is not configured", code="not_configured")
        return self._client

    def create_customer(self, tenant_id: str, metadata: Optional[Dict[str, str]] = None) -> str:
        client = self._require_configured()
        try:
            customer = client.v1.customers.create(
                params={
                    "metadata": {
                        "tenant_id": tenant_id,
                        "source": "credit_rail",
                        **(metadata or {}),
                    },
                },
                options={"idempotency_key": f"customer-{tenant_id}"},
            )
        except stripe.StripeError as e:
            logger.error("stripe_customer_create_failed", tenant_id=tenant_id, error=str(e))
            raise PaymentProviderError(f"Failed to create customer: {e}", code=e.code) from e

        logger.info("stripe_customer_created", customer_id=customer.id, tenant_id=tenant_id)
        return customer.id

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        payment_method_id: Optional[str] = None,
        off_session: bool = False,
        confirm: bool = False,
    ) -> PaymentIntentResult:
        client = self._require_configured()
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "customer": customer_id,
            "metadata": metadata,
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if off_session:
            params["off_session"] = True
        if confirm:
            params["confirm"] = True
        if not confirm:
            params["automatic_payment_methods"] = {"enabled": True}

        charge_key = metadata.get("charge_key", idempotency_key)
        for attempt in (1, 2):
            try:
                intent = client.v1.payment_intents.create(
                    params=params,
                    options={"idempotency_key": idempotency_key},
                )
                result = PaymentIntentResult.from_stripe(intent)
                logger.info(
                    "stripe_payment_intent_created",
                    external_payment_id=result.id,
                    charge_key=charge_key,
                    status=result.status,
                )
                return result
            except stripe.CardError as e:
                error = getattr(e, "error", None) or {}
                intent = error.get("payment_intent")
                external_id = intent.get("id") if intent else None
                logger.warning(
                    "stripe_card_declined",
                    charge_key=charge_key,
                    external_payment_id=external_id,
                    code=e.code,
                )
                raise PaymentProviderError(
                    e.user_message or str(e),
                    code="card_declined",
                    external_id=external_id,
                ) from e
            except stripe.APIConnectionError as e:
                logger.warning(
                    "stripe_payment_intent_timeout",
                    charge_key=charge_key,
                    attempt=attempt,
                    error=str(e),
                )
                found = self.find_payment_intent(charge_key)
                if found is not None:
                    return found
            except stripe.StripeError as e:
                logger.error("stripe_payment_intent_failed", charge_key=charge_key, error=str(e))
                raise PaymentProviderError(f"Payment failed: {e}", code=e.code) from e

        raise PaymentProviderError(
            f"Charge status unknown for {charge_key}",
            code="timeout",
            retryable=True,
        )

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        client = self._require_configured()
        try:
            return PaymentIntentResult.from_stripe(client.v1.payment_intents.retrieve(intent_id))
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to retrieve payment intent: {e}", code=e.code) from e

    def find_payment_intent(self, charge_key: str) -> Optional[PaymentIntentResult]:
        client = self._require_configured()
        try:
            page = client.v1.payment_intents.search(
                params={"query": f"metadata['charge_key']:'{charge_key}'", "limit": 1},
            )
        except stripe.StripeError as e:
            logger.warning("stripe_payment_intent_search_failed", charge_key=charge_key, error=str(e))
            return None
        if not page.data:
            return None
        return PaymentIntentResult.from_stripe(page.data[0])

    def retrieve_payment_method(self, external_id: str) -> CardDetails:
        client = self._require_configured()
        try:
            return CardDetails.from_stripe(client.v1.payment_methods.retrieve(external_id))
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to retrieve payment method: {e}", code=e.code) from e

    def attach_payment_method(self, external_id: str, customer_id: str) -> CardDetails:
        client = self._require_configured()
        try:
            method = client.v1.payment_methods.attach(external_id, params={"customer": customer_id})
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to attach payment method: {e}", code=e.code) from e
        logger.info("stripe_payment_method_attached", payment_method=external_id, customer_id=customer_id)
        return CardDetails.from_stripe(method)

    def detach_payment_method(self, external_id: str) -> None:
        client = self._require_configured()
        try:
            client.v1.payment_methods.detach(external_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to detach payment method: {e}", code=e.code) from e
        logger.info("stripe_payment_method_detached", payment_method=external_id)

    def construct_event(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise WebhookSignatureError("Webhook not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error("stripe_webhook_signature_invalid")
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.error("stripe_webhook_payload_invalid", error=str(e))
            raise WebhookSignatureError("Invalid webhook payload") from e

        body = json.loads(payload)
        event = WebhookEvent(id=body["id"], type=body["type"], data=body["data"]["object"])
        logger.info("stripe_webhook_received", event_type=event.type, event_id=event.id)
        return event
