"""
Tests for the Stripe client that run without network access.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from billing.stripe_integration import CardDetails, PaymentIntentResult, StripeIntegration
from core.errors import PaymentProviderError, WebhookSignatureError

SECRET = "whsec_test_secret"


class FakePaymentIntents:
    """Stands in for ``StripeClient.v1.payment_intents``."""

    def __init__(self):
        self.calls = []
        self.create_errors = []
        self.search_results = []

    def create(self, params=None, options=None):
        self.calls.append(("create", options["idempotency_key"]))
        if self.create_errors:
            raise self.create_errors.pop(0)
        return {
            "id": "pi_created",
            "status": "succeeded",
            "amount": params["amount"],
            "customer": params["customer"],
            "metadata": params["metadata"],
        }

    def search(self, params=None, options=None):
        self.calls.append(("search", params["query"]))
        return SimpleNamespace(data=self.search_results)


@pytest.fixture
def intents():
    return FakePaymentIntents()


@pytest.fixture
def integration(intents):
    client = SimpleNamespace(v1=SimpleNamespace(payment_intents=intents))
    return StripeIntegration(client=client)


def _charge(integration):
    return integration.create_payment_intent(
        1130,
        "usd",
        "cus_1",
        {"tenant_id": "t1", "charge_key": "chg_1"},
        idempotency_key="chg_1",
        payment_method_id="pm_1",
        off_session=True,
        confirm=True,
    )


def _sign(payload: bytes, secret: str = SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestConfiguration:

    def test_unconfigured_client_refuses_calls(self):
        client = StripeIntegration(api_key=None)

        assert not client.is_available
        with pytest.raises(PaymentProviderError) as exc:
            client.create_customer("t1")
        assert exc.value.code == "not_configured"

    def test_client_built_from_api_key(self):
        integration = StripeIntegration(api_key="sk_test_123")

        assert integration.is_available
        assert isinstance(integration._client, stripe.StripeClient)
        assert stripe.api_key != "sk_test_123"


class TestChargeTimeouts:
    """A timed-out create is looked up before it is retried."""

    def test_timeout_then_found_does_not_create_again(self, integration, intents):
        intents.create_errors.append(stripe.APIConnectionError("Read timed out"))
        intents.search_results = [{"id": "pi_existing", "status": "succeeded", "amount": 1130,
                                   "metadata": {"charge_key": "chg_1"}}]

        result = _charge(integration)

        assert result.id == "pi_existing"
        assert [call[0] for call in intents.calls] == ["create", "search"]
        assert intents.calls[1][1] == "metadata['charge_key']:'chg_1'"

    def test_timeout_not_found_retries_with_same_key(self, integration, intents):
        intents.create_errors.append(stripe.APIConnectionError("Read timed out"))

        result = _charge(integration)

        assert result.id == "pi_created"
        assert intents.calls == [
            ("create", "chg_1"),
            ("search", "metadata['charge_key']:'chg_1'"),
            ("create", "chg_1"),
        ]

    def test_repeated_timeouts_leave_status_unknown(self, integration, intents):
        intents.create_errors.extend([
            stripe.APIConnectionError("Read timed out"),
            stripe.APIConnectionError("Read timed out"),
        ])

        with pytest.raises(PaymentProviderError) as exc:
            _charge(integration)

        assert exc.value.code == "timeout"
        assert exc.value.retryable
        assert [call[0] for call in intents.calls] == ["create", "search", "create", "search"]
        assert {call[1] for call in intents.calls if call[0] == "create"} == {"chg_1"}


class TestCardDecline:

    def test_decline_carries_intent_id(self, integration, intents):
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        error.error = {
            "code": "card_declined",
            "payment_intent": {"id": "pi_declined", "status": "requires_payment_method"},
        }
        intents.create_errors.append(error)

        with pytest.raises(PaymentProviderError) as exc:
            _charge(integration)

        assert exc.value.code == "card_declined"
        assert exc.value.is_decline
        assert exc.value.external_id == "pi_declined"
        assert not exc.value.retryable
        assert [call[0] for call in intents.calls] == ["create"]

    def test_decline_without_intent(self, integration, intents):
        intents.create_errors.append(stripe.CardError("Your card was declined.", None, "card_declined"))

        with pytest.raises(PaymentProviderError) as exc:
            _charge(integration)

        assert exc.value.code == "card_declined"
        assert exc.value.external_id is None


class TestWebhookVerification:
    """Signature check against the shared secret."""

    def _payload(self):
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "object": "payment_intent", "status": "succeeded"}},
        }).encode()

    def test_valid_signature(self):
        payload = self._payload()
        event = StripeIntegration(webhook_secret=SECRET).construct_event(payload, _sign(payload))

        assert event.id == "evt_1"
        assert event.type == "payment_intent.succeeded"
        assert event.data["id"] == "pi_1"

    def test_wrong_secret(self):
        payload = self._payload()

        with pytest.raises(WebhookSignatureError):
            StripeIntegration(webhook_secret=SECRET).construct_event(payload, _sign(payload, "whsec_other"))

    def test_missing_secret(self):
        payload = self._payload()

        with pytest.raises(WebhookSignatureError):
            StripeIntegration().construct_event(payload, _sign(payload))


class TestResultParsing:

    def test_intent_from_event_object(self):
        intent = PaymentIntentResult.from_stripe({
            "id": "pi_1",
            "status": "requires_payment_method",
            "amount": 1130,
            "customer": "cus_1",
            "payment_method": {"id": "pm_1"},
            "metadata": {"tenant_id": "t1", "credits": "1000"},
            "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds",
                                   "message": "Your card has insufficient funds."},
        })

        assert not intent.succeeded
        assert intent.payment_method_id == "pm_1"
        assert intent.failure_code == "insufficient_funds"
        assert intent.metadata["credits"] == "1000"

    def test_card_details(self):
        card = CardDetails.from_stripe({
            "id": "pm_1",
            "customer": "cus_1",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 4, "exp_year": 2031},
        })

        assert card.last4 == "4242"
        assert card.exp_year == 2031

    def test_non_card_method(self):
        assert CardDetails.from_stripe({"id": "pm_bank", "type": "us_bank_account"}).last4 is None
