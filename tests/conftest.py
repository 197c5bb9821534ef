"""
Pytest Configuration and Fixtures
"""

import json
import os
import sys
import threading
from typing import Dict, List, Optional

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

from billing.notifications import NotificationOutbox, NotificationSender
from billing.reconciler import PaymentReconciler
from billing.stripe_integration import CardDetails, PaymentIntentResult, PaymentProcessor, WebhookEvent
from billing.tax import TaxCalculator
from core.config import Settings
from core.errors import PaymentProviderError, WebhookSignatureError
from core.ledger import LedgerStore
from persistence.database import Database
from persistence.models import CreditPackage
from persistence.repository import CreditPackageRepository

VALID_SIGNATURE = "t=1,v1=valid"


class FakeProcessor(PaymentProcessor):
    """In-memory payment processor honouring idempotency keys."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counter = 0
        self.customers: Dict[str, str] = {}
        self.intents: Dict[str, PaymentIntentResult] = {}
        self.by_key: Dict[str, PaymentIntentResult] = {}
        self.cards: Dict[str, CardDetails] = {}
        self.detached: List[str] = []
        self.charge_calls: List[dict] = []
        self.declined_methods = set()
        self.timeout_next = False
        self.confirm_status = "succeeded"

    def add_card(self, external_id: str, brand: str = "visa", last4: str = "4242") -> CardDetails:
        card = CardDetails(external_id=external_id, brand=brand, last4=last4, exp_month=12, exp_year=2030)
        self.cards[external_id] = card
        return card

    def create_customer(self, tenant_id, metadata=None):
        with self._lock:
            return self.customers.setdefault(tenant_id, f"cus_{tenant_id}")

    def create_payment_intent(
        self,
        amount_cents,
        currency,
        customer_id,
        metadata,
        idempotency_key,
        payment_method_id=None,
        off_session=False,
        confirm=False,
    ):
        with self._lock:
            self.charge_calls.append({
                "amount_cents": amount_cents,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
                "payment_method_id": payment_method_id,
                "off_session": off_session,
            })
            if self.timeout_next:
                self.timeout_next = False
                raise PaymentProviderError("Charge status unknown", code="timeout", retryable=True)
            if idempotency_key in self.by_key:
                return self.by_key[idempotency_key]

            self._counter += 1
            intent_id = f"pi_test_{self._counter}"
            if payment_method_id in self.declined_methods:
                raise PaymentProviderError("Your card was declined.", code="card_declined", external_id=intent_id)

            intent = PaymentIntentResult(
                id=intent_id,
                status=self.confirm_status if confirm else "requires_payment_method",
                amount_cents=amount_cents,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                metadata=dict(metadata),
                client_secret=f"{intent_id}_secret",
            )
            self.intents[intent_id] = intent
            self.by_key[idempotency_key] = intent
            return intent

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    def find_payment_intent(self, charge_key):
        for intent in self.intents.values():
            if intent.metadata.get("charge_key") == charge_key:
                return intent
        return None

    def retrieve_payment_method(self, external_id):
        if external_id not in self.cards:
            raise PaymentProviderError(f"No such payment method: {external_id}", code="resource_missing")
        return self.cards[external_id]

    def attach_payment_method(self, external_id, customer_id):
        card = self.retrieve_payment_method(external_id)
        card.customer_id = customer_id
        return card

    def detach_payment_method(self, external_id):
        self.detached.append(external_id)

    def construct_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid webhook signature")
        body = json.loads(payload)
        return WebhookEvent(id=body["id"], type=body["type"], data=body["data"]["object"])


class RecordingSender(NotificationSender):
    """Captures delivered notifications; optionally fails."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, notification):
        if self.fail:
            raise RuntimeError("delivery endpoint unavailable")
        self.sent.append(notification)


def make_event(event_type: str, obj: dict, event_id: Optional[str] = None) -> bytes:
    """Serialized webhook delivery."""
    return json.dumps({
        "id": event_id or f"evt_{event_type}_{obj.get('id')}",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database per test."""
    database = Database(f"sqlite:///{tmp_path / 'credit_rail.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def ledger(db):
    return LedgerStore(db)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def outbox(db, sender):
    return NotificationOutbox(db, sender, max_attempts=3)


@pytest.fixture
def packages(db):
    """Catalogue: 1000 credits / $10, 2500 / $22.50, 5000 / $40."""
    repo = CreditPackageRepository(db)
    catalogue = [
        CreditPackage(id="pkg_1000", name="Starter", credits=1000, price_cents=1000),
        CreditPackage(id="pkg_2500", name="Growth", credits=2500, price_cents=2250),
        CreditPackage(id="pkg_5000", name="Pro", credits=5000, price_cents=4000),
    ]
    for package in catalogue:
        repo.upsert(package)
    return catalogue


@pytest.fixture
def reconciler(db, ledger, processor, packages):
    return PaymentReconciler(db, ledger, processor, TaxCalculator())


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        api_key="test-key-12345",
        cron_secret="cron-secret",
        stripe_webhook_secret="whsec_test",
    )
