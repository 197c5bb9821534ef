"""
Tests for the notification outbox and its senders.
"""

import json

import httpx
import pytest

from billing.notifications import NotificationOutbox, WebhookNotificationSender
from core.types import NotificationStatus
from persistence.models import Notification
from persistence.repository import NotificationRepository


class TestOutbox:
    """Durable enqueue, drained later."""

    def test_enqueue_then_drain(self, outbox, sender, db):
        outbox.enqueue("low_balance", "t1", {"tenant_id": "t1", "balance": 40, "threshold": 100})

        report = outbox.drain()

        assert report.sent == 1
        assert sender.sent[0].payload["balance"] == 40
        stored = NotificationRepository(db).list_for_tenant("t1")[0]
        assert stored.status is NotificationStatus.SENT
        assert outbox.drain().sent == 0

    def test_failed_delivery_retried_then_abandoned(self, outbox, sender, db):
        outbox.enqueue("low_balance", "t1", {"tenant_id": "t1", "balance": 0, "threshold": 100})
        sender.fail = True

        first = outbox.drain()
        second = outbox.drain()
        third = outbox.drain()

        assert first.retrying == 1
        assert second.retrying == 1
        assert third.failed == 1
        stored = NotificationRepository(db).list_for_tenant("t1")[0]
        assert stored.status is NotificationStatus.FAILED
        assert stored.attempts == 3
        assert outbox.drain().errors == []

    def test_recovered_sender_delivers(self, outbox, sender):
        outbox.enqueue("low_balance", "t1", {"tenant_id": "t1", "balance": 0, "threshold": 100})
        sender.fail = True
        outbox.drain()

        sender.fail = False
        report = outbox.drain()

        assert report.sent == 1

    def test_enqueue_failure_is_swallowed_and_counted(self, db, sender, monkeypatch):
        outbox = NotificationOutbox(db, sender)

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(outbox.notifications, "enqueue", broken)

        assert outbox.enqueue("low_balance", "t1", {"tenant_id": "t1"}) is None
        assert outbox.enqueue_failures == 1


class TestWebhookSender:
    """HTTP delivery."""

    def test_posts_json_with_idempotency_key(self, outbox, db):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        outbox.sender = WebhookNotificationSender("https://hooks.example.com/credits", client=client)
        notification = outbox.enqueue("low_balance", "t1", {"tenant_id": "t1", "balance": 10, "threshold": 100})

        report = outbox.drain()

        assert report.sent == 1
        request = captured[0]
        assert request.headers["Idempotency-Key"] == notification.id
        body = json.loads(request.content)
        assert body["kind"] == "low_balance"
        assert body["payload"]["balance"] == 10

    def test_error_status_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        sender = WebhookNotificationSender("https://hooks.example.com/credits", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            sender.send(Notification(id="ntf_1", kind="low_balance", tenant_id="t1", payload={}))
