"""
Notification outbox.

Ledger-side code only ever writes a row to ``notifications``; delivery happens
later, when the cron tick drains the outbox through a ``NotificationSender``.
A failed enqueue is logged and counted but never fails the ledger operation
that produced it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import threading

import httpx
import structlog

from core.types import NotificationStatus
from persistence.database import Database
from persistence.models import Notification, to_iso
from persistence.repository import NotificationRepository

logger = structlog.get_logger()


class NotificationSender(ABC):
    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver one notification. Raise on failure."""


class LogNotificationSender(NotificationSender):
    """Used when no delivery endpoint is configured."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "notification_delivered_to_log",
            notification_id=notification.id,
            kind=notification.kind,
            tenant_id=notification.tenant_id,
            payload=notification.payload,
        )


class WebhookNotificationSender(NotificationSender):
    """POST each notification as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, notification: Notification) -> None:
        response = self._client.post(
            self.url,
            json={
                "id": notification.id,
                "kind": notification.kind,
                "tenant_id": notification.tenant_id,
                "payload": notification.payload,
                "created_at": to_iso(notification.created_at),
            },
            headers={"Idempotency-Key": notification.id},
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


@dataclass
class DrainReport:
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "retrying": self.retrying,
            "failed": self.failed,
            "errors": self.errors,
        }


class NotificationOutbox:
    """
    Durable notification queue.

    Usage:
        outbox = NotificationOutbox(db, WebhookNotificationSender(url))
        outbox.enqueue("low_balance", "t1", {"tenant_id": "t1", "balance": 40, "threshold": 100})
        outbox.drain()
    """

    def __init__(
        self,
        db: Database,
        sender: Optional[NotificationSender] = None,
        max_attempts: int = 5,
    ):
        self.notifications = NotificationRepository(db)
        self.sender = sender or LogNotificationSender()
        self.max_attempts = max_attempts
        self._lock = threading.Lock()
        self.enqueue_failures = 0

    def enqueue(self, kind: str, tenant_id: str, payload: Dict[str, Any]) -> Optional[Notification]:
        try:
            notification = self.notifications.enqueue(kind, tenant_id, payload)
        except Exception as e:
            with self._lock:
                self.enqueue_failures += 1
            logger.error(
                "notification_enqueue_failed",
                kind=kind,
                tenant_id=tenant_id,
                error=str(e),
                failures=self.enqueue_failures,
            )
            return None

        logger.info("notification_enqueued", notification_id=notification.id, kind=kind, tenant_id=tenant_id)
        return notification

    def drain(self, limit: int = 100) -> DrainReport:
        """Attempt delivery of pending notifications, oldest first."""
        report = DrainReport()
        for notification in self.notifications.pending(limit):
            try:
                self.sender.send(notification)
            except Exception as e:
                status = self.notifications.record_failure(notification, str(e), self.max_attempts)
                if status is NotificationStatus.FAILED:
                    report.failed += 1
                else:
                    report.retrying += 1
                report.errors.append({"notification_id": notification.id, "error": str(e)})
                logger.warning(
                    "notification_delivery_failed",
                    notification_id=notification.id,
                    attempts=notification.attempts + 1,
                    status=status.value,
                    error=str(e),
                )
                continue

            self.notifications.mark_sent(notification.id)
            report.sent += 1

        if report.sent or report.errors:
            logger.info(
                "notification_outbox_drained",
                sent=report.sent,
                retrying=report.retrying,
                failed=report.failed,
            )
        return report
