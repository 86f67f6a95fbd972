"""
Notification sink collaborator.

Operations emit notifications after their transaction commits. Delivery is
fire-and-forget: `safe_notify` logs and counts failures, it never raises.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from engine_orchestrator.config import settings
from engine_orchestrator.models.enums import NotificationType, Severity
from engine_orchestrator.observability.metrics import notifications_failed_total

logger = structlog.get_logger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    async def notify(
        self,
        notification_type: NotificationType,
        severity: Severity,
        title: str,
        message: str,
        metadata: Optional[dict] = None,
    ) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the structured log."""

    async def notify(self, notification_type, severity, title, message, metadata=None) -> None:
        log = logger.warning if severity != Severity.INFO else logger.info
        log(
            "notification",
            notification_type=notification_type.value,
            severity=severity.value,
            title=title,
            message=message,
            metadata=metadata or {},
        )


class WebhookNotificationSink(NotificationSink):
    """POSTs a JSON body to a single webhook URL."""

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.url = url
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS

    async def notify(self, notification_type, severity, title, message, metadata=None) -> None:
        body = {
            "type": notification_type.value,
            "severity": severity.value,
            "title": title,
            "message": message,
            "metadata": metadata or {},
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


class RecordingNotificationSink(NotificationSink):
    """Keeps notifications in memory. Used by tests and dry runs."""

    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, notification_type, severity, title, message, metadata=None) -> None:
        self.sent.append({
            "type": notification_type,
            "severity": severity,
            "title": title,
            "message": message,
            "metadata": metadata or {},
        })


def build_notification_sink() -> NotificationSink:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotificationSink()


async def safe_notify(
    sink: Optional[NotificationSink],
    notification_type: NotificationType,
    severity: Severity,
    title: str,
    message: str,
    metadata: Optional[dict] = None,
) -> bool:
    """Deliver a notification; delivery failures never fail the caller."""
    if sink is None:
        return False
    try:
        await sink.notify(notification_type, severity, title, message, metadata)
        return True
    except Exception as e:
        notifications_failed_total.labels(notification_type=notification_type.value).inc()
        logger.error(
            "notification_failed",
            notification_type=notification_type.value,
            title=title,
            error=str(e),
        )
        return False
