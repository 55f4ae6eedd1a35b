"""Notification delivery channels.

- Slack: incoming webhook with a colour-coded attachment
- Log: structured log line, always available
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..orchestrator.models import Severity

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    Severity.CRITICAL: "#ff0000",
    Severity.WARNING: "#ffaa00",
    Severity.INFO: "#36a64f",
}

_LOG_LEVELS = {
    Severity.CRITICAL: logging.ERROR,
    Severity.WARNING: logging.WARNING,
    Severity.INFO: logging.INFO,
}


@dataclass
class Notification:
    """A notification to be delivered.

    Attributes:
        title: Short headline
        message: Body text
        severity: info, warning or critical
        client_id: Client the notification concerns, if any
        audit_type: Audit type the notification concerns, if any
        run_id: Audit run the notification concerns, if any
        metadata: Additional context (scores, error details)
        created_at: When the notification was created
    """

    title: str
    message: str
    severity: Severity = Severity.INFO
    client_id: Optional[str] = None
    audit_type: Optional[str] = None
    run_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "client_id": self.client_id,
            "audit_type": self.audit_type,
            "run_id": self.run_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    name: str = "channel"

    @abstractmethod
    async def deliver(self, notification: Notification) -> None:
        """Deliver a notification through this channel.

        Raises:
            Exception: Delivery failed; the service logs and moves on
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this channel is configured for delivery."""


class SlackChannel(NotificationChannel):
    """Posts notifications to a Slack incoming webhook."""

    name = "slack"

    def __init__(
        self,
        webhook_url: Optional[str],
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self.webhook_url)

    @staticmethod
    def build_payload(notification: Notification) -> Dict[str, Any]:
        fields = [
            {"title": "Message", "value": notification.message, "short": False},
            {"title": "Severity", "value": notification.severity.value.upper(), "short": True},
        ]
        if notification.client_id:
            fields.append({"title": "Client ID", "value": notification.client_id, "short": True})
        if notification.audit_type:
            fields.append({"title": "Audit Type", "value": notification.audit_type, "short": True})
        if notification.run_id:
            fields.append({"title": "Run ID", "value": notification.run_id, "short": True})
        return {
            "text": notification.title,
            "attachments": [
                {
                    "color": SEVERITY_COLORS[notification.severity],
                    "fields": fields,
                    "ts": int(notification.created_at.timestamp()),
                }
            ],
        }

    async def deliver(self, notification: Notification) -> None:
        if not self.webhook_url:
            return
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.webhook_url, json=self.build_payload(notification))
            response.raise_for_status()
        logger.debug("Slack notification sent", extra={"title": notification.title})


class LogChannel(NotificationChannel):
    """Writes notifications to the log at a level matching their severity."""

    name = "log"

    def is_available(self) -> bool:
        return True

    async def deliver(self, notification: Notification) -> None:
        logger.log(
            _LOG_LEVELS[notification.severity],
            notification.title,
            extra={
                "notification_message": notification.message,
                "severity": notification.severity.value,
                "client_id": notification.client_id,
                "audit_type": notification.audit_type,
                "run_id": notification.run_id,
            },
        )
