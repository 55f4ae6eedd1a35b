"""Notification fan-out for audit failures and score regressions."""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import List, Optional, Sequence

from ..orchestrator.models import Severity
from .channels import LogChannel, Notification, NotificationChannel


logger = logging.getLogger(__name__)


class NotificationService:
    """Delivers each notification to every available channel.

    Channel failures are logged and never raised to the caller.
    """

    def __init__(self, channels: Optional[Sequence[NotificationChannel]] = None) -> None:
        self._channels: List[NotificationChannel] = list(channels) if channels else [LogChannel()]

    @property
    def channels(self) -> List[NotificationChannel]:
        return list(self._channels)

    async def notify(self, notification: Notification) -> int:
        """Send to all available channels concurrently.

        Returns:
            Number of channels that delivered successfully
        """
        channels = [channel for channel in self._channels if channel.is_available()]
        if not channels:
            logger.debug("No notification channels available", extra={"title": notification.title})
            return 0
        results = await asyncio.gather(
            *(channel.deliver(notification) for channel in channels),
            return_exceptions=True,
        )
        delivered = 0
        for channel, result in zip(channels, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Notification delivery failed",
                    extra={
                        "channel": channel.name,
                        "title": notification.title,
                        "error": str(result) or type(result).__name__,
                    },
                )
            else:
                delivered += 1
        return delivered

    async def notify_audit_failure(
        self,
        client_id: str,
        audit_type: str,
        run_id: str,
        error: BaseException,
    ) -> Notification:
        message = str(error) or type(error).__name__
        notification = Notification(
            title="Audit Failure",
            message=f"Audit failed for client {client_id}: {message}",
            severity=Severity.CRITICAL,
            client_id=client_id,
            audit_type=audit_type,
            run_id=run_id,
            metadata={
                "error": message,
                "stack": "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
            },
        )
        await self.notify(notification)
        return notification


class RegressionNotifier:
    """Alerts when a run's overall score drops against the previous run.

    Args:
        service: Where regression notifications are sent
        threshold: Drops strictly greater than this raise an alert
        critical_drop: Drops strictly greater than this are critical
    """

    def __init__(
        self,
        service: NotificationService,
        *,
        threshold: float = 10,
        critical_drop: float = 20,
    ) -> None:
        self._service = service
        self.threshold = threshold
        self.critical_drop = critical_drop

    def severity_for(self, previous_score: float, current_score: float) -> Optional[Severity]:
        """Severity of the drop, or None when no alert is due."""
        drop = previous_score - current_score
        if drop <= self.threshold:
            return None
        if drop > self.critical_drop:
            return Severity.CRITICAL
        return Severity.WARNING

    async def check(
        self,
        *,
        client_id: str,
        audit_type: str,
        run_id: str,
        previous_score: Optional[float],
        current_score: Optional[float],
    ) -> Optional[Notification]:
        if previous_score is None or current_score is None:
            return None
        severity = self.severity_for(previous_score, current_score)
        if severity is None:
            return None
        drop = previous_score - current_score
        notification = Notification(
            title="Audit Score Regression",
            message=(
                f"Audit score dropped by {_fmt(drop)} points "
                f"({_fmt(previous_score)} → {_fmt(current_score)})"
            ),
            severity=severity,
            client_id=client_id,
            audit_type=audit_type,
            run_id=run_id,
            metadata={
                "previous_score": previous_score,
                "current_score": current_score,
                "score_drop": drop,
            },
        )
        logger.warning(
            "Score regression detected",
            extra={"run_id": run_id, "score_drop": drop, "severity": severity.value},
        )
        await self._service.notify(notification)
        return notification


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"
