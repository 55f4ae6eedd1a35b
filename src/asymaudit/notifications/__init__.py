"""Failure and regression notifications."""

from .channels import LogChannel, Notification, NotificationChannel, SlackChannel
from .service import NotificationService, RegressionNotifier

__all__ = [
    "LogChannel",
    "Notification",
    "NotificationChannel",
    "NotificationService",
    "RegressionNotifier",
    "SlackChannel",
]
