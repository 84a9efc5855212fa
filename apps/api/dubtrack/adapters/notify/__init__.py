"""Notification sinks for job and pipeline progress."""

from .sinks import (
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
    publish_safely,
)

__all__ = [
    "LoggingNotificationSink",
    "NotificationSink",
    "WebhookNotificationSink",
    "publish_safely",
]
