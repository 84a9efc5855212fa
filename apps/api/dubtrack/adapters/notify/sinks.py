"""Publish-only notification sinks.

Delivery is fire-and-forget: ``publish_safely`` is the only way callers emit
events, and it never lets a sink failure reach the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    def publish(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver one event."""


class LoggingNotificationSink(NotificationSink):
    """Writes every event to the service log."""

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notify.event event=%s keys=%s", event, ",".join(sorted(payload)))


class WebhookNotificationSink(NotificationSink):
    """POSTs events as JSON to a single webhook URL."""

    def __init__(self, url: str, *, timeout: float = 5.0, transport: httpx.BaseTransport | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        body = {"event": event, "emitted_at": datetime.now(UTC).isoformat(), "payload": payload}
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            response = client.post(self._url, json=body)
            response.raise_for_status()


def publish_safely(sink: NotificationSink | None, event: str, payload: dict[str, Any]) -> None:
    if sink is None:
        return
    try:
        sink.publish(event, payload)
    except Exception as exc:
        logger.warning("notify.failed event=%s reason=%s", event, type(exc).__name__)
