"""Alert sinks for order event notifications."""

from __future__ import annotations

import json
import logging
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Iterable

from order_engine.config import MonitoringConfig
from order_engine.notifications import Notification

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    """Base class for alert destinations.

    A sink created with *channels* only receives notifications addressed to
    at least one of them; a sink without channels receives everything.
    """

    def __init__(self, *, channels: Iterable[str] | None = None) -> None:
        self.channels = frozenset(channels) if channels is not None else None

    def accepts(self, notification: Notification) -> bool:
        if self.channels is None:
            return True
        return bool(self.channels.intersection(notification.channels))

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver a notification."""


class ConsoleAlertSink(AlertSink):
    """Write alerts through the logging module."""

    def send(self, notification: Notification) -> None:
        logger.warning(
            "[ALERT] %s: %s", notification.title, notification.body, extra={"order_id": notification.order_id}
        )


class WebhookAlertSink(AlertSink):
    """POST alerts to a webhook URL as JSON."""

    def __init__(self, url: str, *, timeout: int = 10, channels: Iterable[str] | None = None) -> None:
        super().__init__(channels=channels)
        self._url = url
        self._timeout = timeout

    def send(self, notification: Notification) -> None:
        payload = json.dumps(
            {
                "text": notification.text,
                "event": notification.event,
                "orderId": notification.order_id,
                "title": notification.title,
                "body": notification.body,
            }
        ).encode()
        req = urllib.request.Request(
            self._url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout):  # noqa: S310
                pass
        except Exception:
            logger.exception("Failed to send webhook alert to %s", self._url)


class AlertManager:
    """Dispatch notifications to registered sinks."""

    def __init__(self) -> None:
        self._sinks: list[AlertSink] = []

    def register(self, sink: AlertSink) -> None:
        """Add an alert sink."""
        self._sinks.append(sink)

    def alert(self, notification: Notification) -> int:
        """Send *notification* to every sink that accepts it; returns how many succeeded."""
        delivered = 0
        for sink in self._sinks:
            if not sink.accepts(notification):
                continue
            try:
                sink.send(notification)
            except Exception:
                logger.exception("Alert sink %s failed", type(sink).__name__)
            else:
                delivered += 1
        return delivered

    @property
    def sink_count(self) -> int:
        """Number of registered sinks."""
        return len(self._sinks)


def build_alert_manager(config: MonitoringConfig) -> AlertManager:
    """Create an AlertManager with a console sink plus one sink per configured webhook."""
    manager = AlertManager()
    manager.register(ConsoleAlertSink())
    for url in config.webhook_urls():
        manager.register(WebhookAlertSink(url))
    return manager
