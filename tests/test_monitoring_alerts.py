"""Tests for the alert system."""

import json
from unittest.mock import MagicMock, patch

import pytest

from order_engine.config import MonitoringConfig
from order_engine.monitoring.alerts import (
    AlertManager,
    ConsoleAlertSink,
    WebhookAlertSink,
    build_alert_manager,
)
from order_engine.notifications import Notification


def _notification(channels: tuple[str, ...] = ()) -> Notification:
    return Notification(
        event="stop-loss-triggered",
        title="Stop-Loss Triggered",
        body="Stop-loss executed for ETH.",
        order_id="order_1",
        channels=channels,
    )


class TestConsoleAlertSink:
    def test_sends_via_logger(self) -> None:
        sink = ConsoleAlertSink()
        with patch("order_engine.monitoring.alerts.logger") as mock_logger:
            sink.send(_notification())
            mock_logger.warning.assert_called_once()
            args = mock_logger.warning.call_args
            assert args[0][1] == "Stop-Loss Triggered"
            assert args[1]["extra"] == {"order_id": "order_1"}


class TestWebhookAlertSink:
    def test_posts_json_payload(self) -> None:
        sink = WebhookAlertSink("https://hooks.example.com/test")
        with patch("urllib.request.urlopen") as mock_urlopen:
            mock_urlopen.return_value.__enter__ = MagicMock()
            mock_urlopen.return_value.__exit__ = MagicMock()
            sink.send(_notification())
            mock_urlopen.assert_called_once()
            req = mock_urlopen.call_args[0][0]
            assert req.full_url == "https://hooks.example.com/test"
            payload = json.loads(req.data)
            assert payload["event"] == "stop-loss-triggered"
            assert payload["orderId"] == "order_1"
            assert payload["text"] == "Stop-Loss Triggered\n\nStop-loss executed for ETH."

    def test_handles_failure_gracefully(self) -> None:
        sink = WebhookAlertSink("https://hooks.example.com/fail")
        with patch("urllib.request.urlopen", side_effect=Exception("network error")):
            # Should not raise
            sink.send(_notification())


class TestChannels:
    def test_unrestricted_sink_accepts_everything(self) -> None:
        sink = ConsoleAlertSink()
        assert sink.accepts(_notification())
        assert sink.accepts(_notification(("telegram",)))

    def test_restricted_sink_needs_matching_channel(self) -> None:
        sink = WebhookAlertSink("https://hooks.example.com/tg", channels=["telegram"])
        assert sink.accepts(_notification(("telegram", "email")))
        assert not sink.accepts(_notification(("email",)))
        assert not sink.accepts(_notification())


class TestAlertManager:
    def test_dispatches_to_all_sinks(self) -> None:
        manager = AlertManager()
        sink_a = MagicMock()
        sink_b = MagicMock()
        manager.register(sink_a)
        manager.register(sink_b)
        notification = _notification()
        assert manager.alert(notification) == 2
        sink_a.send.assert_called_once_with(notification)
        sink_b.send.assert_called_once_with(notification)

    def test_skips_sinks_that_decline(self) -> None:
        manager = AlertManager()
        declining = MagicMock()
        declining.accepts.return_value = False
        manager.register(declining)
        assert manager.alert(_notification()) == 0
        declining.send.assert_not_called()

    def test_empty_manager_no_error(self) -> None:
        manager = AlertManager()
        assert manager.alert(_notification()) == 0

    def test_sink_count(self) -> None:
        manager = AlertManager()
        assert manager.sink_count == 0
        manager.register(ConsoleAlertSink())
        assert manager.sink_count == 1

    def test_continues_on_sink_failure(self) -> None:
        manager = AlertManager()
        failing_sink = MagicMock()
        failing_sink.send.side_effect = Exception("broken")
        good_sink = MagicMock()
        manager.register(failing_sink)
        manager.register(good_sink)
        notification = _notification()
        assert manager.alert(notification) == 1
        # Good sink should still be called despite first failing
        good_sink.send.assert_called_once_with(notification)


class TestBuildAlertManager:
    def test_console_only_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ORDER_ENGINE_ALERT_WEBHOOK", raising=False)
        assert build_alert_manager(MonitoringConfig()).sink_count == 1

    def test_webhooks_from_config_and_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ORDER_ENGINE_ALERT_WEBHOOK", "https://hooks.example.com/env")
        config = MonitoringConfig(alert_webhooks=["https://hooks.example.com/a", "https://hooks.example.com/env"])
        assert config.webhook_urls() == ["https://hooks.example.com/a", "https://hooks.example.com/env"]
        assert build_alert_manager(config).sink_count == 3
