"""
Tests for notification dispatchers.
"""

from unittest.mock import Mock, patch

import pytest
import requests

from program_engine.notifications import (
    LoggingNotifier,
    MockNotifier,
    WebhookNotifier,
    get_notifier,
)


class TestMockNotifier:
    """Test cases for the in-memory notifier."""

    def test_send_records_message(self):
        notifier = MockNotifier()

        result = notifier.send("ada@example.com", "Hello", "welcome", {"name": "Ada"})

        assert result
        assert notifier.outbox[0]["to"] == "ada@example.com"
        assert notifier.outbox[0]["payload"] == {"name": "Ada"}
        assert notifier.channel == "mock"

    def test_empty_recipient_fails(self):
        notifier = MockNotifier()

        result = notifier.send("", "Hello", "welcome", {})

        assert not result
        assert result.error == "Recipient address is empty"
        assert notifier.outbox == []

    def test_clear(self):
        notifier = MockNotifier()
        notifier.send("ada@example.com", "Hello", "welcome", {})
        notifier.clear()
        assert notifier.outbox == []


class TestWebhookNotifier:
    """Test cases for the HTTP webhook notifier."""

    @pytest.fixture
    def notifier(self):
        return WebhookNotifier({"webhook_url": "https://hooks.example.com/notify", "timeout": 5,
                                "headers": {"X-Token": "abc"}})

    @patch("program_engine.notifications.webhook_notifier.requests.post")
    def test_successful_post(self, mock_post, notifier):
        mock_post.return_value = Mock(status_code=202)

        result = notifier.send("ada@example.com", "Offer", "offer", {"name": "Ada"})

        assert result.success
        mock_post.assert_called_once_with(
            "https://hooks.example.com/notify",
            json={"to": "ada@example.com", "subject": "Offer", "template": "offer", "payload": {"name": "Ada"}},
            headers={"X-Token": "abc"},
            timeout=5,
        )

    @patch("program_engine.notifications.webhook_notifier.requests.post")
    def test_http_error(self, mock_post, notifier):
        mock_post.return_value = Mock(status_code=500)

        result = notifier.send("ada@example.com", "Offer", "offer", {})

        assert not result.success
        assert result.error == "HTTP 500"

    @patch("program_engine.notifications.webhook_notifier.requests.post")
    def test_network_error(self, mock_post, notifier):
        mock_post.side_effect = requests.ConnectionError("refused")

        result = notifier.send("ada@example.com", "Offer", "offer", {})

        assert not result.success
        assert "refused" in result.error

    def test_missing_url(self):
        result = WebhookNotifier().send("ada@example.com", "Offer", "offer", {})
        assert not result.success


class TestGetNotifier:
    """Test cases for the notifier factory."""

    def test_known_kinds(self):
        assert isinstance(get_notifier(), MockNotifier)
        assert isinstance(get_notifier("log"), LoggingNotifier)
        assert isinstance(get_notifier("webhook", {"webhook_url": "https://x"}), WebhookNotifier)

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown notifier: pigeon"):
            get_notifier("pigeon")

    def test_logging_notifier_always_succeeds(self):
        assert LoggingNotifier().send("ada@example.com", "Hi", "default", {})
