"""
Notifications Package for the Program Engine.

This package provides the dispatchers automations use to send
notifications: an in-memory mock, a logging sink, and an HTTP webhook.
"""

from typing import Any, Dict, Optional

from .base_notifier import BaseNotifier, LoggingNotifier, MockNotifier, NotificationResult
from .webhook_notifier import WebhookNotifier

NOTIFIERS = {
    "mock": MockNotifier,
    "log": LoggingNotifier,
    "webhook": WebhookNotifier,
}


def get_notifier(kind: str = "mock", config: Optional[Dict[str, Any]] = None) -> BaseNotifier:
    """
    Build a notifier by name.

    Args:
        kind: One of "mock", "log", "webhook"
        config: Notifier settings (webhook_url, timeout, headers)

    Returns:
        Notifier instance
    """
    if kind not in NOTIFIERS:
        raise ValueError(f"Unknown notifier: {kind}")
    return NOTIFIERS[kind](config)


__all__ = [
    "BaseNotifier",
    "LoggingNotifier",
    "MockNotifier",
    "NotificationResult",
    "WebhookNotifier",
    "get_notifier",
]
