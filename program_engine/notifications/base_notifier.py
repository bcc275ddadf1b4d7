"""
Base Notifier Classes for the Program Engine.

This module provides the dispatcher interface automations use to send
email-style notifications, with in-memory and logging implementations.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class NotificationResult:
    """Result of a dispatch attempt."""

    def __init__(self, success: bool, message: str = "", data: Optional[Any] = None,
                 error: Optional[str] = None):
        self.success = success
        self.message = message
        self.data = data
        self.error = error

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"


class BaseNotifier(ABC):
    """
    Abstract base class for notification dispatchers.

    Delivery mechanics (SMTP, queues, third-party APIs) live behind this
    interface; the engine only hands over recipient, subject, template
    name and payload.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the notifier.

        Args:
            config: Dispatcher-specific settings
        """
        self.config = config or {}
        self.channel = self.__class__.__name__.replace("Notifier", "").lower()

        logger.info(f"Initialized {self.__class__.__name__}")

    @abstractmethod
    def send(self, to: str, subject: str, template: str, payload: Dict[str, Any]) -> NotificationResult:
        """
        Dispatch a notification.

        Args:
            to: Recipient address
            subject: Subject line
            template: Template name understood by the delivery backend
            payload: Template variables

        Returns:
            NotificationResult with success status
        """
        pass


class MockNotifier(BaseNotifier):
    """
    In-memory notifier.

    Keeps every dispatched message in ``outbox`` for inspection in tests
    and local development.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.outbox: List[Dict[str, Any]] = []

    def send(self, to: str, subject: str, template: str, payload: Dict[str, Any]) -> NotificationResult:
        """Record the message in the outbox."""
        if not to:
            return NotificationResult(False, "No recipient", error="Recipient address is empty")

        message = {
            "to": to,
            "subject": subject,
            "template": template,
            "payload": dict(payload),
            "sent_at": datetime.now(timezone.utc),
        }
        self.outbox.append(message)

        logger.info(f"Mock sent '{template}' notification to {to}")
        return NotificationResult(True, f"Queued {template} for {to}", data=message)

    def clear(self):
        self.outbox.clear()


class LoggingNotifier(BaseNotifier):
    """Writes notifications to the log instead of delivering them."""

    def send(self, to: str, subject: str, template: str, payload: Dict[str, Any]) -> NotificationResult:
        logger.info(f"Notification to={to} subject='{subject}' template={template} payload={payload}")
        return NotificationResult(True, f"Logged {template} for {to}")
