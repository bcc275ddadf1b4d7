"""
Webhook notifier.

Posts each notification as JSON to a configured HTTP endpoint, which is
expected to handle template rendering and delivery.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .base_notifier import BaseNotifier, NotificationResult

logger = logging.getLogger(__name__)


class WebhookNotifier(BaseNotifier):
    """HTTP POST dispatcher."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.url = self.config.get("webhook_url")
        self.timeout = self.config.get("timeout", 10)
        self.headers = self.config.get("headers", {})

    def send(self, to: str, subject: str, template: str, payload: Dict[str, Any]) -> NotificationResult:
        """
        POST the notification to the webhook.

        Args:
            to: Recipient address
            subject: Subject line
            template: Template name
            payload: Template variables

        Returns:
            NotificationResult; HTTP and network failures are reported, not raised
        """
        if not self.url:
            return NotificationResult(False, "Webhook not configured", error="webhook_url is not set")

        body = {"to": to, "subject": subject, "template": template, "payload": payload}
        try:
            response = requests.post(self.url, json=body, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Webhook delivery to {self.url} failed: {e}")
            return NotificationResult(False, "Webhook delivery failed", error=str(e))

        if response.status_code >= 400:
            logger.error(f"Webhook returned HTTP {response.status_code} for {to}")
            return NotificationResult(
                False, "Webhook rejected notification", error=f"HTTP {response.status_code}"
            )

        logger.info(f"Delivered '{template}' notification for {to} via webhook")
        return NotificationResult(True, f"Delivered {template} for {to}")
