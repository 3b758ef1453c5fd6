"""Operator notifications delivered to the CRM."""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import httpx

from verifactu_api.settings import Settings, get_settings
from verifactu_api.utils import metrics

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Sink for operator-facing signals (certificate expiry, blocked tenants)."""

    @abstractmethod
    def notify(self, tenant_id: int, event_type: str, payload: dict) -> bool:
        """Deliver a notification; returns False when delivery failed."""


class LogNotifier(Notifier):
    """Writes notifications to the log."""

    def notify(self, tenant_id: int, event_type: str, payload: dict) -> bool:
        logger.warning(
            f"Notification {event_type} for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "event_type": event_type, "payload": payload},
        )
        metrics.notification_deliveries.labels(status="logged").inc()
        return True


def compute_signature(payload: bytes, secret: str, timestamp: str) -> str:
    """HMAC-SHA256 over ``timestamp + "." + body``."""
    message = f"{timestamp}.{payload.decode()}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, secret: str, timestamp: str, signature_header: str) -> bool:
    """Check a ``sha256=<hex>`` signature header."""
    if not signature_header.startswith("sha256="):
        return False
    expected = compute_signature(payload, secret, timestamp)
    return hmac.compare_digest(signature_header[len("sha256="):], expected)


class WebhookNotifier(Notifier):
    """Signed HTTP POST to the CRM's notification endpoint."""

    def __init__(
        self,
        url: str,
        secret: str,
        timeout: float = 10,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize webhook notifier."""
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._client = client

    def _post(self, body: bytes, headers: dict) -> httpx.Response:
        if self._client is not None:
            return self._client.post(self.url, content=body, headers=headers)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.url, content=body, headers=headers)

    def notify(self, tenant_id: int, event_type: str, payload: dict) -> bool:
        message = {"tenant_id": tenant_id, "event_type": event_type, "data": payload}
        # Sign exactly the bytes that are sent
        body = json.dumps(message, sort_keys=True, default=str).encode()
        timestamp = str(int(datetime.utcnow().timestamp()))
        headers = {
            "Content-Type": "application/json",
            "X-Verifactu-Signature": f"sha256={compute_signature(body, self.secret, timestamp)}",
            "X-Verifactu-Event": event_type,
            "X-Verifactu-Timestamp": timestamp,
        }

        try:
            response = self._post(body, headers)
        except httpx.HTTPError as e:
            logger.error(
                f"Notification delivery failed for tenant {tenant_id}: {e}",
                extra={"tenant_id": tenant_id, "event_type": event_type},
            )
            metrics.notification_deliveries.labels(status="failed").inc()
            return False

        if 200 <= response.status_code < 300:
            metrics.notification_deliveries.labels(status="success").inc()
            return True

        logger.error(
            f"Notification endpoint returned {response.status_code} for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "event_type": event_type, "response": response.text[:1000]},
        )
        metrics.notification_deliveries.labels(status="failed").inc()
        return False


def get_notifier(settings: Optional[Settings] = None) -> Notifier:
    """Webhook notifier when an endpoint is configured, log notifier otherwise."""
    settings = settings or get_settings()
    if settings.notifier_url:
        if not settings.notifier_secret:
            raise ValueError("NOTIFIER_SECRET is required when NOTIFIER_URL is set")
        return WebhookNotifier(settings.notifier_url, settings.notifier_secret, settings.notifier_timeout_seconds)
    return LogNotifier()
