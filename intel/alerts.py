"""
intel/alerts.py -- Alert dispatchers for newly discovered high-severity matches.

The scheduler hands each dispatcher one client id and that client's alerts.
Formatting and delivery beyond this point belong to whatever receives the
webhook.

  LoggingAlertDispatcher   default; writes one warning line per alert
  WebhookAlertDispatcher   JSON POST, signed with HMAC-SHA256 when a secret is set
"""

import hashlib
import hmac
import json
import logging
from dataclasses import asdict
from typing import Optional, Protocol

import requests

from core.config import now_iso
from core.errors import AlertDeliveryError
from core.models import ThreatAlert

logger = logging.getLogger("threatwatch.alerts")

SIGNATURE_HEADER = "X-Threatwatch-Signature"


class AlertDispatcher(Protocol):
    def send(self, client_id: int, alerts: list[ThreatAlert]) -> None: ...


class LoggingAlertDispatcher:
    def send(self, client_id: int, alerts: list[ThreatAlert]) -> None:
        for alert in alerts:
            logger.warning(
                "Client %d: %s (CVSS %s) affects %s -- %s",
                client_id,
                alert.cve_id,
                alert.cvss_score,
                alert.asset_name,
                alert.description[:120],
            )


def sign_payload(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: str, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature)


class WebhookAlertDispatcher:
    def __init__(
        self,
        url: str,
        secret: str = "",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def send(self, client_id: int, alerts: list[ThreatAlert]) -> None:
        """POST the alert group. Raises AlertDeliveryError when delivery fails."""
        body = json.dumps(
            {
                "event": "threat_intel.new_high_severity",
                "client_id": client_id,
                "sent_at": now_iso(),
                "alerts": [asdict(a) for a in alerts],
            },
            sort_keys=True,
        )
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.secret)
        try:
            resp = self._session.post(self.url, data=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise AlertDeliveryError(f"alert webhook failed: {exc}") from exc
        logger.info("Delivered %d alerts for client %d", len(alerts), client_id)


def dispatcher_from_settings(settings) -> AlertDispatcher:
    if settings.alert_webhook_url:
        return WebhookAlertDispatcher(
            settings.alert_webhook_url, settings.alert_webhook_secret, timeout=settings.feed_timeout_seconds
        )
    return LoggingAlertDispatcher()
