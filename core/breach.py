"""
breach.py -- Breach-history lookups for third-party vendors.

Two implementations of BreachSearchClient:
  - KnownBreachCatalog: a curated, offline list of verified incidents keyed by
    vendor name. Default source; deterministic and free.
  - HibpBreachClient: Have I Been Pwned v3 `breaches?domain=` endpoint. The
    breach list endpoint needs no API key.

Breach risk scores are 0-100, higher is worse. They feed core/risk.py.
"""

import logging
from typing import Optional, Protocol
from urllib.parse import urlparse

import requests

from .errors import FeedUnavailableError
from .models import BreachRecord

logger = logging.getLogger("threatwatch.breach")


class BreachSearchClient(Protocol):
    def search(self, vendor_name: str, website: Optional[str] = None) -> list[BreachRecord]:
        """Breach candidates for a vendor. Raises FeedUnavailableError on failure."""
        ...


# Keys are matched as substrings of the lowercased vendor name.
KNOWN_BREACHES: dict[str, list[BreachRecord]] = {
    "notion": [
        BreachRecord(
            title="Access Token Phishing Campaign",
            breach_date="2024-04-15",
            description=(
                "Attackers targeted Notion users with phishing emails to steal integration tokens,"
                " gaining unauthorized access to workspaces."
            ),
            record_count=0,
            data_classes=["Integration Tokens", "Workspace Content"],
            risk_score=75,
            source="Verified Security Report",
            is_verified=True,
        ),
        BreachRecord(
            title="AI Prompt Injection Vulnerability",
            breach_date="2025-09-10",
            description=(
                "Researchers demonstrated how malicious documents could trigger prompt injection"
                " in Notion AI to exfiltrate data."
            ),
            record_count=0,
            data_classes=["Workspace Content", "Private Notes"],
            risk_score=60,
            source="Security Research",
            is_verified=True,
        ),
    ],
    "zoom": [
        BreachRecord(
            title="Credential Stuffing affecting 500k Accounts",
            breach_date="2020-04-01",
            description=(
                "Over 500,000 Zoom accounts were compromised via credential stuffing and sold on the dark web."
            ),
            record_count=500_000,
            data_classes=["Email Addresses", "Passwords", "Meeting URLs", "Host Keys"],
            risk_score=90,
            source="Dark Web Monitoring",
            is_verified=True,
        ),
        BreachRecord(
            title="Unauthorized Data Sharing",
            breach_date="2020-03-20",
            description="Zoom iOS app was found to be sending analytics data to Facebook without explicit user consent.",
            record_count=10_000_000,
            data_classes=["Device IDs", "Location Data", "Usage Stats"],
            risk_score=40,
            source="Privacy Audit",
            is_verified=True,
        ),
    ],
}


class KnownBreachCatalog:
    def __init__(self, catalog: Optional[dict[str, list[BreachRecord]]] = None) -> None:
        self.catalog = KNOWN_BREACHES if catalog is None else catalog

    def search(self, vendor_name: str, website: Optional[str] = None) -> list[BreachRecord]:
        name = (vendor_name or "").strip().lower()
        if not name:
            return []
        for key, breaches in self.catalog.items():
            if key in name:
                logger.info("Known breaches for %s (matched %r)", vendor_name, key)
                return list(breaches)
        return []


# ---------------------------------------------------------------------------
# Have I Been Pwned
# ---------------------------------------------------------------------------

_SENSITIVE_CLASSES = {"passwords", "credit cards", "bank account numbers", "social security numbers", "auth tokens"}


def hibp_risk_score(pwn_count: int, data_classes: list[str], is_verified: bool) -> int:
    """Derive a 0-100 breach risk from size, exposed data and verification."""
    score = 30
    if pwn_count >= 1_000_000:
        score += 30
    elif pwn_count >= 100_000:
        score += 15
    if any(c.lower() in _SENSITIVE_CLASSES for c in data_classes):
        score += 25
    if is_verified:
        score += 10
    return min(100, score)


def _domain_of(website: Optional[str]) -> Optional[str]:
    if not website:
        return None
    parsed = urlparse(website if "//" in website else f"//{website}")
    host = (parsed.hostname or "").lower()
    return host[4:] if host.startswith("www.") else host or None


class HibpBreachClient:
    def __init__(self, api_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None) -> None:
        self.api_url = api_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def search(self, vendor_name: str, website: Optional[str] = None) -> list[BreachRecord]:
        domain = _domain_of(website)
        if not domain:
            # HIBP is keyed by domain; without one there is nothing to ask.
            return []
        try:
            resp = self._session.get(
                self.api_url,
                params={"domain": domain},
                headers={"User-Agent": "threatwatch"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise FeedUnavailableError(f"HIBP lookup failed for {domain}: {exc}") from exc
        if not isinstance(payload, list):
            raise FeedUnavailableError("HIBP payload is not a list")

        records = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("Title"):
                continue
            data_classes = [c for c in item.get("DataClasses") or [] if isinstance(c, str)]
            pwn_count = int(item.get("PwnCount") or 0)
            verified = bool(item.get("IsVerified"))
            records.append(
                BreachRecord(
                    title=item["Title"],
                    breach_date=item.get("BreachDate"),
                    description=item.get("Description") or "",
                    record_count=pwn_count,
                    data_classes=data_classes,
                    risk_score=hibp_risk_score(pwn_count, data_classes, verified),
                    source="Have I Been Pwned",
                    is_verified=verified,
                )
            )
        return records


def breach_client_from_settings(settings) -> BreachSearchClient:
    if settings.breach_source == "hibp":
        return HibpBreachClient(settings.hibp_api_url, timeout=settings.feed_timeout_seconds)
    return KnownBreachCatalog()
