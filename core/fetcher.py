"""
fetcher.py -- All external vulnerability data fetching.

Two sources, both free:
  - NVD CVE API 2.0 (keyword / CPE search and lookup by id). An optional API
    key raises the rate limit from 5 req/30s to 50 req/30s.
  - CISA Known Exploited Vulnerabilities catalog (one bulk JSON document).

Everything behind the VulnerabilityFeedClient protocol so the engine can run
against NvdFeedClient in production and FixtureFeedClient in tests and
offline demos. Calls use a short timeout and are never retried here: a failed
lookup costs one candidate, not the whole scan.
"""

import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Protocol
from urllib.parse import urlencode

import requests

from .config import now_iso
from .cpe import cpe_vendor_product
from .errors import FeedUnavailableError, MalformedRecordError
from .models import CachedCve, KevEntry

logger = logging.getLogger("threatwatch.fetcher")


class VulnerabilityFeedClient(Protocol):
    def search(self, keyword: str, cpe_name: Optional[str] = None, max_results: int = 50) -> list[dict[str, Any]]:
        """Raw NVD CVE objects matching keyword (or cpe_name when given).

        Raises FeedUnavailableError when the service cannot answer.
        """
        ...

    def get_cve(self, cve_id: str) -> Optional[dict[str, Any]]:
        """Raw NVD CVE object, or None when unknown or unreachable."""
        ...

    def fetch_kev_catalog(self) -> list[dict[str, Any]]:
        """Raw KEV catalog entries. Raises FeedUnavailableError on failure."""
        ...


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _first_metric(metrics: dict, *keys: str) -> Optional[dict]:
    for key in keys:
        entries = metrics.get(key) or []
        if entries:
            data = entries[0].get("cvssData") or {}
            if data.get("baseScore") is not None:
                return data
    return None


def _range_text(match: dict) -> str:
    parts = []
    if match.get("versionStartIncluding"):
        parts.append(f">= {match['versionStartIncluding']}")
    if match.get("versionStartExcluding"):
        parts.append(f"> {match['versionStartExcluding']}")
    if match.get("versionEndIncluding"):
        parts.append(f"<= {match['versionEndIncluding']}")
    if match.get("versionEndExcluding"):
        parts.append(f"< {match['versionEndExcluding']}")
    return " and ".join(parts) if parts else match.get("criteria", "")


def normalize_cve(raw: dict[str, Any], ttl_hours: int = 24) -> CachedCve:
    """Reduce a raw NVD CVE object to the cached representation.

    Prefers the English description and CVSS v3.1, then v3.0, then v2.0.
    Raises MalformedRecordError when the record is not a dict or has no id.
    """
    if not isinstance(raw, dict) or not raw.get("id"):
        raise MalformedRecordError("CVE record has no id")

    try:
        descriptions = raw.get("descriptions") or []
        description = next((d.get("value", "") for d in descriptions if d.get("lang") == "en"), "")
        if not description and descriptions:
            description = descriptions[0].get("value", "")

        metric = _first_metric(raw.get("metrics") or {}, "cvssMetricV31", "cvssMetricV30", "cvssMetricV2")
        cvss_score = float(metric["baseScore"]) if metric else None
        cvss_vector = metric.get("vectorString") if metric else None

        cwe_ids = [
            d["value"]
            for w in raw.get("weaknesses") or []
            for d in w.get("description") or []
            if str(d.get("value", "")).startswith("CWE-")
        ]

        cpe_matches: list[str] = []
        affected: list[str] = []
        for config in raw.get("configurations") or []:
            for node in config.get("nodes") or []:
                for match in node.get("cpeMatch") or []:
                    if not match.get("vulnerable"):
                        continue
                    if match.get("criteria"):
                        cpe_matches.append(match["criteria"])
                    text = _range_text(match)
                    if text:
                        affected.append(text)

        references = [r["url"] for r in raw.get("references") or [] if r.get("url")]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise MalformedRecordError(f"{raw.get('id')}: {exc}") from exc

    fetched = now_iso()
    expires = (datetime.now(timezone.utc) + timedelta(hours=ttl_hours)).isoformat(timespec="microseconds")
    return CachedCve(
        cve_id=str(raw["id"]).upper(),
        description=description,
        cvss_score=cvss_score,
        cvss_vector=cvss_vector,
        published_at=raw.get("published"),
        last_modified_at=raw.get("lastModified"),
        cwe_ids=list(dict.fromkeys(cwe_ids)),
        cpe_matches=list(dict.fromkeys(cpe_matches)),
        affected_ranges=list(dict.fromkeys(affected)),
        references=references,
        fetched_at=fetched,
        expires_at=expires,
    )


def parse_kev_entry(raw: dict[str, Any]) -> KevEntry:
    """Map one CISA KEV catalog entry. Raises MalformedRecordError without a cveID."""
    cve_id = str(raw.get("cveID") or "").strip().upper() if isinstance(raw, dict) else ""
    if not cve_id.startswith("CVE-"):
        raise MalformedRecordError(f"KEV entry without a CVE id: {str(raw)[:80]}")
    return KevEntry(
        cve_id=cve_id,
        date_added=raw.get("dateAdded"),
        vendor_project=raw.get("vendorProject") or "",
        product=raw.get("product") or "",
        vulnerability_name=raw.get("vulnerabilityName") or "",
        short_description=raw.get("shortDescription") or "",
        required_action=raw.get("requiredAction") or "",
        due_date=raw.get("dueDate"),
        known_ransomware_use=(raw.get("knownRansomwareCampaignUse") or "").lower() == "known",
    )


# ---------------------------------------------------------------------------
# NVD + CISA over HTTP
# ---------------------------------------------------------------------------


class NvdFeedClient:
    """requests-based client for NVD and the CISA KEV feed.

    NVD calls are spaced at least `request_interval` seconds apart across all
    callers sharing this instance (6 s unauthenticated, 0.6 s with a key).
    """

    def __init__(
        self,
        api_url: str,
        kev_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        request_interval: float = 6.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = api_url
        self.kev_url = kev_url
        self.api_key = api_key
        self.timeout = timeout
        self.request_interval = request_interval
        self._session = session or requests.Session()
        # Known public APIs -- 3 hops is generous and blocks redirect chains.
        self._session.max_redirects = 3
        self._lock = threading.Lock()
        self._last_request = 0.0

    @classmethod
    def from_settings(cls, settings) -> "NvdFeedClient":
        return cls(
            api_url=settings.nvd_api_url,
            kev_url=settings.cisa_kev_url,
            api_key=settings.nvd_api_key,
            timeout=settings.feed_timeout_seconds,
            request_interval=settings.nvd_request_interval,
        )

    def _throttle(self) -> None:
        with self._lock:
            wait = self._last_request + self.request_interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def _get_nvd(self, params: dict[str, str], flags: tuple[str, ...] = ()) -> dict[str, Any]:
        if self.api_key:
            params["apiKey"] = self.api_key
        query: Any = params
        if flags:
            # Valueless NVD flags go out as bare names ("&isVulnerable"), which a dict cannot express.
            query = "&".join([urlencode(params), *flags])
        self._throttle()
        try:
            resp = self._session.get(
                self.api_url, params=query, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise FeedUnavailableError(f"NVD request failed: {exc}") from exc
        if resp.status_code in (403, 429):
            logger.warning("NVD rate limit reached (HTTP %d)", resp.status_code)
            raise FeedUnavailableError(f"NVD rate limited (HTTP {resp.status_code})")
        try:
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise FeedUnavailableError(f"NVD returned an unusable response: {exc}") from exc
        if not isinstance(payload, dict):
            raise FeedUnavailableError("NVD payload is not a JSON object")
        return payload

    def search(self, keyword: str, cpe_name: Optional[str] = None, max_results: int = 50) -> list[dict[str, Any]]:
        params = {"resultsPerPage": str(max_results)}
        flags: tuple[str, ...] = ()
        if cpe_name:
            params["cpeName"] = cpe_name
            flags = ("isVulnerable",)
        else:
            params["keywordSearch"] = keyword
        payload = self._get_nvd(params, flags)
        return [v["cve"] for v in payload.get("vulnerabilities") or [] if isinstance(v, dict) and v.get("cve")]

    def get_cve(self, cve_id: str) -> Optional[dict[str, Any]]:
        try:
            payload = self._get_nvd({"cveId": cve_id})
        except FeedUnavailableError as exc:
            logger.warning("NVD fetch failed for %s: %s", cve_id, exc)
            return None
        vulns = payload.get("vulnerabilities") or []
        return vulns[0].get("cve") if vulns and isinstance(vulns[0], dict) else None

    def fetch_kev_catalog(self) -> list[dict[str, Any]]:
        try:
            resp = self._session.get(self.kev_url, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise FeedUnavailableError(f"CISA KEV fetch failed: {exc}") from exc
        entries = payload.get("vulnerabilities") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise FeedUnavailableError("CISA KEV payload has no vulnerabilities list")
        return entries


# ---------------------------------------------------------------------------
# Deterministic fixture feed
# ---------------------------------------------------------------------------


def _indexed_text(raw: dict[str, Any]) -> str:
    parts = [d.get("value", "") for d in raw.get("descriptions") or [] if isinstance(d, dict)]
    for config in raw.get("configurations") or []:
        for node in config.get("nodes") or []:
            for match in node.get("cpeMatch") or []:
                pair = cpe_vendor_product(match.get("criteria", ""))
                if pair:
                    parts.append(" ".join(pair).replace("_", " "))
    return " ".join(parts).lower()


class FixtureFeedClient:
    """In-memory feed answering from a fixed list of raw NVD CVE objects.

    A CVE matches a keyword search when every word of the keyword occurs in
    its description or CPE vendor/product text, and a CPE search when one of
    its criteria shares vendor and product with the requested CPE. Keywords
    listed in `fail_on` raise FeedUnavailableError, for failure-path tests.
    """

    def __init__(
        self,
        cves: Iterable[dict[str, Any]] = (),
        kev: Iterable[dict[str, Any]] = (),
        fail_on: Iterable[str] = (),
        kev_available: bool = True,
    ) -> None:
        self.cves = {c["id"].upper(): c for c in cves}
        self.kev = list(kev)
        self.fail_on = {f.lower() for f in fail_on}
        self.kev_available = kev_available
        self.calls: list[tuple[str, Optional[str]]] = []

    def search(self, keyword: str, cpe_name: Optional[str] = None, max_results: int = 50) -> list[dict[str, Any]]:
        self.calls.append((keyword, cpe_name))
        if keyword.lower() in self.fail_on:
            raise FeedUnavailableError(f"fixture feed refused {keyword!r}")
        results = []
        wanted = cpe_vendor_product(cpe_name) if cpe_name else None
        words = [w for w in re.split(r"\s+", keyword.lower()) if w]
        for raw in self.cves.values():
            text = _indexed_text(raw)
            hit = bool(words) and all(w in text for w in words)
            if wanted and not hit:
                criteria = [
                    m.get("criteria", "")
                    for config in raw.get("configurations") or []
                    for node in config.get("nodes") or []
                    for m in node.get("cpeMatch") or []
                ]
                hit = any(cpe_vendor_product(c) == wanted for c in criteria)
            if hit:
                results.append(raw)
        return results[:max_results]

    def get_cve(self, cve_id: str) -> Optional[dict[str, Any]]:
        return self.cves.get(cve_id.upper())

    def fetch_kev_catalog(self) -> list[dict[str, Any]]:
        if not self.kev_available:
            raise FeedUnavailableError("fixture KEV catalog unavailable")
        return list(self.kev)
