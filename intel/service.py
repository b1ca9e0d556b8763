"""
intel/service.py -- ThreatIntelService, the operations the rest of the application calls.

Orchestrates the pure kernel (core/keywords, core/cpe, core/matcher,
core/risk) over the repositories (cache/store.py, cmdb/store.py) and the
external collaborators (vulnerability feed, breach source). No print
statements and no SQL here -- all side effects go through injected objects.

Failure policy:
  - a malformed feed record costs that record only (logged, skipped)
  - an unreachable feed degrades a scan to cache-only results and is
    reported on the result object, never raised
  - store errors propagate to the caller of the single operation; batch
    scans isolate them per asset
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from cmdb.models import Asset, Vulnerability
from cmdb.repositories import (
    CveCacheRepository,
    InventoryRepository,
    KevRepository,
    MatchRepository,
    SyncRunRepository,
    VendorScanRepository,
    VulnerabilityRepository,
)
from core.breach import BreachSearchClient
from core.config import Settings, get_settings, now_iso
from core.cpe import generate_cpe_string
from core.errors import (
    AssetNotFoundError,
    CveNotFoundError,
    FeedUnavailableError,
    InvalidTransitionError,
    MalformedRecordError,
    MatchNotFoundError,
    VendorNotFoundError,
)
from core.fetcher import VulnerabilityFeedClient, normalize_cve, parse_kev_entry
from core.keywords import extract_keywords_from_asset, extract_vendor_keyword, primary_query
from core.matcher import rank_candidates, score_asset_candidate, score_vendor_candidate
from core.models import (
    ACCEPTED,
    CVE_PATTERN,
    DISMISSED,
    IMPORTED,
    MATCH_STATUSES,
    RUN_FAILED,
    RUN_PARTIAL,
    RUN_SUCCESS,
    SOURCE_KEV,
    SUGGESTED,
    AssetCveMatch,
    CachedCve,
    MatchCandidate,
    SyncRun,
    ThreatAlert,
    VendorCveMatch,
)
from core.risk import compute_vendor_risk, severity_for_cvss
from intel.models import (
    AssetScanResult,
    BulkStatusResult,
    ClientScanSummary,
    DailyBriefing,
    ImportResult,
    KevStats,
    LookupResult,
    MatchSuggestion,
    StatusUpdateResult,
    VendorMatchView,
    VendorScanResult,
    VendorSuggestions,
)

logger = logging.getLogger("threatwatch.service")

_CVE_RE = re.compile(CVE_PATTERN)

# Scan results hand back more ranked candidates than are persisted.
_RETURNED_CANDIDATES = 20
_BRIEFING_TOP_THREATS = 5
_BRIEFING_VENDORS = 5
_HIGH_SEVERITY = 7.0


def _normalize_cve_id(cve_id: str) -> str:
    normalized = (cve_id or "").strip().upper()
    if not _CVE_RE.match(normalized):
        raise ValueError(f"Invalid CVE ID format: {cve_id}")
    return normalized


class ThreatIntelService:
    def __init__(
        self,
        inventory: InventoryRepository,
        cache: CveCacheRepository,
        kev: KevRepository,
        sync_runs: SyncRunRepository,
        matches: MatchRepository,
        vulnerabilities: VulnerabilityRepository,
        vendor_scans: VendorScanRepository,
        feed: VulnerabilityFeedClient,
        breaches: BreachSearchClient,
        settings: Optional[Settings] = None,
    ) -> None:
        self.inventory = inventory
        self.cache = cache
        self.kev = kev
        self.sync_runs = sync_runs
        self.matches = matches
        self.vulnerabilities = vulnerabilities
        self.vendor_scans = vendor_scans
        self.feed = feed
        self.breaches = breaches
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Candidate gathering
    # ------------------------------------------------------------------

    def _ingest(self, raws: Iterable[dict]) -> dict[str, CachedCve]:
        """Normalize and cache raw feed records, skipping the malformed ones."""
        found: dict[str, CachedCve] = {}
        for raw in raws:
            try:
                cve = normalize_cve(raw, ttl_hours=self.settings.cve_cache_ttl_hours)
            except MalformedRecordError as exc:
                logger.warning("Skipping malformed feed record: %s", exc)
                continue
            self.cache.upsert(cve)
            found[cve.cve_id] = cve
        return found

    def _search_feed(self, query: Optional[str], cpe: Optional[str]) -> dict[str, CachedCve]:
        """CPE search when a CPE exists, keyword search otherwise or when the
        CPE is unknown to the feed. Raises FeedUnavailableError."""
        limit = self.settings.nvd_results_per_page
        raws: list[dict] = []
        if cpe:
            raws = self.feed.search(query or "", cpe_name=cpe, max_results=limit)
        if not raws and query:
            raws = self.feed.search(query, max_results=limit)
        return self._ingest(raws)

    def _gather(self, query: Optional[str], cpe: Optional[str], keywords: list[str]) -> tuple[dict, Optional[str]]:
        candidates: dict[str, CachedCve] = {}
        feed_error = None
        try:
            candidates.update(self._search_feed(query, cpe))
        except FeedUnavailableError as exc:
            logger.warning("Feed search failed for %r: %s -- using cache only", query, exc)
            feed_error = str(exc)
        for cve in self.cache.search(keywords[: self.settings.scoring.search_keywords]):
            candidates.setdefault(cve.cve_id, cve)
        return candidates, feed_error

    # ------------------------------------------------------------------
    # Asset path
    # ------------------------------------------------------------------

    def _get_asset(self, client_id: int, asset_id: int) -> Asset:
        asset = self.inventory.get_asset(asset_id)
        if asset is None or asset.client_id != client_id:
            raise AssetNotFoundError(f"asset {asset_id} not found for client {client_id}")
        return asset

    def scan_asset(self, client_id: int, asset_id: int, kev_ids: Optional[set[str]] = None) -> AssetScanResult:
        """Match one asset against the feed and cache and persist the top suggestions.

        Existing suggested rows are refreshed in place; reviewed rows are left
        alone. kev_ids lets a batch scan load the KEV set once.
        """
        asset = self._get_asset(client_id, asset_id)
        result = AssetScanResult(client_id=client_id, asset_id=asset_id, asset_name=asset.name)
        if not asset.scannable:
            result.skipped, result.skip_reason = True, f"asset type {asset.asset_type!r} is not scanned"
            return result

        keywords = extract_keywords_from_asset(asset)
        cpe = generate_cpe_string(asset.vendor, asset.product_name, asset.version)
        query = primary_query(asset, keywords)
        if not keywords and not cpe:
            result.skipped, result.skip_reason = True, "no vendor, product or keywords"
            return result

        candidates, result.feed_error = self._gather(query, cpe, keywords)
        result.candidates_found = len(candidates)
        kev_ids = self.kev.kev_ids() if kev_ids is None else kev_ids
        policy = self.settings.scoring

        scored: list[MatchCandidate] = []
        for cve in candidates.values():
            try:
                candidate = score_asset_candidate(
                    cve, keywords, cpe, asset.version, policy, cve.cve_id in kev_ids, product=asset.product_name
                )
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping %s for asset %d: %s", cve.cve_id, asset_id, exc)
                continue
            if candidate is not None:
                scored.append(candidate)

        ranked = rank_candidates(scored)
        for candidate in ranked[: self.settings.max_asset_matches]:
            match, created = self.matches.upsert_suggestion(
                client_id, asset_id, candidate.cve_id, candidate.match_score, candidate.match_reason, candidate.is_kev
            )
            if created:
                result.new_matches += 1
            elif match.status == SUGGESTED:
                result.updated_matches += 1
            else:
                result.reviewed_untouched += 1
        result.matches = ranked[:_RETURNED_CANDIDATES]
        logger.info(
            "Asset %d (%s): %d candidates, %d matched, %d new",
            asset_id,
            asset.name,
            result.candidates_found,
            len(ranked),
            result.new_matches,
        )
        return result

    def scan_all_assets(self, client_id: int) -> ClientScanSummary:
        """Scan every asset of a client, one at a time.

        A failing asset is logged and counted; the remaining assets still run.
        A feed outage on an asset counts as a failure even though cache
        results for it were still persisted.
        """
        summary = ClientScanSummary(client_id=client_id, started_at=now_iso())
        kev_ids = self.kev.kev_ids()
        for asset in self.inventory.list_assets(client_id):
            try:
                result = self.scan_asset(client_id, asset.id, kev_ids=kev_ids)
            except Exception as exc:
                logger.exception("Scan failed for asset %d of client %d", asset.id, client_id)
                summary.assets_failed += 1
                summary.errors.append(f"asset {asset.id}: {exc}")
                continue
            if result.skipped:
                summary.assets_skipped += 1
                continue
            summary.new_matches += result.new_matches
            if result.feed_error:
                summary.assets_failed += 1
                summary.errors.append(f"asset {asset.id}: {result.feed_error}")
            else:
                summary.assets_scanned += 1
        summary.completed_at = now_iso()
        logger.info(
            "Client %d scan: %d scanned, %d skipped, %d failed, %d new matches",
            client_id,
            summary.assets_scanned,
            summary.assets_skipped,
            summary.assets_failed,
            summary.new_matches,
        )
        return summary

    def _suggestions(self, rows: list[AssetCveMatch]) -> list[MatchSuggestion]:
        cves = self.cache.get_many(m.cve_id for m in rows)
        names: dict[int, str] = {}
        result = []
        for m in rows:
            if m.asset_id not in names:
                asset = self.inventory.get_asset(m.asset_id)
                names[m.asset_id] = asset.name if asset else ""
            cve = cves.get(m.cve_id)
            result.append(
                MatchSuggestion(
                    match=m,
                    asset_name=names[m.asset_id],
                    cvss_score=cve.cvss_score if cve else None,
                    cvss_vector=cve.cvss_vector if cve else None,
                    description=cve.description if cve else "",
                )
            )
        return result

    def get_asset_suggestions(self, asset_id: int) -> list[MatchSuggestion]:
        return self._suggestions(self.matches.list_for_asset(asset_id))

    def get_client_suggestions(self, client_id: int, status: Optional[str] = None) -> list[MatchSuggestion]:
        if status is not None and status not in MATCH_STATUSES:
            raise ValueError(f"unknown match status {status!r}")
        return self._suggestions(self.matches.list_for_client(client_id, status))

    # ------------------------------------------------------------------
    # Review workflow
    # ------------------------------------------------------------------

    def update_match_status(
        self, match_id: int, status: str, reviewed_by: Optional[int] = None
    ) -> StatusUpdateResult:
        match, changed = self.matches.update_status(match_id, status, reviewed_by)
        if changed:
            logger.info("Match %d -> %s", match_id, status)
        return StatusUpdateResult(match=match, changed=changed)

    def bulk_update_match_status(
        self, match_ids: Iterable[int], status: str, reviewed_by: Optional[int] = None
    ) -> BulkStatusResult:
        """Apply one status to many matches. Each id succeeds or fails on its own."""
        if status not in (ACCEPTED, DISMISSED):
            raise ValueError(f"bulk status must be {ACCEPTED!r} or {DISMISSED!r}, got {status!r}")
        result = BulkStatusResult(status=status)
        for match_id in dict.fromkeys(match_ids):
            try:
                _, changed = self.matches.update_status(match_id, status, reviewed_by)
            except MatchNotFoundError:
                result.outcomes[match_id] = "not_found"
            except InvalidTransitionError as exc:
                logger.info("Bulk update skipped: %s", exc)
                result.outcomes[match_id] = "invalid"
            else:
                result.outcomes[match_id] = "updated" if changed else "unchanged"
        return result

    def import_cve_as_vulnerability(
        self, client_id: int, asset_id: int, cve_id: str, match_id: Optional[int] = None
    ) -> ImportResult:
        """Create a tracked vulnerability from a match. One-way and idempotent.

        Re-importing returns the already linked vulnerability id. Dismissed
        matches cannot be imported. Raises CveNotFoundError when the CVE is
        neither cached nor known to the feed.
        """
        cve_id = _normalize_cve_id(cve_id)
        if match_id is not None:
            match = self.matches.get(match_id)
            if match is None or (match.client_id, match.asset_id, match.cve_id) != (client_id, asset_id, cve_id):
                raise MatchNotFoundError(f"match {match_id} not found for {cve_id} on asset {asset_id}")
        else:
            match = self.matches.get_by_key(client_id, asset_id, cve_id)

        if match is not None and match.imported_vulnerability_id is not None:
            return ImportResult(
                vulnerability_id=match.imported_vulnerability_id,
                created=False,
                severity=self._stored_severity(match.imported_vulnerability_id),
                match_id=match.id,
                is_kev=match.is_kev,
            )
        if match is not None and match.status == DISMISSED:
            raise InvalidTransitionError(match.id, DISMISSED, IMPORTED)

        lookup = self.lookup_cve(cve_id)
        if lookup.cve is None:
            raise CveNotFoundError(f"{cve_id} not found in cache or feed")
        cve = lookup.cve

        severity = severity_for_cvss(cve.cvss_score)
        summary = cve.description[:100] + ("..." if len(cve.description) > 100 else "")
        vuln = Vulnerability(
            client_id=client_id,
            asset_id=asset_id,
            cve_id=cve_id,
            name=f"{cve_id}: {summary}" if summary else cve_id,
            description=cve.description,
            severity=severity,
            cvss_score=cve.cvss_score,
        )

        if match is None:
            vuln_id = self.vulnerabilities.create(vuln)
            logger.info("Imported %s for asset %d without a match (vulnerability %d)", cve_id, asset_id, vuln_id)
            return ImportResult(vulnerability_id=vuln_id, created=True, severity=severity, is_kev=lookup.is_kev)

        stored, created = self.matches.import_vulnerability(match.id, vuln)
        if not created:
            logger.info(
                "Match %d was linked to vulnerability %d by a concurrent import",
                match.id,
                stored.imported_vulnerability_id,
            )
            return ImportResult(
                vulnerability_id=stored.imported_vulnerability_id,
                created=False,
                severity=self._stored_severity(stored.imported_vulnerability_id),
                match_id=match.id,
                is_kev=stored.is_kev,
            )
        vuln_id = stored.imported_vulnerability_id
        logger.info("Imported %s as vulnerability %d (match %d, %s)", cve_id, vuln_id, match.id, severity)
        return ImportResult(
            vulnerability_id=vuln_id, created=True, severity=severity, match_id=match.id, is_kev=stored.is_kev
        )

    def _stored_severity(self, vuln_id: int) -> str:
        vuln = self.vulnerabilities.get(vuln_id)
        return vuln.severity if vuln else ""

    # ------------------------------------------------------------------
    # Vendor path
    # ------------------------------------------------------------------

    def scan_vendor(self, client_id: int, vendor_id: int) -> VendorScanResult:
        """Run one vendor scan: CVEs by vendor name plus breach history.

        The scan row is written first and always finished: "completed", or
        "partial" when the feed or breach source was unreachable. An
        unexpected error marks it "failed" and propagates.
        """
        vendor = self.inventory.get_vendor(vendor_id)
        if vendor is None or vendor.client_id != client_id:
            raise VendorNotFoundError(f"vendor {vendor_id} not found for client {client_id}")
        keyword = extract_vendor_keyword(vendor.name)
        scan = self.vendor_scans.start_scan(client_id, vendor_id)
        result = VendorScanResult(scan=scan)
        try:
            candidates: dict[str, CachedCve] = {}
            if keyword:
                candidates, result.feed_error = self._gather(keyword, None, [keyword])
            kev_ids = self.kev.kev_ids()
            policy = self.settings.scoring
            scored = []
            for cve in candidates.values():
                candidate = score_vendor_candidate(cve, keyword, policy, cve.cve_id in kev_ids)
                if candidate is not None:
                    scored.append(candidate)
            result.matches = rank_candidates(scored)[: self.settings.max_vendor_matches]

            breaches = []
            try:
                breaches = self.breaches.search(vendor.name, vendor.website)
            except FeedUnavailableError as exc:
                logger.warning("Breach lookup failed for vendor %d: %s", vendor_id, exc)
                result.breach_error = str(exc)

            discovered = now_iso()
            self.vendor_scans.add_cve_matches(
                VendorCveMatch(
                    scan_id=scan.id,
                    vendor_id=vendor_id,
                    cve_id=c.cve_id,
                    match_score=c.match_score,
                    match_reason=c.match_reason,
                    cvss_score=c.cvss_score,
                    is_kev=c.is_kev,
                    discovered_at=discovered,
                )
                for c in result.matches
            )
            for breach in breaches:
                stored, created = self.vendor_scans.upsert_breach(vendor_id, breach, scan.id)
                result.breaches.append(stored)
                result.new_breaches += int(created)

            risk = compute_vendor_risk(
                (c.cvss_score for c in result.matches),
                (b.risk_score for b in result.breaches),
                self.settings.risk_policy,
            )
            status = "partial" if result.feed_error or result.breach_error else "completed"
            result.scan = self.vendor_scans.finish_scan(
                scan.id, risk, len(result.matches), len(result.breaches), status
            )
        except Exception:
            logger.exception("Vendor scan %d for vendor %d failed", scan.id, vendor_id)
            self.vendor_scans.finish_scan(scan.id, scan.risk_score, 0, 0, "failed")
            raise
        logger.info(
            "Vendor %d (%s): risk %d, %d CVEs, %d breaches",
            vendor_id,
            vendor.name,
            result.scan.risk_score,
            len(result.matches),
            len(result.breaches),
        )
        return result

    def get_vendor_suggestions(self, vendor_id: int) -> VendorSuggestions:
        vendor = self.inventory.get_vendor(vendor_id)
        if vendor is None:
            raise VendorNotFoundError(f"vendor {vendor_id} not found")
        scan = self.vendor_scans.latest_scan(vendor_id)
        views: list[VendorMatchView] = []
        if scan is not None:
            rows = self.vendor_scans.list_cve_matches(scan.id)
            cves = self.cache.get_many(r.cve_id for r in rows)
            views = [
                VendorMatchView(
                    cve_id=r.cve_id,
                    match_score=r.match_score,
                    match_reason=r.match_reason,
                    cvss_score=r.cvss_score,
                    is_kev=r.is_kev,
                    description=cves[r.cve_id].description if r.cve_id in cves else "",
                )
                for r in rows
            ]
        return VendorSuggestions(
            vendor=vendor, scan=scan, matches=views, breaches=self.vendor_scans.list_breaches(vendor_id)
        )

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    def sync_kev_catalog(self) -> SyncRun:
        """Replace the KEV cache from the CISA feed and record the run.

        Never raises for feed problems: an unreachable feed or a catalog with
        no usable entry leaves the previous catalog in place and yields a
        "failed" run. Skipped malformed entries make the run "partial".

        After a successful or partial run the is_kev flag of every open match
        is re-derived from the new catalog. Closed matches keep theirs.
        """
        run = self.sync_runs.start(SOURCE_KEV)
        try:
            raw_entries = self.feed.fetch_kev_catalog()
        except FeedUnavailableError as exc:
            logger.warning("KEV sync failed: %s", exc)
            return self.sync_runs.finish(run.id, RUN_FAILED, 0, str(exc))

        entries = []
        skipped = 0
        for raw in raw_entries:
            try:
                entries.append(parse_kev_entry(raw))
            except MalformedRecordError as exc:
                skipped += 1
                logger.debug("Skipping KEV entry: %s", exc)
        if not entries and raw_entries:
            return self.sync_runs.finish(run.id, RUN_FAILED, 0, f"all {skipped} KEV entries were malformed")

        try:
            count = self.kev.replace_all(entries)
        except Exception as exc:
            logger.exception("KEV catalog write failed")
            return self.sync_runs.finish(run.id, RUN_FAILED, 0, str(exc))

        status = RUN_PARTIAL if skipped else RUN_SUCCESS
        error = f"{skipped} malformed entries skipped" if skipped else None
        logger.info("KEV sync: %d entries (%d skipped)", count, skipped)
        self.recompute_kev_flags()
        return self.sync_runs.finish(run.id, status, count, error)

    def get_kev_stats(self) -> KevStats:
        last = self.sync_runs.latest(SOURCE_KEV, completed_only=True)
        last_good = next(
            (r for r in self.sync_runs.list_recent(SOURCE_KEV, limit=50) if r.status in (RUN_SUCCESS, RUN_PARTIAL)),
            None,
        )
        return KevStats(
            total=self.kev.count(),
            last_sync_at=last_good.completed_at if last_good else None,
            last_status=last.status if last else None,
            last_run=last,
        )

    def lookup_cve(self, cve_id: str) -> LookupResult:
        """Cache-or-fetch. Raises ValueError for a malformed id, never for not-found.

        A fresh cache hit wins; then the feed; then an expired cached copy when
        the feed has nothing.
        """
        cve_id = _normalize_cve_id(cve_id)
        cached = self.cache.get(cve_id)
        if cached is not None:
            return LookupResult(source="cache", cve=cached, is_kev=self.kev.contains(cve_id))

        raw = self.feed.get_cve(cve_id)
        if raw is not None:
            try:
                cve = normalize_cve(raw, ttl_hours=self.settings.cve_cache_ttl_hours)
            except MalformedRecordError as exc:
                logger.warning("Feed returned an unusable record for %s: %s", cve_id, exc)
            else:
                self.cache.upsert(cve)
                return LookupResult(source="nvd", cve=cve, is_kev=self.kev.contains(cve_id))

        stale = self.cache.get(cve_id, include_expired=True)
        if stale is not None:
            logger.info("Serving expired cache entry for %s", cve_id)
            return LookupResult(source="cache", cve=stale, is_kev=self.kev.contains(cve_id))
        return LookupResult(source="not_found")

    def recompute_kev_flags(self, client_id: Optional[int] = None) -> int:
        changed = self.matches.recompute_kev_flags(client_id)
        logger.info("Recomputed KEV flags: %d matches changed", changed)
        return changed

    def purge_expired_cache(self) -> int:
        return self.cache.purge_expired()

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def list_new_high_severity(
        self, client_id: int, since: str, min_cvss: Optional[float] = None
    ) -> list[ThreatAlert]:
        """Matches discovered strictly after `since` whose cached CVSS >= min_cvss."""
        threshold = self.settings.alert_min_cvss if min_cvss is None else min_cvss
        fresh = self.matches.list_discovered_since(client_id, since)
        alerts = []
        for s in self._suggestions(fresh):
            if s.cvss_score is not None and s.cvss_score >= threshold:
                alerts.append(
                    ThreatAlert(
                        cve_id=s.match.cve_id,
                        asset_name=s.asset_name,
                        description=s.description,
                        cvss_score=s.cvss_score,
                    )
                )
        return alerts

    def get_daily_briefing(self, client_id: int) -> DailyBriefing:
        since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat(timespec="microseconds")
        fresh = self.matches.list_discovered_since(client_id, since)
        counts = self.matches.count_by_status(client_id)

        open_rows = self.matches.list_for_client(client_id, SUGGESTED)
        high = [s for s in self._suggestions(open_rows) if (s.cvss_score or 0) >= _HIGH_SEVERITY]
        high.sort(key=lambda s: (not s.match.is_kev, -(s.cvss_score or 0), s.match.cve_id))

        return DailyBriefing(
            client_id=client_id,
            generated_at=now_iso(),
            kev=self.get_kev_stats(),
            new_matches_24h=len(fresh),
            new_kev_matches_24h=sum(1 for m in fresh if m.is_kev),
            pending_review=counts.get(SUGGESTED, 0),
            accepted=counts.get(ACCEPTED, 0),
            top_threats=high[:_BRIEFING_TOP_THREATS],
            riskiest_vendors=self.vendor_scans.latest_scans_for_client(client_id, _BRIEFING_VENDORS),
        )
