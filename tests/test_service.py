"""
tests/test_service.py -- ThreatIntelService against real stores and the fixture feed.

Covers:
  - asset scans: ranking, KEV first, no duplicate rows on rescan
  - review decisions survive rescans; KEV flags follow every catalog sync
  - per-asset failure isolation in client scans
  - one-way, idempotent import into vulnerability tracking
  - vendor scans: risk score, breach upsert, partial status
  - KEV sync ledger, CVE lookup sources and the daily briefing
"""

from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from cmdb.models import Asset, Vendor
from cmdb.store import MatchStore
from conftest import build_service, make_settings, tomcat_asset
from core.errors import (
    AssetNotFoundError,
    CveNotFoundError,
    FeedUnavailableError,
    InvalidTransitionError,
    MatchNotFoundError,
    VendorNotFoundError,
)
from core.fetcher import FixtureFeedClient
from core.models import ACCEPTED, DISMISSED, IMPORTED, RUN_FAILED, RUN_PARTIAL, RUN_SUCCESS, SUGGESTED
from nvd_fixtures import ALL_CVES, STRUTS_RCE, kev_record

TOMCAT_IDS = {"CVE-2025-24813", "CVE-2024-50379", "CVE-2024-21733"}


class ExplodingFeed(FixtureFeedClient):
    """Fixture feed that raises an unexpected error for one query."""

    def search(self, keyword, cpe_name=None, max_results=50):
        if keyword == "broken thing":
            raise RuntimeError("driver crashed")
        return super().search(keyword, cpe_name, max_results)


class LinkFailingMatchStore(MatchStore):
    """Match store whose import link fails after the vulnerability insert."""

    def _link(self, conn, match_id, vulnerability_id):
        raise OperationalError("UPDATE asset_cve_matches", {}, Exception("disk I/O error"))


class UnreachableBreaches:
    def search(self, vendor_name, website=None):
        raise FeedUnavailableError("breach source timed out")


def _by_id(matches):
    return {m.cve_id: m for m in matches}


# ---------------------------------------------------------------------------
# Asset scans
# ---------------------------------------------------------------------------


class TestScanAsset:
    def test_tomcat_end_to_end(self, service, asset_id):
        """Known exploited CVSS 9.8 CVE is suggested, flagged and ranked first."""
        assert service.sync_kev_catalog().status == RUN_SUCCESS

        result = service.scan_asset(1, asset_id)

        assert result.feed_error is None
        assert result.new_matches == 3
        assert [c.cve_id for c in result.matches] == ["CVE-2025-24813", "CVE-2024-21733", "CVE-2024-50379"]
        top = service.get_asset_suggestions(asset_id)[0]
        assert top.match.cve_id == "CVE-2025-24813"
        assert top.match.status == SUGGESTED
        assert top.match.is_kev is True
        assert top.cvss_score == 9.8
        assert top.asset_name == "Billing Tomcat"

    def test_scores_and_reasons(self, service, asset_id):
        scored = _by_id(service.scan_asset(1, asset_id).matches)
        assert scored["CVE-2024-21733"].match_score == 80
        assert "exact CPE match" in scored["CVE-2024-21733"].match_reason
        assert "version 9.0.86 in affected range" in scored["CVE-2024-21733"].match_reason
        assert scored["CVE-2025-24813"].match_score == 60
        assert all(0 <= c.match_score <= 100 for c in scored.values())

    def test_unrelated_cves_not_matched(self, service, asset_id):
        assert "CVE-2024-24691" not in _by_id(service.scan_asset(1, asset_id).matches)

    def test_rescan_creates_no_duplicates(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        second = service.scan_asset(1, asset_id)
        assert second.new_matches == 0
        assert second.updated_matches == 3
        rows = stores.matches.list_for_asset(asset_id)
        assert len(rows) == 3
        assert {m.cve_id for m in rows} == TOMCAT_IDS

    def test_dismissal_survives_rescan(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        target = stores.matches.get_by_key(1, asset_id, "CVE-2024-50379")
        service.update_match_status(target.id, DISMISSED, reviewed_by=5)

        result = service.scan_asset(1, asset_id)

        assert result.reviewed_untouched == 1
        after = stores.matches.get(target.id)
        assert after.status == DISMISSED
        assert after.reviewed_by == 5

    def test_cached_kev_cve_of_same_vendor_is_not_suggested(self, stores, asset_id):
        """A cached Apache Struts KEV entry shares only the vendor with the Tomcat asset."""
        feed = FixtureFeedClient(
            cves=[*ALL_CVES, STRUTS_RCE], kev=[kev_record("CVE-2025-24813"), kev_record("CVE-2017-5638")]
        )
        service = build_service(stores, feed)
        service.sync_kev_catalog()
        assert service.lookup_cve("CVE-2017-5638").is_kev is True

        result = service.scan_asset(1, asset_id)

        assert result.candidates_found == 4
        assert "CVE-2017-5638" not in _by_id(result.matches)
        assert result.matches[0].cve_id == "CVE-2025-24813"
        assert stores.matches.get_by_key(1, asset_id, "CVE-2017-5638") is None

    def test_kev_flag_follows_catalog_syncs(self, service, feed, stores, asset_id):
        service.scan_asset(1, asset_id)
        match = stores.matches.get_by_key(1, asset_id, "CVE-2025-24813")
        assert match.is_kev is False

        service.sync_kev_catalog()
        assert stores.matches.get(match.id).is_kev is True
        service.scan_asset(1, asset_id)
        assert stores.matches.get(match.id).is_kev is True

    def test_catalog_removal_clears_open_rows_only(self, service, feed, stores, asset_id):
        feed.kev = [kev_record("CVE-2025-24813"), kev_record("CVE-2024-21733")]
        service.sync_kev_catalog()
        service.scan_asset(1, asset_id)
        dismissed = stores.matches.get_by_key(1, asset_id, "CVE-2025-24813")
        service.update_match_status(dismissed.id, DISMISSED)
        feed.kev = [kev_record("CVE-2024-50379")]

        assert service.sync_kev_catalog().status == RUN_SUCCESS

        assert stores.matches.get(dismissed.id).is_kev is True
        assert stores.matches.get_by_key(1, asset_id, "CVE-2024-21733").is_kev is False
        assert stores.matches.get_by_key(1, asset_id, "CVE-2024-50379").is_kev is True
        assert service.recompute_kev_flags(1) == 0

    def test_persisted_matches_capped(self, stores, feed, asset_id):
        service = build_service(stores, feed, settings=make_settings(max_asset_matches=1))
        result = service.scan_asset(1, asset_id)
        assert len(result.matches) == 3
        assert len(stores.matches.list_for_asset(asset_id)) == 1

    def test_cpe_search_tried_first(self, service, feed, asset_id):
        service.scan_asset(1, asset_id)
        keyword, cpe = feed.calls[0]
        assert keyword == "apache tomcat"
        assert cpe == "cpe:2.3:a:apache:tomcat:9.0.86:*:*:*:*:*:*:*"

    def test_feed_outage_falls_back_to_cache(self, stores, asset_id):
        warm = build_service(stores, FixtureFeedClient(cves=ALL_CVES))
        warm.scan_asset(1, asset_id)

        cold = build_service(stores, FixtureFeedClient(cves=[], fail_on=["apache tomcat"]))
        result = cold.scan_asset(1, asset_id)

        assert result.feed_error
        assert {c.cve_id for c in result.matches} == TOMCAT_IDS

    def test_wrong_client_is_not_found(self, service, asset_id):
        with pytest.raises(AssetNotFoundError):
            service.scan_asset(2, asset_id)
        with pytest.raises(AssetNotFoundError):
            service.scan_asset(1, asset_id + 999)

    def test_non_software_asset_skipped(self, service, stores, feed):
        aid = stores.inventory.create_asset(tomcat_asset(name="Badge reader", asset_type="Facility"))
        result = service.scan_asset(1, aid)
        assert result.skipped
        assert feed.calls == []

    def test_asset_without_identifiers_skipped(self, service, stores):
        aid = stores.inventory.create_asset(Asset(client_id=1, name="  "))
        assert service.scan_asset(1, aid).skip_reason == "no vendor, product or keywords"


class TestScanAllAssets:
    def test_failures_are_isolated(self, stores):
        feed = ExplodingFeed(cves=ALL_CVES, fail_on=["acme widget"])
        service = build_service(stores, feed)
        good = stores.inventory.create_asset(tomcat_asset())
        stores.inventory.create_asset(Asset(client_id=1, name="Crashy", vendor="Broken", product_name="Thing"))
        stores.inventory.create_asset(Asset(client_id=1, name="Offline", vendor="Acme", product_name="Widget"))
        stores.inventory.create_asset(tomcat_asset(name="Door", asset_type="Facility"))

        summary = service.scan_all_assets(1)

        assert summary.assets_scanned == 1
        assert summary.assets_failed == 2
        assert summary.assets_skipped == 1
        assert summary.new_matches == 3
        assert not summary.ok
        assert len(summary.errors) == 2
        assert len(stores.matches.list_for_asset(good)) == 3

    def test_client_without_assets(self, service):
        summary = service.scan_all_assets(42)
        assert summary.ok
        assert summary.assets_scanned == 0
        assert summary.completed_at is not None


# ---------------------------------------------------------------------------
# Review and import
# ---------------------------------------------------------------------------


class TestReview:
    def test_client_suggestions_filter(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        first = service.get_client_suggestions(1)[0]
        service.update_match_status(first.match.id, ACCEPTED)
        accepted = service.get_client_suggestions(1, ACCEPTED)
        assert [s.match.id for s in accepted] == [first.match.id]
        assert len(service.get_client_suggestions(1, SUGGESTED)) == 2
        with pytest.raises(ValueError):
            service.get_client_suggestions(1, "archived")

    def test_bulk_update_reports_each_id(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        ids = [s.match.id for s in service.get_client_suggestions(1)]
        service.update_match_status(ids[0], ACCEPTED)

        result = service.bulk_update_match_status([ids[0], ids[1], ids[1], 9999], DISMISSED)

        assert result.outcomes == {ids[0]: "invalid", ids[1]: "updated", 9999: "not_found"}
        assert result.count("updated") == 1
        assert stores.matches.get(ids[2]).status == SUGGESTED

    def test_bulk_update_rejects_other_statuses(self, service):
        with pytest.raises(ValueError):
            service.bulk_update_match_status([1], IMPORTED)


class TestImport:
    def test_import_is_one_way_and_idempotent(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        match = stores.matches.get_by_key(1, asset_id, "CVE-2025-24813")
        service.update_match_status(match.id, ACCEPTED)

        first = service.import_cve_as_vulnerability(1, asset_id, "cve-2025-24813")
        second = service.import_cve_as_vulnerability(1, asset_id, "CVE-2025-24813", match.id)

        assert first.created is True
        assert first.severity == "Critical"
        assert second.created is False
        assert second.vulnerability_id == first.vulnerability_id
        assert stores.vulnerabilities.count(1) == 1
        stored = stores.matches.get(match.id)
        assert stored.status == IMPORTED
        assert stored.imported_vulnerability_id == first.vulnerability_id
        vuln = stores.vulnerabilities.get(first.vulnerability_id)
        assert vuln.name.startswith("CVE-2025-24813: Path Equivalence")
        assert vuln.name.endswith("...")
        with pytest.raises(InvalidTransitionError):
            service.update_match_status(match.id, DISMISSED)

    def test_failed_link_leaves_no_vulnerability_behind(self, engine, service, stores, feed, asset_id):
        service.scan_asset(1, asset_id)
        broken = SimpleNamespace(**vars(stores))
        broken.matches = LinkFailingMatchStore(engine)

        with pytest.raises(OperationalError):
            build_service(broken, feed).import_cve_as_vulnerability(1, asset_id, "CVE-2025-24813")
        assert stores.vulnerabilities.count() == 0
        assert stores.matches.get_by_key(1, asset_id, "CVE-2025-24813").status == SUGGESTED

        retry = service.import_cve_as_vulnerability(1, asset_id, "CVE-2025-24813")
        assert retry.created is True
        assert stores.vulnerabilities.count() == 1

    def test_suggested_match_can_be_imported(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        result = service.import_cve_as_vulnerability(1, asset_id, "CVE-2024-21733")
        assert result.severity == "Medium"
        assert stores.matches.get(result.match_id).status == IMPORTED

    def test_dismissed_match_cannot_be_imported(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        match = stores.matches.get_by_key(1, asset_id, "CVE-2024-50379")
        service.update_match_status(match.id, DISMISSED)
        with pytest.raises(InvalidTransitionError):
            service.import_cve_as_vulnerability(1, asset_id, "CVE-2024-50379")
        assert stores.vulnerabilities.count() == 0

    def test_mismatched_match_id(self, service, stores, asset_id):
        service.scan_asset(1, asset_id)
        match = stores.matches.get_by_key(1, asset_id, "CVE-2024-50379")
        with pytest.raises(MatchNotFoundError):
            service.import_cve_as_vulnerability(1, asset_id, "CVE-2025-24813", match.id)

    def test_import_without_match(self, service, stores, asset_id):
        result = service.import_cve_as_vulnerability(1, asset_id, "CVE-2024-24691")
        assert result.created is True
        assert result.match_id is None
        assert result.severity == "Critical"

    def test_unknown_cve(self, service, asset_id):
        with pytest.raises(CveNotFoundError):
            service.import_cve_as_vulnerability(1, asset_id, "CVE-1999-0001")

    def test_malformed_cve_id(self, service, asset_id):
        with pytest.raises(ValueError):
            service.import_cve_as_vulnerability(1, asset_id, "log4shell")


# ---------------------------------------------------------------------------
# Vendors
# ---------------------------------------------------------------------------


class TestScanVendor:
    def test_zoom_scan(self, service, stores):
        service.sync_kev_catalog()
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Zoom", website="zoom.us"))

        result = service.scan_vendor(1, vid)

        assert [c.cve_id for c in result.matches] == ["CVE-2024-24691"]
        assert result.matches[0].match_score == 60
        assert len(result.breaches) == 2
        assert result.new_breaches == 2
        # 10 for the 9.6 CVE, 15 for the risk-90 breach, 4 for the risk-40 breach.
        assert result.scan.risk_score == 71
        assert result.scan.status == "completed"
        assert result.scan.vulnerability_count == 1
        assert result.scan.breach_count == 2

    def test_rescan_does_not_duplicate_breaches(self, service, stores):
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Zoom"))
        service.scan_vendor(1, vid)
        second = service.scan_vendor(1, vid)
        assert second.new_breaches == 0
        assert len(stores.vendor_scans.list_breaches(vid)) == 2

    def test_breach_source_failure_is_partial(self, stores, feed):
        service = build_service(stores, feed, breaches=UnreachableBreaches())
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Zoom"))
        result = service.scan_vendor(1, vid)
        assert result.scan.status == "partial"
        assert result.breach_error == "breach source timed out"
        assert result.scan.risk_score == 90

    def test_vendor_without_findings(self, service, stores):
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Initech"))
        result = service.scan_vendor(1, vid)
        assert result.scan.risk_score == 100
        assert result.matches == []

    def test_suggestions_use_latest_scan(self, service, stores):
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Zoom"))
        service.scan_vendor(1, vid)
        view = service.get_vendor_suggestions(vid)
        assert view.vendor.name == "Zoom"
        assert view.scan.status == "completed"
        assert view.matches[0].description.startswith("Improper input validation in Zoom")
        assert len(view.breaches) == 2

    def test_vendor_ownership(self, service, stores):
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Zoom"))
        with pytest.raises(VendorNotFoundError):
            service.scan_vendor(2, vid)
        with pytest.raises(VendorNotFoundError):
            service.get_vendor_suggestions(vid + 50)


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


class TestKevSync:
    def test_success(self, service):
        run = service.sync_kev_catalog()
        assert run.status == RUN_SUCCESS
        assert run.record_count == 1
        stats = service.get_kev_stats()
        assert stats.total == 1
        assert stats.last_status == RUN_SUCCESS
        assert stats.last_sync_at == run.completed_at

    def test_outage_keeps_previous_catalog(self, service, feed, stores):
        service.sync_kev_catalog()
        feed.kev_available = False

        run = service.sync_kev_catalog()

        assert run.status == RUN_FAILED
        assert run.error
        assert stores.kev.contains("CVE-2025-24813")
        stats = service.get_kev_stats()
        assert stats.last_status == RUN_FAILED
        assert stats.total == 1
        assert stats.last_sync_at is not None

    def test_all_malformed_keeps_previous_catalog(self, service, feed, stores):
        service.sync_kev_catalog()
        feed.kev = [{"vendorProject": "nobody"}, "garbage"]
        run = service.sync_kev_catalog()
        assert run.status == RUN_FAILED
        assert stores.kev.count() == 1

    def test_some_malformed_is_partial(self, service, feed, stores):
        feed.kev = [kev_record("CVE-2021-44228"), {"cveID": None}]
        run = service.sync_kev_catalog()
        assert run.status == RUN_PARTIAL
        assert run.record_count == 1
        assert stores.kev.kev_ids() == {"CVE-2021-44228"}

    def test_never_synced(self, service):
        stats = service.get_kev_stats()
        assert stats.total == 0
        assert stats.last_sync_at is None
        assert stats.last_status is None


class TestLookupCve:
    def test_fetch_then_cache(self, service, feed):
        first = service.lookup_cve(" cve-2024-50379 ")
        assert first.source == "nvd"
        assert first.cve.cvss_score == 9.8
        second = service.lookup_cve("CVE-2024-50379")
        assert second.source == "cache"

    def test_not_found(self, service):
        result = service.lookup_cve("CVE-1999-0001")
        assert result.source == "not_found"
        assert result.cve is None

    def test_expired_entry_served_when_feed_has_nothing(self, stores, engine):
        from cache.store import CveCacheStore

        warm = build_service(stores, FixtureFeedClient(cves=ALL_CVES))
        warm.lookup_cve("CVE-2024-50379")
        # Age the entry by re-writing it through a store with a negative TTL.
        CveCacheStore(engine, ttl_hours=-1).upsert(stores.cache.get("CVE-2024-50379"))

        offline = build_service(stores, FixtureFeedClient(cves=[]))
        result = offline.lookup_cve("CVE-2024-50379")
        assert result.source == "cache"
        assert result.cve.cve_id == "CVE-2024-50379"

    def test_kev_flag(self, service):
        service.sync_kev_catalog()
        assert service.lookup_cve("CVE-2025-24813").is_kev is True
        assert service.lookup_cve("CVE-2024-50379").is_kev is False

    @pytest.mark.parametrize("bad", ["", "CVE-24-1", "2021-44228", "CVE-2021-12"])
    def test_invalid_format(self, service, bad):
        with pytest.raises(ValueError):
            service.lookup_cve(bad)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


class TestSummaries:
    def test_new_high_severity_since(self, service, asset_id):
        before = "2000-01-01T00:00:00+00:00"
        service.scan_asset(1, asset_id)
        alerts = service.list_new_high_severity(1, before)
        assert {a.cve_id for a in alerts} == {"CVE-2025-24813", "CVE-2024-50379"}
        assert all(a.asset_name == "Billing Tomcat" for a in alerts)
        assert len(service.list_new_high_severity(1, before, min_cvss=5.0)) == 3

    def test_daily_briefing(self, service, stores, asset_id):
        service.sync_kev_catalog()
        service.scan_asset(1, asset_id)
        vid = stores.inventory.create_vendor(Vendor(client_id=1, name="Zoom"))
        service.scan_vendor(1, vid)
        leak = stores.matches.get_by_key(1, asset_id, "CVE-2024-21733")
        service.update_match_status(leak.id, ACCEPTED)

        briefing = service.get_daily_briefing(1)

        assert briefing.kev.total == 1
        assert briefing.new_matches_24h == 3
        assert briefing.new_kev_matches_24h == 1
        assert briefing.pending_review == 2
        assert briefing.accepted == 1
        assert [s.match.cve_id for s in briefing.top_threats] == ["CVE-2025-24813", "CVE-2024-50379"]
        assert [s.vendor_id for s in briefing.riskiest_vendors] == [vid]

    def test_briefing_for_empty_client(self, service):
        briefing = service.get_daily_briefing(77)
        assert briefing.new_matches_24h == 0
        assert briefing.top_threats == []
        assert briefing.riskiest_vendors == []
