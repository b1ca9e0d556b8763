"""
tests/test_api_routes.py -- Integration tests for the /api/v1/threat-intel routes.

These tests exercise the full stack: FastAPI routing -> ThreatIntelService ->
SQLAlchemy stores -> response model serialization, with the fixture feed in
place of NVD.

The api_client fixture is module-scoped, so the classes below run as one
workflow against a single database: KEV sync, asset scan, review, import,
lookup, vendor scan, briefing. Each rate-limited route is called well below
its per-minute limit.

Fixtures used (from conftest.py):
  - api_client: (client, seed) -- seed holds client_id, asset_id, vendor_id,
    other_asset_id (owned by client 2) and the stores
"""

from __future__ import annotations

from types import SimpleNamespace

from fastapi.testclient import TestClient

PREFIX = "/api/v1/threat-intel"

ApiClient = tuple[TestClient, SimpleNamespace]


def _match_id(seed: SimpleNamespace, cve_id: str) -> int:
    return seed.stores.matches.get_by_key(seed.client_id, seed.asset_id, cve_id).id


class TestKevRoutes:
    def test_sync(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        resp = client.post(f"{PREFIX}/kev/sync")
        assert resp.status_code == 200
        data = resp.json()
        assert data["source"] == "cisa_kev"
        assert data["status"] == "success"
        assert data["record_count"] == 1
        assert data["completed_at"] is not None

    def test_stats(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        data = client.get(f"{PREFIX}/kev/stats").json()
        assert data["total"] == 1
        assert data["last_status"] == "success"
        assert data["last_sync_at"] is not None


class TestScanRoutes:
    def test_scan_asset(self, api_client: ApiClient) -> None:
        client, seed = api_client
        resp = client.post(f"{PREFIX}/clients/{seed.client_id}/assets/{seed.asset_id}/scan")
        assert resp.status_code == 200
        data = resp.json()
        assert data["asset_name"] == "Billing Tomcat"
        assert data["new_matches"] == 3
        assert data["feed_error"] is None
        top = data["matches"][0]
        assert top["cve_id"] == "CVE-2025-24813"
        assert top["is_kev"] is True
        assert top["cvss_score"] == 9.8

    def test_scan_asset_of_other_client_is_404(self, api_client: ApiClient) -> None:
        client, seed = api_client
        resp = client.post(f"{PREFIX}/clients/{seed.client_id}/assets/{seed.other_asset_id}/scan")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "asset_not_found"

    def test_scan_unknown_asset_is_404(self, api_client: ApiClient) -> None:
        client, seed = api_client
        resp = client.post(f"{PREFIX}/clients/{seed.client_id}/assets/99999/scan")
        assert resp.status_code == 404

    def test_scan_client(self, api_client: ApiClient) -> None:
        client, seed = api_client
        data = client.post(f"{PREFIX}/clients/{seed.client_id}/scan").json()
        assert data["assets_scanned"] == 1
        assert data["assets_failed"] == 0
        assert data["new_matches"] == 0
        assert data["errors"] == []

    def test_asset_suggestions(self, api_client: ApiClient) -> None:
        client, seed = api_client
        rows = client.get(f"{PREFIX}/assets/{seed.asset_id}/suggestions").json()
        assert [r["cve_id"] for r in rows] == ["CVE-2025-24813", "CVE-2024-21733", "CVE-2024-50379"]
        assert rows[0]["status"] == "suggested"
        assert rows[0]["asset_name"] == "Billing Tomcat"
        assert rows[1]["cvss_score"] == 5.3

    def test_client_suggestions_rejects_unknown_status(self, api_client: ApiClient) -> None:
        client, seed = api_client
        resp = client.get(f"{PREFIX}/clients/{seed.client_id}/suggestions", params={"status": "archived"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestReviewRoutes:
    def test_accept(self, api_client: ApiClient) -> None:
        client, seed = api_client
        match_id = _match_id(seed, "CVE-2024-21733")
        resp = client.patch(f"{PREFIX}/matches/{match_id}", json={"status": "accepted", "reviewed_by": 7})
        assert resp.status_code == 200
        data = resp.json()
        assert data["changed"] is True
        assert data["match"]["status"] == "accepted"
        assert data["match"]["reviewed_by"] == 7

    def test_repeat_is_unchanged(self, api_client: ApiClient) -> None:
        client, seed = api_client
        match_id = _match_id(seed, "CVE-2024-21733")
        data = client.patch(f"{PREFIX}/matches/{match_id}", json={"status": "accepted"}).json()
        assert data["changed"] is False

    def test_accepted_cannot_be_dismissed(self, api_client: ApiClient) -> None:
        client, seed = api_client
        match_id = _match_id(seed, "CVE-2024-21733")
        resp = client.patch(f"{PREFIX}/matches/{match_id}", json={"status": "dismissed"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_transition"

    def test_unknown_match(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        resp = client.patch(f"{PREFIX}/matches/99999", json={"status": "accepted"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "match_not_found"

    def test_imported_is_not_a_review_status(self, api_client: ApiClient) -> None:
        client, seed = api_client
        match_id = _match_id(seed, "CVE-2025-24813")
        resp = client.patch(f"{PREFIX}/matches/{match_id}", json={"status": "imported"})
        assert resp.status_code == 422

    def test_bulk_dismiss(self, api_client: ApiClient) -> None:
        client, seed = api_client
        match_id = _match_id(seed, "CVE-2024-50379")
        resp = client.post(
            f"{PREFIX}/matches/bulk-status", json={"match_ids": [match_id, match_id, 99999], "status": "dismissed"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["updated"] == 1
        assert data["not_found"] == 1
        assert data["outcomes"][str(match_id)] == "updated"


class TestImportRoute:
    def test_import_then_repeat(self, api_client: ApiClient) -> None:
        client, seed = api_client
        body = {"client_id": seed.client_id, "asset_id": seed.asset_id, "cve_id": "CVE-2025-24813"}
        first = client.post(f"{PREFIX}/import", json=body)
        assert first.status_code == 200
        created = first.json()
        assert created["created"] is True
        assert created["severity"] == "Critical"
        assert created["is_kev"] is True

        again = client.post(f"{PREFIX}/import", json=body).json()
        assert again["created"] is False
        assert again["vulnerability_id"] == created["vulnerability_id"]
        assert seed.stores.vulnerabilities.count(seed.client_id) == 1

    def test_dismissed_match_conflicts(self, api_client: ApiClient) -> None:
        client, seed = api_client
        body = {"client_id": seed.client_id, "asset_id": seed.asset_id, "cve_id": "CVE-2024-50379"}
        resp = client.post(f"{PREFIX}/import", json=body)
        assert resp.status_code == 409

    def test_unknown_cve(self, api_client: ApiClient) -> None:
        client, seed = api_client
        body = {"client_id": seed.client_id, "asset_id": seed.asset_id, "cve_id": "CVE-1999-0001"}
        resp = client.post(f"{PREFIX}/import", json=body)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_malformed_cve_id(self, api_client: ApiClient) -> None:
        client, seed = api_client
        body = {"client_id": seed.client_id, "asset_id": seed.asset_id, "cve_id": "log4shell"}
        assert client.post(f"{PREFIX}/import", json=body).status_code == 422


class TestCveLookup:
    def test_cached(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        data = client.get(f"{PREFIX}/cve/CVE-2025-24813").json()
        assert data["source"] == "cache"
        assert data["is_kev"] is True
        assert data["cve"]["cvss_score"] == 9.8
        assert data["cve"]["cwe_ids"] == ["CWE-44", "CWE-502"]

    def test_fetched_from_feed(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        data = client.get(f"{PREFIX}/cve/cve-2024-24691").json()
        assert data["source"] == "nvd"
        assert data["cve"]["cve_id"] == "CVE-2024-24691"

    def test_not_found(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        resp = client.get(f"{PREFIX}/cve/CVE-1999-0001")
        assert resp.status_code == 200
        assert resp.json() == {"source": "not_found", "is_kev": False, "cve": None}

    def test_invalid_id(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        resp = client.get(f"{PREFIX}/cve/not-a-cve")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_cve_id"


class TestVendorRoutes:
    def test_scan_vendor(self, api_client: ApiClient) -> None:
        client, seed = api_client
        resp = client.post(f"{PREFIX}/clients/{seed.client_id}/vendors/{seed.vendor_id}/scan")
        assert resp.status_code == 200
        data = resp.json()
        assert data["scan"]["risk_score"] == 71
        assert data["scan"]["status"] == "completed"
        assert [m["cve_id"] for m in data["matches"]] == ["CVE-2024-24691"]
        assert len(data["breaches"]) == 2
        assert data["breach_error"] is None

    def test_scan_vendor_of_other_client(self, api_client: ApiClient) -> None:
        client, seed = api_client
        resp = client.post(f"{PREFIX}/clients/2/vendors/{seed.vendor_id}/scan")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "vendor_not_found"

    def test_vendor_suggestions(self, api_client: ApiClient) -> None:
        client, seed = api_client
        data = client.get(f"{PREFIX}/vendors/{seed.vendor_id}/suggestions").json()
        assert data["vendor_name"] == "Zoom"
        assert data["scan"]["risk_score"] == 71
        assert data["matches"][0]["description"].startswith("Improper input validation")
        assert {b["title"] for b in data["breaches"]} == {b.title for b in seed.stores.vendor_scans.list_breaches(seed.vendor_id)}

    def test_unknown_vendor(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        assert client.get(f"{PREFIX}/vendors/99999/suggestions").status_code == 404


class TestBriefing:
    def test_briefing_reflects_workflow(self, api_client: ApiClient) -> None:
        client, seed = api_client
        data = client.get(f"{PREFIX}/clients/{seed.client_id}/briefing").json()
        assert data["kev"]["total"] == 1
        assert data["new_matches_24h"] == 3
        assert data["pending_review"] == 0
        assert data["accepted"] == 1
        assert data["top_threats"] == []
        assert [v["vendor_id"] for v in data["riskiest_vendors"]] == [seed.vendor_id]


class TestErrorEnvelope:
    def test_unknown_route(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        resp = client.get(f"{PREFIX}/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "http_404"

    def test_untrusted_host_rejected(self, api_client: ApiClient) -> None:
        client, _seed = api_client
        resp = client.get("/api/v1/health", headers={"host": "evil.example.com"})
        assert resp.status_code == 400
