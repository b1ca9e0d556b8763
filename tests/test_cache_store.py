"""Tests for cache/store.py -- CVE cache, KEV catalog and sync ledger.

Each test gets a fresh in-memory engine from the conftest `engine` fixture.
"""

import pytest

from cache.store import CveCacheStore, KevStore, SyncRunStore
from core.models import RUN_FAILED, RUN_RUNNING, RUN_SUCCESS, SOURCE_KEV, SOURCE_NVD, CachedCve, KevEntry


def _cve(cve_id="CVE-2025-24813", description="Remote code execution in Apache Tomcat", score=9.8, **kwargs):
    kwargs.setdefault("last_modified_at", "2025-01-15T10:00:00.000")
    return CachedCve(cve_id=cve_id, description=description, cvss_score=score, **kwargs)


class TestCveCacheStore:
    def test_insert_and_get(self, engine):
        cache = CveCacheStore(engine)
        assert cache.upsert(_cve(cwe_ids=["CWE-44"], cpe_matches=["cpe:2.3:a:apache:tomcat:*:*:*:*:*:*:*:*"]))
        cve = cache.get("cve-2025-24813")
        assert cve.cve_id == "CVE-2025-24813"
        assert cve.cwe_ids == ["CWE-44"]
        assert cve.cpe_matches == ["cpe:2.3:a:apache:tomcat:*:*:*:*:*:*:*:*"]
        assert cve.fetched_at < cve.expires_at

    def test_get_missing(self, engine):
        assert CveCacheStore(engine).get("CVE-1999-0001") is None

    def test_older_record_does_not_replace_newer(self, engine):
        cache = CveCacheStore(engine)
        cache.upsert(_cve(description="current", last_modified_at="2025-02-01T00:00:00.000"))
        assert cache.upsert(_cve(description="stale", last_modified_at="2025-01-01T00:00:00.000")) is False
        assert cache.get("CVE-2025-24813").description == "current"

    def test_newer_record_replaces(self, engine):
        cache = CveCacheStore(engine)
        cache.upsert(_cve(description="first", last_modified_at="2025-01-01T00:00:00.000"))
        assert cache.upsert(_cve(description="revised", score=8.1, last_modified_at="2025-03-01T00:00:00.000"))
        cve = cache.get("CVE-2025-24813")
        assert cve.description == "revised"
        assert cve.cvss_score == 8.1

    def test_expired_entries_hidden_unless_requested(self, engine):
        stale = CveCacheStore(engine, ttl_hours=-1)
        stale.upsert(_cve())
        assert stale.get("CVE-2025-24813") is None
        assert stale.get("CVE-2025-24813", include_expired=True).cvss_score == 9.8

    def test_purge_expired(self, engine):
        CveCacheStore(engine, ttl_hours=-1).upsert(_cve("CVE-2024-0001"))
        fresh = CveCacheStore(engine)
        fresh.upsert(_cve("CVE-2024-0002"))
        assert fresh.purge_expired() == 1
        assert fresh.count() == 1
        assert fresh.get("CVE-2024-0002") is not None

    def test_refetch_extends_expiry(self, engine):
        CveCacheStore(engine, ttl_hours=-1).upsert(_cve())
        cache = CveCacheStore(engine)
        assert cache.upsert(_cve()) is False
        assert cache.get("CVE-2025-24813") is not None

    def test_search_by_description_and_cpe(self, engine):
        cache = CveCacheStore(engine)
        cache.upsert(_cve("CVE-2024-0001", "Flaw in Apache Tomcat", score=5.0))
        cache.upsert(
            _cve(
                "CVE-2024-0002",
                "Buffer overflow in the HTTP parser",
                score=9.0,
                cpe_matches=["cpe:2.3:a:acme:tomcat_server:*:*:*:*:*:*:*:*"],
            )
        )
        cache.upsert(_cve("CVE-2024-0003", "Unrelated Zoom bug", score=None))

        assert [c.cve_id for c in cache.search(["tomcat"])] == ["CVE-2024-0002", "CVE-2024-0001"]
        # Multi-word keywords are also tried in CPE form.
        assert [c.cve_id for c in cache.search(["tomcat server"])] == ["CVE-2024-0002"]
        assert cache.search([]) == []
        assert cache.search(["", "  "]) == []

    def test_search_escapes_like_wildcards(self, engine):
        cache = CveCacheStore(engine)
        cache.upsert(_cve("CVE-2024-0001", "Flaw in Apache Tomcat"))
        assert cache.search(["%"]) == []

    def test_get_many_includes_expired(self, engine):
        CveCacheStore(engine, ttl_hours=-1).upsert(_cve("CVE-2024-0001"))
        cache = CveCacheStore(engine)
        assert set(cache.get_many(["CVE-2024-0001", "cve-2024-0009"])) == {"CVE-2024-0001"}
        assert cache.get_many([]) == {}


class TestKevStore:
    def test_replace_all_swaps_catalog(self, engine):
        kev = KevStore(engine)
        assert kev.replace_all([KevEntry("CVE-2021-44228"), KevEntry("CVE-2023-44487")]) == 2
        assert kev.replace_all([KevEntry("CVE-2025-24813", known_ransomware_use=True)]) == 1
        assert kev.kev_ids() == {"CVE-2025-24813"}
        assert not kev.contains("CVE-2021-44228")
        assert kev.get("cve-2025-24813").known_ransomware_use is True

    def test_duplicates_keep_first(self, engine):
        kev = KevStore(engine)
        count = kev.replace_all([KevEntry("CVE-2021-44228", product="Log4j2"), KevEntry("cve-2021-44228", product="x")])
        assert count == 1
        assert kev.get("CVE-2021-44228").product == "Log4j2"

    def test_empty_catalog(self, engine):
        kev = KevStore(engine)
        kev.replace_all([KevEntry("CVE-2021-44228")])
        assert kev.replace_all([]) == 0
        assert kev.count() == 0


class TestSyncRunStore:
    def test_start_and_finish(self, engine):
        runs = SyncRunStore(engine)
        run = runs.start(SOURCE_KEV)
        assert run.status == RUN_RUNNING
        assert runs.latest(SOURCE_KEV, completed_only=True) is None

        done = runs.finish(run.id, RUN_SUCCESS, 1200)
        assert done.status == RUN_SUCCESS
        assert done.record_count == 1200
        assert done.completed_at is not None
        assert runs.latest(SOURCE_KEV, completed_only=True).id == run.id

    def test_finish_is_written_once(self, engine):
        runs = SyncRunStore(engine)
        run = runs.start(SOURCE_NVD)
        runs.finish(run.id, RUN_FAILED, 0, "feed down")
        again = runs.finish(run.id, RUN_SUCCESS, 10)
        assert again.status == RUN_FAILED
        assert again.error == "feed down"

    def test_finish_unknown_run(self, engine):
        with pytest.raises(LookupError):
            SyncRunStore(engine).finish(999, RUN_SUCCESS)

    def test_list_recent_filters_by_source(self, engine):
        runs = SyncRunStore(engine)
        runs.start(SOURCE_KEV)
        runs.start(SOURCE_NVD)
        latest_kev = runs.start(SOURCE_KEV)
        recent = runs.list_recent(SOURCE_KEV)
        assert [r.source for r in recent] == [SOURCE_KEV, SOURCE_KEV]
        assert recent[0].id == latest_kev.id
        assert len(runs.list_recent()) == 3
