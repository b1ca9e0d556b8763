"""
cmdb/repositories.py -- Narrow repository interfaces.

ThreatIntelService and Scheduler depend on these protocols, not on the
SQLAlchemy stores, so tests can substitute an in-memory store or a mock that
fails on a chosen call. The concrete implementations live in cache/store.py
and cmdb/store.py.
"""

from typing import Iterable, Optional, Protocol

from cmdb.models import Asset, Vendor, Vulnerability
from core.models import (
    AssetCveMatch,
    BreachRecord,
    CachedCve,
    KevEntry,
    SyncRun,
    VendorBreach,
    VendorCveMatch,
    VendorScan,
)


class InventoryRepository(Protocol):
    def get_asset(self, asset_id: int) -> Optional[Asset]: ...

    def list_assets(self, client_id: int) -> list[Asset]: ...

    def list_client_ids(self) -> list[int]: ...

    def get_vendor(self, vendor_id: int) -> Optional[Vendor]: ...


class CveCacheRepository(Protocol):
    def get(self, cve_id: str, include_expired: bool = False) -> Optional[CachedCve]: ...

    def get_many(self, cve_ids: Iterable[str]) -> dict[str, CachedCve]: ...

    def upsert(self, cve: CachedCve) -> bool: ...

    def search(self, keywords: Iterable[str], limit: int = 50) -> list[CachedCve]: ...

    def purge_expired(self) -> int: ...


class KevRepository(Protocol):
    def replace_all(self, entries: Iterable[KevEntry]) -> int: ...

    def contains(self, cve_id: str) -> bool: ...

    def kev_ids(self) -> set[str]: ...

    def count(self) -> int: ...


class SyncRunRepository(Protocol):
    def start(self, source: str) -> SyncRun: ...

    def finish(self, run_id: int, status: str, record_count: int = 0, error: Optional[str] = None) -> SyncRun: ...

    def latest(self, source: str, completed_only: bool = False) -> Optional[SyncRun]: ...

    def list_recent(self, source: Optional[str] = None, limit: int = 20) -> list[SyncRun]: ...


class MatchRepository(Protocol):
    def upsert_suggestion(
        self, client_id: int, asset_id: int, cve_id: str, match_score: int, match_reason: str, is_kev: bool
    ) -> tuple[AssetCveMatch, bool]: ...

    def get(self, match_id: int) -> Optional[AssetCveMatch]: ...

    def get_by_key(self, client_id: int, asset_id: int, cve_id: str) -> Optional[AssetCveMatch]: ...

    def list_for_asset(self, asset_id: int) -> list[AssetCveMatch]: ...

    def list_for_client(self, client_id: int, status: Optional[str] = None) -> list[AssetCveMatch]: ...

    def update_status(
        self, match_id: int, status: str, reviewed_by: Optional[int] = None
    ) -> tuple[AssetCveMatch, bool]: ...

    def import_vulnerability(self, match_id: int, vuln: Vulnerability) -> tuple[AssetCveMatch, bool]: ...

    def list_discovered_since(self, client_id: int, since: str) -> list[AssetCveMatch]: ...

    def count_by_status(self, client_id: int) -> dict[str, int]: ...

    def recompute_kev_flags(self, client_id: Optional[int] = None) -> int: ...


class VulnerabilityRepository(Protocol):
    def create(self, vuln: Vulnerability) -> int: ...

    def get(self, vuln_id: int) -> Optional[Vulnerability]: ...


class VendorScanRepository(Protocol):
    def start_scan(self, client_id: int, vendor_id: int) -> VendorScan: ...

    def finish_scan(
        self, scan_id: int, risk_score: int, vulnerability_count: int, breach_count: int, status: str
    ) -> VendorScan: ...

    def add_cve_matches(self, matches: Iterable[VendorCveMatch]) -> int: ...

    def upsert_breach(self, vendor_id: int, breach: BreachRecord, scan_id: int) -> tuple[VendorBreach, bool]: ...

    def latest_scan(self, vendor_id: int) -> Optional[VendorScan]: ...

    def list_cve_matches(self, scan_id: int) -> list[VendorCveMatch]: ...

    def list_breaches(self, vendor_id: int) -> list[VendorBreach]: ...

    def latest_scans_for_client(self, client_id: int, limit: int = 5) -> list[VendorScan]: ...
