"""
intel/models.py -- Result types returned by ThreatIntelService.

Plain dataclasses so the CLI can print them and the API can map them onto
pydantic response models without either layer knowing about the stores.
"""

from dataclasses import dataclass, field
from typing import Optional

from cmdb.models import Vendor
from core.models import AssetCveMatch, CachedCve, MatchCandidate, SyncRun, VendorBreach, VendorScan


@dataclass
class AssetScanResult:
    client_id: int
    asset_id: int
    asset_name: str = ""
    candidates_found: int = 0
    new_matches: int = 0
    updated_matches: int = 0
    reviewed_untouched: int = 0
    matches: list[MatchCandidate] = field(default_factory=list)  # ranked, capped
    skipped: bool = False
    skip_reason: Optional[str] = None
    feed_error: Optional[str] = None  # set when the feed failed; cache results still used


@dataclass
class ClientScanSummary:
    client_id: int
    started_at: str
    completed_at: Optional[str] = None
    assets_scanned: int = 0
    assets_skipped: int = 0
    assets_failed: int = 0
    new_matches: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.assets_failed == 0


@dataclass
class MatchSuggestion:
    """A stored match joined with its asset name and cached CVE details."""

    match: AssetCveMatch
    asset_name: str = ""
    cvss_score: Optional[float] = None
    cvss_vector: Optional[str] = None
    description: str = ""


@dataclass
class StatusUpdateResult:
    match: AssetCveMatch
    changed: bool


@dataclass
class BulkStatusResult:
    status: str
    outcomes: dict[int, str] = field(default_factory=dict)  # updated | unchanged | not_found | invalid

    def count(self, outcome: str) -> int:
        return sum(1 for v in self.outcomes.values() if v == outcome)


@dataclass
class ImportResult:
    vulnerability_id: int
    created: bool
    severity: str
    match_id: Optional[int] = None
    is_kev: bool = False


@dataclass
class VendorMatchView:
    cve_id: str
    match_score: int
    match_reason: str
    cvss_score: Optional[float]
    is_kev: bool
    description: str = ""


@dataclass
class VendorScanResult:
    scan: VendorScan
    matches: list[MatchCandidate] = field(default_factory=list)
    breaches: list[VendorBreach] = field(default_factory=list)
    new_breaches: int = 0
    feed_error: Optional[str] = None
    breach_error: Optional[str] = None


@dataclass
class VendorSuggestions:
    vendor: Vendor
    scan: Optional[VendorScan] = None
    matches: list[VendorMatchView] = field(default_factory=list)
    breaches: list[VendorBreach] = field(default_factory=list)


@dataclass
class LookupResult:
    source: str  # "cache" | "nvd" | "not_found"
    cve: Optional[CachedCve] = None
    is_kev: bool = False


@dataclass
class KevStats:
    total: int
    last_sync_at: Optional[str] = None
    last_status: Optional[str] = None
    last_run: Optional[SyncRun] = None


@dataclass
class DailyBriefing:
    client_id: int
    generated_at: str
    kev: KevStats
    new_matches_24h: int = 0
    new_kev_matches_24h: int = 0
    pending_review: int = 0
    accepted: int = 0
    top_threats: list[MatchSuggestion] = field(default_factory=list)
    riskiest_vendors: list[VendorScan] = field(default_factory=list)
