from dataclasses import dataclass, field
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Canonical CVE ID format. A domain rule -- not an API contract.
# All layers (api/, intel/, CLI) that need to validate CVE IDs import from here.
CVE_PATTERN = r"^CVE-\d{4}-\d{4,}$"

# Review workflow for asset/CVE matches.
SUGGESTED = "suggested"
ACCEPTED = "accepted"
DISMISSED = "dismissed"
IMPORTED = "imported"
MATCH_STATUSES = (SUGGESTED, ACCEPTED, DISMISSED, IMPORTED)

# Sync ledger
SOURCE_NVD = "nvd"
SOURCE_KEV = "cisa_kev"
RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"


# ---------------------------------------------------------------------------
# Feed data
# ---------------------------------------------------------------------------


@dataclass
class CachedCve:
    cve_id: str
    description: str = ""
    cvss_score: Optional[float] = None
    cvss_vector: Optional[str] = None
    published_at: Optional[str] = None
    last_modified_at: Optional[str] = None
    cwe_ids: list[str] = field(default_factory=list)
    cpe_matches: list[str] = field(default_factory=list)  # vulnerable CPE criteria
    affected_ranges: list[str] = field(default_factory=list)  # ">= 9.0.0 and < 9.0.87" or a CPE
    references: list[str] = field(default_factory=list)
    fetched_at: str = ""
    expires_at: str = ""


@dataclass
class KevEntry:
    cve_id: str
    date_added: Optional[str] = None
    vendor_project: str = ""
    product: str = ""
    vulnerability_name: str = ""
    short_description: str = ""
    required_action: str = ""
    due_date: Optional[str] = None
    known_ransomware_use: bool = False


@dataclass
class SyncRun:
    """One row of the append-only sync ledger.

    status is "running" while in flight, then one of success | partial | failed.
    """

    source: str  # "nvd" | "cisa_kev"
    started_at: str
    status: str = RUN_RUNNING
    completed_at: Optional[str] = None
    record_count: int = 0
    error: Optional[str] = None
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


@dataclass
class MatchCandidate:
    """A scored CVE for one asset or vendor, before it is persisted."""

    cve_id: str
    match_score: int
    match_reason: str
    is_kev: bool = False
    cvss_score: Optional[float] = None
    description: str = ""


@dataclass
class AssetCveMatch:
    """Persisted suggestion linking an asset to a CVE.

    Unique per (client_id, asset_id, cve_id). imported_vulnerability_id is
    written once, on the transition to "imported", and never changes after.
    """

    client_id: int
    asset_id: int
    cve_id: str
    match_score: int = 0
    match_reason: str = ""
    is_kev: bool = False
    status: str = SUGGESTED
    discovered_at: str = ""
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[int] = None
    imported_vulnerability_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class ThreatAlert:
    cve_id: str
    asset_name: str
    description: str
    cvss_score: Optional[float]


# ---------------------------------------------------------------------------
# Vendors
# ---------------------------------------------------------------------------


@dataclass
class BreachRecord:
    """Breach candidate returned by a breach-history source."""

    title: str
    breach_date: Optional[str] = None  # YYYY-MM-DD
    description: str = ""
    record_count: int = 0
    data_classes: list[str] = field(default_factory=list)
    risk_score: int = 0  # 0-100, higher is worse
    source: str = ""
    is_verified: bool = False


@dataclass
class VendorScan:
    client_id: int
    vendor_id: int
    risk_score: int = 100
    vulnerability_count: int = 0
    breach_count: int = 0
    status: str = "in_progress"  # in_progress | completed | partial | failed
    scan_date: str = ""
    id: Optional[int] = None


@dataclass
class VendorCveMatch:
    scan_id: int
    vendor_id: int
    cve_id: str
    match_score: int = 0
    match_reason: str = ""
    cvss_score: Optional[float] = None
    is_kev: bool = False
    discovered_at: str = ""
    id: Optional[int] = None


@dataclass
class VendorBreach:
    vendor_id: int
    title: str
    breach_date: Optional[str] = None
    description: str = ""
    affected_count: int = 0
    data_classes: list[str] = field(default_factory=list)
    risk_score: int = 0
    source: str = ""
    is_verified: bool = False
    status: str = "active"
    first_seen_scan_id: Optional[int] = None
    id: Optional[int] = None
