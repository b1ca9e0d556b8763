"""
API request and response models for the Threatwatch REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
intel/models.py, which own the internal domain representation. The
from_* factory methods keep the mapping next to the output model.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import CVE_PATTERN, AssetCveMatch, CachedCve, MatchCandidate, SyncRun, VendorBreach, VendorScan
from intel.models import (
    AssetScanResult,
    ClientScanSummary,
    DailyBriefing,
    KevStats,
    MatchSuggestion,
    VendorMatchView,
)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ReviewStatusEnum(str, Enum):
    accepted = "accepted"
    dismissed = "dismissed"


class MatchStatusEnum(str, Enum):
    suggested = "suggested"
    accepted = "accepted"
    dismissed = "dismissed"
    imported = "imported"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class MatchStatusUpdate(BaseModel):
    """Request body for PATCH /api/v1/threat-intel/matches/{match_id}."""

    status: ReviewStatusEnum
    reviewed_by: Optional[int] = None


class BulkStatusRequest(BaseModel):
    """Request body for POST /api/v1/threat-intel/matches/bulk-status.

    Duplicate ids are dropped before validation so each match is updated once.
    """

    match_ids: list[int] = Field(min_length=1, max_length=200)
    status: ReviewStatusEnum
    reviewed_by: Optional[int] = None

    @field_validator("match_ids", mode="before")
    @classmethod
    def dedupe_ids(cls, values: list) -> list:
        return list(dict.fromkeys(values))


class ImportRequest(BaseModel):
    """Request body for POST /api/v1/threat-intel/import."""

    model_config = ConfigDict(str_strip_whitespace=True)

    client_id: int
    asset_id: int
    cve_id: str = Field(pattern=CVE_PATTERN)
    match_id: Optional[int] = None

    @field_validator("cve_id", mode="before")
    @classmethod
    def upper_cve(cls, value: str) -> str:
        return str(value).strip().upper()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class CandidateRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    cve_id: str
    match_score: int
    match_reason: str
    is_kev: bool
    cvss_score: Optional[float]
    description: str

    @classmethod
    def from_candidate(cls, c: MatchCandidate) -> "CandidateRow":
        return cls(
            cve_id=c.cve_id,
            match_score=c.match_score,
            match_reason=c.match_reason,
            is_kev=c.is_kev,
            cvss_score=c.cvss_score,
            description=c.description,
        )


class AssetScanResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: int
    asset_id: int
    asset_name: str
    candidates_found: int
    new_matches: int
    updated_matches: int
    skipped: bool
    skip_reason: Optional[str]
    feed_error: Optional[str]
    matches: list[CandidateRow]

    @classmethod
    def from_result(cls, r: AssetScanResult) -> "AssetScanResponse":
        return cls(
            client_id=r.client_id,
            asset_id=r.asset_id,
            asset_name=r.asset_name,
            candidates_found=r.candidates_found,
            new_matches=r.new_matches,
            updated_matches=r.updated_matches,
            skipped=r.skipped,
            skip_reason=r.skip_reason,
            feed_error=r.feed_error,
            matches=[CandidateRow.from_candidate(c) for c in r.matches],
        )


class ClientScanResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: int
    started_at: str
    completed_at: Optional[str]
    assets_scanned: int
    assets_skipped: int
    assets_failed: int
    new_matches: int
    errors: list[str]

    @classmethod
    def from_summary(cls, s: ClientScanSummary) -> "ClientScanResponse":
        return cls(
            client_id=s.client_id,
            started_at=s.started_at,
            completed_at=s.completed_at,
            assets_scanned=s.assets_scanned,
            assets_skipped=s.assets_skipped,
            assets_failed=s.assets_failed,
            new_matches=s.new_matches,
            errors=s.errors,
        )


class MatchRow(BaseModel):
    """One stored asset/CVE match with its cached CVE details."""

    model_config = ConfigDict(frozen=True)

    id: int
    client_id: int
    asset_id: int
    asset_name: str
    cve_id: str
    match_score: int
    match_reason: str
    is_kev: bool
    status: MatchStatusEnum
    discovered_at: str
    reviewed_at: Optional[str]
    reviewed_by: Optional[int]
    imported_vulnerability_id: Optional[int]
    cvss_score: Optional[float] = None
    cvss_vector: Optional[str] = None
    description: str = ""

    @classmethod
    def from_match(cls, m: AssetCveMatch, asset_name: str = "") -> "MatchRow":
        return cls(
            id=m.id,
            client_id=m.client_id,
            asset_id=m.asset_id,
            asset_name=asset_name,
            cve_id=m.cve_id,
            match_score=m.match_score,
            match_reason=m.match_reason,
            is_kev=m.is_kev,
            status=m.status,
            discovered_at=m.discovered_at,
            reviewed_at=m.reviewed_at,
            reviewed_by=m.reviewed_by,
            imported_vulnerability_id=m.imported_vulnerability_id,
        )

    @classmethod
    def from_suggestion(cls, s: MatchSuggestion) -> "MatchRow":
        return cls.from_match(s.match, s.asset_name).model_copy(
            update={"cvss_score": s.cvss_score, "cvss_vector": s.cvss_vector, "description": s.description}
        )


class StatusUpdateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    match: MatchRow
    changed: bool


class BulkStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    updated: int
    unchanged: int
    not_found: int
    invalid: int
    outcomes: dict[int, str]


class ImportResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vulnerability_id: int
    created: bool
    severity: str
    match_id: Optional[int]
    is_kev: bool


class VendorScanRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    client_id: int
    vendor_id: int
    risk_score: int
    vulnerability_count: int
    breach_count: int
    status: str
    scan_date: str

    @classmethod
    def from_scan(cls, s: VendorScan) -> "VendorScanRow":
        return cls(
            id=s.id,
            client_id=s.client_id,
            vendor_id=s.vendor_id,
            risk_score=s.risk_score,
            vulnerability_count=s.vulnerability_count,
            breach_count=s.breach_count,
            status=s.status,
            scan_date=s.scan_date,
        )


class BreachRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    breach_date: Optional[str]
    description: str
    affected_count: int
    data_classes: list[str]
    risk_score: int
    source: str
    is_verified: bool
    status: str

    @classmethod
    def from_breach(cls, b: VendorBreach) -> "BreachRow":
        return cls(
            id=b.id,
            title=b.title,
            breach_date=b.breach_date,
            description=b.description,
            affected_count=b.affected_count,
            data_classes=b.data_classes,
            risk_score=b.risk_score,
            source=b.source,
            is_verified=b.is_verified,
            status=b.status,
        )


class VendorMatchRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    cve_id: str
    match_score: int
    match_reason: str
    cvss_score: Optional[float]
    is_kev: bool
    description: str

    @classmethod
    def from_view(cls, v: VendorMatchView) -> "VendorMatchRow":
        return cls(
            cve_id=v.cve_id,
            match_score=v.match_score,
            match_reason=v.match_reason,
            cvss_score=v.cvss_score,
            is_kev=v.is_kev,
            description=v.description,
        )


class VendorScanResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    scan: VendorScanRow
    matches: list[CandidateRow]
    breaches: list[BreachRow]
    feed_error: Optional[str]
    breach_error: Optional[str]


class VendorSuggestionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: int
    vendor_name: str
    scan: Optional[VendorScanRow]
    matches: list[VendorMatchRow]
    breaches: list[BreachRow]


class SyncRunRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    source: str
    status: str
    started_at: str
    completed_at: Optional[str]
    record_count: int
    error: Optional[str]

    @classmethod
    def from_run(cls, r: SyncRun) -> "SyncRunRow":
        return cls(
            id=r.id,
            source=r.source,
            status=r.status,
            started_at=r.started_at,
            completed_at=r.completed_at,
            record_count=r.record_count,
            error=r.error,
        )


class KevStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    last_sync_at: Optional[str]
    last_status: Optional[str]

    @classmethod
    def from_stats(cls, s: KevStats) -> "KevStatsResponse":
        return cls(total=s.total, last_sync_at=s.last_sync_at, last_status=s.last_status)


class CveDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    cve_id: str
    description: str
    cvss_score: Optional[float]
    cvss_vector: Optional[str]
    published_at: Optional[str]
    last_modified_at: Optional[str]
    cwe_ids: list[str]
    affected_ranges: list[str]
    references: list[str]

    @classmethod
    def from_cached(cls, c: CachedCve) -> "CveDetail":
        return cls(
            cve_id=c.cve_id,
            description=c.description,
            cvss_score=c.cvss_score,
            cvss_vector=c.cvss_vector,
            published_at=c.published_at,
            last_modified_at=c.last_modified_at,
            cwe_ids=c.cwe_ids,
            affected_ranges=c.affected_ranges,
            references=c.references,
        )


class CveLookupResponse(BaseModel):
    """source is "cache", "nvd" or "not_found"; cve is null for not_found."""

    model_config = ConfigDict(frozen=True)

    source: str
    is_kev: bool
    cve: Optional[CveDetail]


class BriefingResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: int
    generated_at: str
    kev: KevStatsResponse
    new_matches_24h: int
    new_kev_matches_24h: int
    pending_review: int
    accepted: int
    top_threats: list[MatchRow]
    riskiest_vendors: list[VendorScanRow]

    @classmethod
    def from_briefing(cls, b: DailyBriefing) -> "BriefingResponse":
        return cls(
            client_id=b.client_id,
            generated_at=b.generated_at,
            kev=KevStatsResponse.from_stats(b.kev),
            new_matches_24h=b.new_matches_24h,
            new_kev_matches_24h=b.new_kev_matches_24h,
            pending_review=b.pending_review,
            accepted=b.accepted,
            top_threats=[MatchRow.from_suggestion(s) for s in b.top_threats],
            riskiest_vendors=[VendorScanRow.from_scan(s) for s in b.riskiest_vendors],
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
