"""
api/routes/v1/threat_intel.py -- Threat intelligence route handlers.

Thin adapter over ThreatIntelService (request.app.state.service). Handlers
validate input, call one service operation and map the result onto the
response models in api/models.py. Domain errors become ErrorDetail payloads:

  AssetNotFoundError / VendorNotFoundError / MatchNotFoundError / CveNotFoundError -> 404
  InvalidTransitionError                                                          -> 409
  ValueError (malformed CVE id, unknown status)                                   -> 400

Handlers are plain `def` so FastAPI runs them in its thread pool: every
service call does blocking store and feed I/O.

Rate limits are applied via slowapi. The @limiter.limit() decorator must sit
ABOVE @router.get/post so that slowapi can attach the limit string to the
function object before FastAPI wraps it.
"""

from typing import NoReturn, Optional

from fastapi import APIRouter, HTTPException, Request

from api.limiter import limiter
from api.models import (
    AssetScanResponse,
    BreachRow,
    BriefingResponse,
    BulkStatusRequest,
    BulkStatusResponse,
    CandidateRow,
    ClientScanResponse,
    CveDetail,
    CveLookupResponse,
    ErrorDetail,
    ImportRequest,
    ImportResponse,
    KevStatsResponse,
    MatchRow,
    MatchStatusEnum,
    MatchStatusUpdate,
    StatusUpdateResponse,
    SyncRunRow,
    VendorMatchRow,
    VendorScanResponse,
    VendorScanRow,
    VendorSuggestionsResponse,
)
from core.errors import (
    AssetNotFoundError,
    CveNotFoundError,
    InvalidTransitionError,
    MatchNotFoundError,
    VendorNotFoundError,
)
from intel.service import ThreatIntelService

router = APIRouter(prefix="/threat-intel")

_NOT_FOUND = (AssetNotFoundError, VendorNotFoundError, MatchNotFoundError, CveNotFoundError)


def _service(request: Request) -> ThreatIntelService:
    return request.app.state.service


def _raise(status_code: int, code: str, message: str, exc: Exception) -> NoReturn:
    raise HTTPException(
        status_code=status_code,
        detail=ErrorDetail(code=code, message=message, detail=str(exc)[:200]).model_dump(),
    ) from exc


# ---------------------------------------------------------------------------
# Asset scans and suggestions
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")
@router.post("/clients/{client_id}/assets/{asset_id}/scan", response_model=AssetScanResponse)
def scan_asset(request: Request, client_id: int, asset_id: int) -> AssetScanResponse:
    """Scan one asset now. Feed outages degrade to cache-only results (see feed_error)."""
    try:
        result = _service(request).scan_asset(client_id, asset_id)
    except AssetNotFoundError as exc:
        _raise(404, "asset_not_found", "Asset not found.", exc)
    return AssetScanResponse.from_result(result)


@limiter.limit("5/minute")
@router.post("/clients/{client_id}/scan", response_model=ClientScanResponse)
def scan_client(request: Request, client_id: int) -> ClientScanResponse:
    """Scan every asset of a client. Always returns a summary; failed assets are counted."""
    return ClientScanResponse.from_summary(_service(request).scan_all_assets(client_id))


@limiter.limit("60/minute")
@router.get("/assets/{asset_id}/suggestions", response_model=list[MatchRow])
def asset_suggestions(request: Request, asset_id: int) -> list[MatchRow]:
    return [MatchRow.from_suggestion(s) for s in _service(request).get_asset_suggestions(asset_id)]


@limiter.limit("60/minute")
@router.get("/clients/{client_id}/suggestions", response_model=list[MatchRow])
def client_suggestions(request: Request, client_id: int, status: Optional[MatchStatusEnum] = None) -> list[MatchRow]:
    """All matches for a client, KEV first. Filter with ?status=suggested etc."""
    rows = _service(request).get_client_suggestions(client_id, status.value if status else None)
    return [MatchRow.from_suggestion(s) for s in rows]


# ---------------------------------------------------------------------------
# Review workflow -- literal /matches/bulk-status registered before /matches/{id}
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/matches/bulk-status", response_model=BulkStatusResponse)
def bulk_status(request: Request, body: BulkStatusRequest) -> BulkStatusResponse:
    """Accept or dismiss many matches; each id succeeds or fails independently."""
    result = _service(request).bulk_update_match_status(body.match_ids, body.status.value, body.reviewed_by)
    return BulkStatusResponse(
        status=result.status,
        updated=result.count("updated"),
        unchanged=result.count("unchanged"),
        not_found=result.count("not_found"),
        invalid=result.count("invalid"),
        outcomes=result.outcomes,
    )


@limiter.limit("60/minute")
@router.patch("/matches/{match_id}", response_model=StatusUpdateResponse)
def update_match(request: Request, match_id: int, body: MatchStatusUpdate) -> StatusUpdateResponse:
    try:
        result = _service(request).update_match_status(match_id, body.status.value, body.reviewed_by)
    except MatchNotFoundError as exc:
        _raise(404, "match_not_found", "Match not found.", exc)
    except InvalidTransitionError as exc:
        _raise(409, "invalid_transition", "Status change not allowed.", exc)
    return StatusUpdateResponse(match=MatchRow.from_match(result.match), changed=result.changed)


@limiter.limit("30/minute")
@router.post("/import", response_model=ImportResponse)
def import_vulnerability(request: Request, body: ImportRequest) -> ImportResponse:
    """Import a matched CVE as a tracked vulnerability. Repeating returns the same id."""
    try:
        result = _service(request).import_cve_as_vulnerability(
            body.client_id, body.asset_id, body.cve_id, body.match_id
        )
    except _NOT_FOUND as exc:
        _raise(404, "not_found", "Match or CVE not found.", exc)
    except InvalidTransitionError as exc:
        _raise(409, "invalid_transition", "Dismissed matches cannot be imported.", exc)
    return ImportResponse(
        vulnerability_id=result.vulnerability_id,
        created=result.created,
        severity=result.severity,
        match_id=result.match_id,
        is_kev=result.is_kev,
    )


# ---------------------------------------------------------------------------
# Vendors
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")
@router.post("/clients/{client_id}/vendors/{vendor_id}/scan", response_model=VendorScanResponse)
def scan_vendor(request: Request, client_id: int, vendor_id: int) -> VendorScanResponse:
    try:
        result = _service(request).scan_vendor(client_id, vendor_id)
    except VendorNotFoundError as exc:
        _raise(404, "vendor_not_found", "Vendor not found.", exc)
    return VendorScanResponse(
        scan=VendorScanRow.from_scan(result.scan),
        matches=[CandidateRow.from_candidate(c) for c in result.matches],
        breaches=[BreachRow.from_breach(b) for b in result.breaches],
        feed_error=result.feed_error,
        breach_error=result.breach_error,
    )


@limiter.limit("60/minute")
@router.get("/vendors/{vendor_id}/suggestions", response_model=VendorSuggestionsResponse)
def vendor_suggestions(request: Request, vendor_id: int) -> VendorSuggestionsResponse:
    try:
        result = _service(request).get_vendor_suggestions(vendor_id)
    except VendorNotFoundError as exc:
        _raise(404, "vendor_not_found", "Vendor not found.", exc)
    return VendorSuggestionsResponse(
        vendor_id=result.vendor.id,
        vendor_name=result.vendor.name,
        scan=VendorScanRow.from_scan(result.scan) if result.scan else None,
        matches=[VendorMatchRow.from_view(v) for v in result.matches],
        breaches=[BreachRow.from_breach(b) for b in result.breaches],
    )


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")
@router.post("/kev/sync", response_model=SyncRunRow)
def kev_sync(request: Request) -> SyncRunRow:
    """Sync the KEV catalog now. Feed failures come back as a failed run, not an error."""
    return SyncRunRow.from_run(_service(request).sync_kev_catalog())


@limiter.limit("60/minute")
@router.get("/kev/stats", response_model=KevStatsResponse)
def kev_stats(request: Request) -> KevStatsResponse:
    return KevStatsResponse.from_stats(_service(request).get_kev_stats())


@limiter.limit("30/minute")
@router.get("/cve/{cve_id}", response_model=CveLookupResponse)
def lookup_cve(request: Request, cve_id: str) -> CveLookupResponse:
    """Cache-or-fetch lookup. Unknown CVEs return source="not_found" with 200."""
    try:
        result = _service(request).lookup_cve(cve_id)
    except ValueError as exc:
        _raise(400, "invalid_cve_id", "Invalid CVE ID format.", exc)
    return CveLookupResponse(
        source=result.source,
        is_kev=result.is_kev,
        cve=CveDetail.from_cached(result.cve) if result.cve else None,
    )


# ---------------------------------------------------------------------------
# Briefing
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.get("/clients/{client_id}/briefing", response_model=BriefingResponse)
def daily_briefing(request: Request, client_id: int) -> BriefingResponse:
    return BriefingResponse.from_briefing(_service(request).get_daily_briefing(client_id))
