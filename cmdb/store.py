"""
cmdb/store.py -- SQLAlchemy-backed persistence for inventory, matches and vendor scans.

Uses SQLAlchemy Core (not ORM) so the dataclasses in core/models.py and
cmdb/models.py remain the authoritative domain representation.

Pattern: Repository + Data Mapper. Each store is the repository for one
concern (see cmdb/repositories.py for the interfaces the service depends
on). The _row_to_* functions are the mappers. The service never touches SQL.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    engine = make_engine()
    inventory = InventoryStore(engine)
    matches = MatchStore(engine)
    match, created = matches.upsert_suggestion(1, asset_id, "CVE-2024-1234", 60, "keyword match", False)
    matches.update_status(match.id, "accepted", reviewed_by=7)
"""

import json
import logging
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from cmdb.models import Asset, Vendor, Vulnerability
from cmdb.schema import (
    asset_cve_matches,
    assets,
    kev_entries,
    vendor_breaches,
    vendor_cve_matches,
    vendor_scans,
    vendors,
    vulnerabilities,
)
from core.config import now_iso
from core.errors import InvalidTransitionError, MatchNotFoundError
from core.models import (
    ACCEPTED,
    DISMISSED,
    IMPORTED,
    MATCH_STATUSES,
    SUGGESTED,
    AssetCveMatch,
    BreachRecord,
    VendorBreach,
    VendorCveMatch,
    VendorScan,
)

logger = logging.getLogger("threatwatch.cmdb")

# Rows in these states are still open for review and may be imported.
_OPEN_STATUSES = (SUGGESTED, ACCEPTED)


class _LinkLost(Exception):
    """Raised inside an import transaction to roll back its insert."""


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class InventoryStore:
    """Assets and vendors. The engine only reads these; create_* exists for
    seeding by the CLI and tests."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_asset(self, asset: Asset) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                assets.insert().values(
                    client_id=asset.client_id,
                    name=asset.name,
                    asset_type=asset.asset_type,
                    vendor=asset.vendor,
                    product_name=asset.product_name,
                    version=asset.version,
                    description=asset.description,
                    technologies=json.dumps(asset.technologies),
                )
            )
        return result.inserted_primary_key[0]

    def get_asset(self, asset_id: int) -> Optional[Asset]:
        with self.engine.connect() as conn:
            row = conn.execute(assets.select().where(assets.c.id == asset_id)).fetchone()
        return _row_to_asset(row) if row is not None else None

    def list_assets(self, client_id: int) -> list[Asset]:
        with self.engine.connect() as conn:
            rows = conn.execute(assets.select().where(assets.c.client_id == client_id).order_by(assets.c.id)).fetchall()
        return [_row_to_asset(r) for r in rows]

    def list_client_ids(self) -> list[int]:
        """Every client that owns at least one asset or vendor."""
        stmt = select(assets.c.client_id).union(select(vendors.c.client_id))
        with self.engine.connect() as conn:
            return sorted(r[0] for r in conn.execute(stmt))

    def create_vendor(self, vendor: Vendor) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                vendors.insert().values(client_id=vendor.client_id, name=vendor.name, website=vendor.website)
            )
        return result.inserted_primary_key[0]

    def get_vendor(self, vendor_id: int) -> Optional[Vendor]:
        with self.engine.connect() as conn:
            row = conn.execute(vendors.select().where(vendors.c.id == vendor_id)).fetchone()
        if row is None:
            return None
        return Vendor(id=row.id, client_id=row.client_id, name=row.name, website=row.website)

    def list_vendors(self, client_id: int) -> list[Vendor]:
        with self.engine.connect() as conn:
            rows = conn.execute(vendors.select().where(vendors.c.client_id == client_id).order_by(vendors.c.id)).fetchall()
        return [Vendor(id=r.id, client_id=r.client_id, name=r.name, website=r.website) for r in rows]


# ---------------------------------------------------------------------------
# Asset/CVE matches
# ---------------------------------------------------------------------------


class MatchStore:
    """Suggestions and their review workflow.

    suggested -> accepted | dismissed     (update_status)
    suggested | accepted -> imported      (import_vulnerability, once)

    Every write is conditional on the current status, so a concurrent scan
    can never overwrite a reviewed row.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _fetch(self, conn, match_id: int):
        return conn.execute(asset_cve_matches.select().where(asset_cve_matches.c.id == match_id)).fetchone()

    def _upsert_once(
        self, client_id: int, asset_id: int, cve_id: str, match_score: int, match_reason: str, is_kev: bool
    ) -> tuple[AssetCveMatch, bool]:
        key = (
            (asset_cve_matches.c.client_id == client_id)
            & (asset_cve_matches.c.asset_id == asset_id)
            & (asset_cve_matches.c.cve_id == cve_id)
        )
        with self.engine.begin() as conn:
            row = conn.execute(asset_cve_matches.select().where(key)).fetchone()
            if row is None:
                result = conn.execute(
                    asset_cve_matches.insert().values(
                        client_id=client_id,
                        asset_id=asset_id,
                        cve_id=cve_id,
                        match_score=match_score,
                        match_reason=match_reason,
                        is_kev=1 if is_kev else 0,
                        status=SUGGESTED,
                        discovered_at=now_iso(),
                    )
                )
                return _row_to_match(self._fetch(conn, result.inserted_primary_key[0])), True
            if row.status == SUGGESTED:
                # Rescan: refresh score and reason only. is_kev and discovered_at
                # keep their first-discovery values.
                conn.execute(
                    asset_cve_matches.update()
                    .where(key & (asset_cve_matches.c.status == SUGGESTED))
                    .values(match_score=match_score, match_reason=match_reason)
                )
                row = self._fetch(conn, row.id)
            return _row_to_match(row), False

    def upsert_suggestion(
        self, client_id: int, asset_id: int, cve_id: str, match_score: int, match_reason: str, is_kev: bool
    ) -> tuple[AssetCveMatch, bool]:
        """Create a suggested match, or refresh an existing suggested one.

        Returns (match, created). Reviewed rows come back unchanged.
        """
        cve_id = cve_id.upper()
        try:
            return self._upsert_once(client_id, asset_id, cve_id, match_score, match_reason, is_kev)
        except IntegrityError:
            # Lost an insert race with a concurrent scan; the row exists now.
            logger.debug("Concurrent insert for %s on asset %d, re-reading", cve_id, asset_id)
            return self._upsert_once(client_id, asset_id, cve_id, match_score, match_reason, is_kev)

    def get(self, match_id: int) -> Optional[AssetCveMatch]:
        with self.engine.connect() as conn:
            row = self._fetch(conn, match_id)
        return _row_to_match(row) if row is not None else None

    def get_by_key(self, client_id: int, asset_id: int, cve_id: str) -> Optional[AssetCveMatch]:
        with self.engine.connect() as conn:
            row = conn.execute(
                asset_cve_matches.select().where(
                    (asset_cve_matches.c.client_id == client_id)
                    & (asset_cve_matches.c.asset_id == asset_id)
                    & (asset_cve_matches.c.cve_id == cve_id.upper())
                )
            ).fetchone()
        return _row_to_match(row) if row is not None else None

    def _ordered(self):
        return asset_cve_matches.select().order_by(
            asset_cve_matches.c.is_kev.desc(),
            asset_cve_matches.c.match_score.desc(),
            asset_cve_matches.c.discovered_at.desc(),
            asset_cve_matches.c.id,
        )

    def list_for_asset(self, asset_id: int) -> list[AssetCveMatch]:
        """All matches for an asset, KEV first, then by score."""
        with self.engine.connect() as conn:
            rows = conn.execute(self._ordered().where(asset_cve_matches.c.asset_id == asset_id)).fetchall()
        return [_row_to_match(r) for r in rows]

    def list_for_client(self, client_id: int, status: Optional[str] = None) -> list[AssetCveMatch]:
        stmt = self._ordered().where(asset_cve_matches.c.client_id == client_id)
        if status:
            stmt = stmt.where(asset_cve_matches.c.status == status)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_match(r) for r in rows]

    def update_status(
        self, match_id: int, status: str, reviewed_by: Optional[int] = None
    ) -> tuple[AssetCveMatch, bool]:
        """Apply a review decision. Returns (match, changed).

        Raises MatchNotFoundError for an unknown id, ValueError for an unknown
        status and InvalidTransitionError for anything but suggested ->
        accepted | dismissed. Repeating the current status is a no-op.
        """
        if status not in MATCH_STATUSES:
            raise ValueError(f"unknown match status {status!r}")
        with self.engine.begin() as conn:
            row = self._fetch(conn, match_id)
            if row is None:
                raise MatchNotFoundError(f"match {match_id} not found")
            if row.status == status:
                return _row_to_match(row), False
            if row.status != SUGGESTED or status not in (ACCEPTED, DISMISSED):
                raise InvalidTransitionError(match_id, row.status, status)
            result = conn.execute(
                asset_cve_matches.update()
                .where((asset_cve_matches.c.id == match_id) & (asset_cve_matches.c.status == SUGGESTED))
                .values(status=status, reviewed_at=now_iso(), reviewed_by=reviewed_by)
            )
            current = self._fetch(conn, match_id)
        if result.rowcount == 0:
            # Reviewed by someone else between the read and the write.
            if current.status == status:
                return _row_to_match(current), False
            raise InvalidTransitionError(match_id, current.status, status)
        return _row_to_match(current), True

    def _link(self, conn, match_id: int, vulnerability_id: int) -> bool:
        result = conn.execute(
            asset_cve_matches.update()
            .where(
                (asset_cve_matches.c.id == match_id)
                & asset_cve_matches.c.imported_vulnerability_id.is_(None)
                & asset_cve_matches.c.status.in_(_OPEN_STATUSES)
            )
            .values(status=IMPORTED, imported_vulnerability_id=vulnerability_id, reviewed_at=now_iso())
        )
        return result.rowcount == 1

    def import_vulnerability(self, match_id: int, vuln: Vulnerability) -> tuple[AssetCveMatch, bool]:
        """Insert the vulnerability and link it to the match in one transaction.

        Returns (match, created). Only the first import links; a later or
        concurrent one rolls its insert back and gets the stored row, which
        carries the winning vulnerability id, with created False. Raises
        InvalidTransitionError when the match is closed without a link.
        """
        try:
            with self.engine.begin() as conn:
                vuln_id = _insert_vulnerability(conn, vuln)
                if not self._link(conn, match_id, vuln_id):
                    raise _LinkLost(match_id)
                row = self._fetch(conn, match_id)
            return _row_to_match(row), True
        except _LinkLost:
            logger.debug("Match %d was already linked; vulnerability insert rolled back", match_id)

        current = self.get(match_id)
        if current is None:
            raise MatchNotFoundError(f"match {match_id} not found")
        if current.imported_vulnerability_id is None:
            raise InvalidTransitionError(match_id, current.status, IMPORTED)
        return current, False

    def list_discovered_since(self, client_id: int, since: str) -> list[AssetCveMatch]:
        """Matches first discovered strictly after `since` (ISO 8601)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                self._ordered().where(
                    (asset_cve_matches.c.client_id == client_id) & (asset_cve_matches.c.discovered_at > since)
                )
            ).fetchall()
        return [_row_to_match(r) for r in rows]

    def count_by_status(self, client_id: int) -> dict[str, int]:
        counts = {s: 0 for s in MATCH_STATUSES}
        stmt = (
            select(asset_cve_matches.c.status, func.count().label("n"))
            .where(asset_cve_matches.c.client_id == client_id)
            .group_by(asset_cve_matches.c.status)
        )
        with self.engine.connect() as conn:
            for row in conn.execute(stmt):
                counts[row.status] = row.n
        return counts

    def recompute_kev_flags(self, client_id: Optional[int] = None) -> int:
        """Re-derive is_kev for open rows from the current KEV table.

        Reviewed-and-closed rows (dismissed, imported) keep their flag as a
        record of what was known at the time. Returns rows changed.
        """
        in_kev = asset_cve_matches.c.cve_id.in_(select(kev_entries.c.cve_id))
        scope = asset_cve_matches.c.status.in_(_OPEN_STATUSES)
        if client_id is not None:
            scope = scope & (asset_cve_matches.c.client_id == client_id)
        with self.engine.begin() as conn:
            raised = conn.execute(
                asset_cve_matches.update().where(scope & in_kev & (asset_cve_matches.c.is_kev == 0)).values(is_kev=1)
            ).rowcount
            cleared = conn.execute(
                asset_cve_matches.update().where(scope & ~in_kev & (asset_cve_matches.c.is_kev == 1)).values(is_kev=0)
            ).rowcount
        return raised + cleared


# ---------------------------------------------------------------------------
# Vulnerability tracking records
# ---------------------------------------------------------------------------


def _insert_vulnerability(conn, vuln: Vulnerability) -> int:
    result = conn.execute(
        vulnerabilities.insert().values(
            client_id=vuln.client_id,
            asset_id=vuln.asset_id,
            cve_id=vuln.cve_id,
            name=vuln.name,
            description=vuln.description,
            severity=vuln.severity,
            cvss_score=vuln.cvss_score,
            source=vuln.source,
            status=vuln.status,
            discovered_at=vuln.discovered_at or now_iso(),
        )
    )
    return result.inserted_primary_key[0]


class VulnerabilityStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, vuln: Vulnerability) -> int:
        with self.engine.begin() as conn:
            return _insert_vulnerability(conn, vuln)

    def get(self, vuln_id: int) -> Optional[Vulnerability]:
        with self.engine.connect() as conn:
            row = conn.execute(vulnerabilities.select().where(vulnerabilities.c.id == vuln_id)).fetchone()
        return _row_to_vulnerability(row) if row is not None else None

    def count(self, client_id: Optional[int] = None) -> int:
        stmt = select(func.count()).select_from(vulnerabilities)
        if client_id is not None:
            stmt = stmt.where(vulnerabilities.c.client_id == client_id)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()


# ---------------------------------------------------------------------------
# Vendor scans
# ---------------------------------------------------------------------------


class VendorScanStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def start_scan(self, client_id: int, vendor_id: int) -> VendorScan:
        scan_date = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                vendor_scans.insert().values(
                    client_id=client_id, vendor_id=vendor_id, status="in_progress", scan_date=scan_date
                )
            )
        return VendorScan(client_id=client_id, vendor_id=vendor_id, scan_date=scan_date, id=result.inserted_primary_key[0])

    def finish_scan(
        self, scan_id: int, risk_score: int, vulnerability_count: int, breach_count: int, status: str
    ) -> VendorScan:
        with self.engine.begin() as conn:
            conn.execute(
                vendor_scans.update()
                .where(vendor_scans.c.id == scan_id)
                .values(
                    risk_score=max(0, min(100, risk_score)),
                    vulnerability_count=vulnerability_count,
                    breach_count=breach_count,
                    status=status,
                )
            )
            row = conn.execute(vendor_scans.select().where(vendor_scans.c.id == scan_id)).fetchone()
        return _row_to_scan(row)

    def add_cve_matches(self, matches: Iterable[VendorCveMatch]) -> int:
        rows = [
            dict(
                scan_id=m.scan_id,
                vendor_id=m.vendor_id,
                cve_id=m.cve_id.upper(),
                match_score=m.match_score,
                match_reason=m.match_reason,
                cvss_score=m.cvss_score,
                is_kev=1 if m.is_kev else 0,
                discovered_at=m.discovered_at or now_iso(),
            )
            for m in matches
        ]
        if not rows:
            return 0
        with self.engine.begin() as conn:
            conn.execute(vendor_cve_matches.insert(), rows)
        return len(rows)

    def _upsert_breach_once(self, vendor_id: int, breach: BreachRecord, scan_id: int) -> tuple[VendorBreach, bool]:
        key = (
            (vendor_breaches.c.vendor_id == vendor_id)
            & (vendor_breaches.c.title == breach.title)
            & (vendor_breaches.c.breach_date == (breach.breach_date or ""))
        )
        values = dict(
            description=breach.description,
            affected_count=breach.record_count,
            data_classes=json.dumps(breach.data_classes),
            risk_score=breach.risk_score,
            source=breach.source,
            is_verified=1 if breach.is_verified else 0,
        )
        with self.engine.begin() as conn:
            row = conn.execute(vendor_breaches.select().where(key)).fetchone()
            created = row is None
            if created:
                conn.execute(
                    vendor_breaches.insert().values(
                        vendor_id=vendor_id,
                        title=breach.title,
                        breach_date=breach.breach_date or "",
                        first_seen_scan_id=scan_id,
                        **values,
                    )
                )
            else:
                conn.execute(vendor_breaches.update().where(key).values(**values))
            row = conn.execute(vendor_breaches.select().where(key)).fetchone()
        return _row_to_breach(row), created

    def upsert_breach(self, vendor_id: int, breach: BreachRecord, scan_id: int) -> tuple[VendorBreach, bool]:
        """Insert a breach or refresh the existing one with the same natural key."""
        try:
            return self._upsert_breach_once(vendor_id, breach, scan_id)
        except IntegrityError:
            return self._upsert_breach_once(vendor_id, breach, scan_id)

    def get_scan(self, scan_id: int) -> Optional[VendorScan]:
        with self.engine.connect() as conn:
            row = conn.execute(vendor_scans.select().where(vendor_scans.c.id == scan_id)).fetchone()
        return _row_to_scan(row) if row is not None else None

    def latest_scan(self, vendor_id: int) -> Optional[VendorScan]:
        with self.engine.connect() as conn:
            row = conn.execute(
                vendor_scans.select()
                .where(vendor_scans.c.vendor_id == vendor_id)
                .order_by(vendor_scans.c.scan_date.desc(), vendor_scans.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_scan(row) if row is not None else None

    def list_cve_matches(self, scan_id: int) -> list[VendorCveMatch]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                vendor_cve_matches.select()
                .where(vendor_cve_matches.c.scan_id == scan_id)
                .order_by(
                    vendor_cve_matches.c.is_kev.desc(),
                    vendor_cve_matches.c.cvss_score.desc().nulls_last(),
                    vendor_cve_matches.c.cve_id,
                )
            ).fetchall()
        return [_row_to_vendor_match(r) for r in rows]

    def list_breaches(self, vendor_id: int) -> list[VendorBreach]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                vendor_breaches.select()
                .where(vendor_breaches.c.vendor_id == vendor_id)
                .order_by(vendor_breaches.c.breach_date.desc(), vendor_breaches.c.id)
            ).fetchall()
        return [_row_to_breach(r) for r in rows]

    def latest_scans_for_client(self, client_id: int, limit: int = 5) -> list[VendorScan]:
        """Most recent finished scan per vendor, riskiest (lowest score) first."""
        latest_ids = (
            select(func.max(vendor_scans.c.id))
            .where((vendor_scans.c.client_id == client_id) & (vendor_scans.c.status != "in_progress"))
            .group_by(vendor_scans.c.vendor_id)
        )
        stmt = (
            vendor_scans.select()
            .where(vendor_scans.c.id.in_(latest_ids))
            .order_by(vendor_scans.c.risk_score, vendor_scans.c.id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_scan(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_asset(row) -> Asset:
    technologies: list[str] = json.loads(row.technologies) if row.technologies else []
    return Asset(
        id=row.id,
        client_id=row.client_id,
        name=row.name,
        asset_type=row.asset_type,
        vendor=row.vendor,
        product_name=row.product_name,
        version=row.version,
        description=row.description,
        technologies=technologies,
    )


def _row_to_match(row) -> AssetCveMatch:
    return AssetCveMatch(
        id=row.id,
        client_id=row.client_id,
        asset_id=row.asset_id,
        cve_id=row.cve_id,
        match_score=row.match_score,
        match_reason=row.match_reason or "",
        is_kev=bool(row.is_kev),
        status=row.status,
        discovered_at=row.discovered_at,
        reviewed_at=row.reviewed_at,
        reviewed_by=row.reviewed_by,
        imported_vulnerability_id=row.imported_vulnerability_id,
    )


def _row_to_vulnerability(row) -> Vulnerability:
    return Vulnerability(
        id=row.id,
        client_id=row.client_id,
        asset_id=row.asset_id,
        cve_id=row.cve_id,
        name=row.name,
        description=row.description or "",
        severity=row.severity,
        cvss_score=row.cvss_score,
        source=row.source,
        status=row.status,
        discovered_at=row.discovered_at,
    )


def _row_to_scan(row) -> VendorScan:
    return VendorScan(
        id=row.id,
        client_id=row.client_id,
        vendor_id=row.vendor_id,
        risk_score=row.risk_score,
        vulnerability_count=row.vulnerability_count,
        breach_count=row.breach_count,
        status=row.status,
        scan_date=row.scan_date,
    )


def _row_to_vendor_match(row) -> VendorCveMatch:
    return VendorCveMatch(
        id=row.id,
        scan_id=row.scan_id,
        vendor_id=row.vendor_id,
        cve_id=row.cve_id,
        match_score=row.match_score,
        match_reason=row.match_reason or "",
        cvss_score=row.cvss_score,
        is_kev=bool(row.is_kev),
        discovered_at=row.discovered_at,
    )


def _row_to_breach(row) -> VendorBreach:
    return VendorBreach(
        id=row.id,
        vendor_id=row.vendor_id,
        title=row.title,
        breach_date=row.breach_date or None,
        description=row.description or "",
        affected_count=row.affected_count,
        data_classes=json.loads(row.data_classes) if row.data_classes else [],
        risk_score=row.risk_score,
        source=row.source or "",
        is_verified=bool(row.is_verified),
        status=row.status,
        first_seen_scan_id=row.first_seen_scan_id,
    )
