"""
cache/store.py -- Local copy of the vulnerability feeds.

Three repositories over the shared engine (see cmdb/schema.py):

  CveCacheStore  normalized NVD records with a TTL (default 24 hours)
  KevStore       the CISA KEV catalog, replaced wholesale on each sync
  SyncRunStore   append-only ledger of feed sync invocations

Avoids redundant API calls: the matcher searches the cache before it asks
NVD, and lookups are read-through.

Usage:
    engine = make_engine()
    cache = CveCacheStore(engine)
    cve = cache.get("CVE-2021-44228")          # CachedCve or None
    cache.upsert(normalize_cve(raw))
    cache.purge_expired()                      # call periodically to trim old entries
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.engine import Engine

from cmdb.schema import cve_cache, kev_entries, sync_runs
from core.config import now_iso
from core.models import RUN_RUNNING, CachedCve, KevEntry, SyncRun

logger = logging.getLogger("threatwatch.cache")

_DEFAULT_TTL_HOURS = 24


class CveCacheStore:
    def __init__(self, engine: Engine, ttl_hours: int = _DEFAULT_TTL_HOURS) -> None:
        self.engine = engine
        self.ttl_hours = ttl_hours

    def _expiry(self) -> str:
        return (datetime.now(timezone.utc) + timedelta(hours=self.ttl_hours)).isoformat(timespec="microseconds")

    def get(self, cve_id: str, include_expired: bool = False) -> Optional[CachedCve]:
        """Return the cached record, or None when absent or (by default) expired."""
        with self.engine.connect() as conn:
            row = conn.execute(cve_cache.select().where(cve_cache.c.cve_id == cve_id.upper())).fetchone()
        if row is None:
            return None
        if not include_expired and row.expires_at < now_iso():
            return None
        return _row_to_cve(row)

    def get_many(self, cve_ids: Iterable[str]) -> dict[str, CachedCve]:
        """Cached records by id, expired ones included. Used to annotate matches."""
        ids = list({c.upper() for c in cve_ids})
        if not ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(cve_cache.select().where(cve_cache.c.cve_id.in_(ids))).fetchall()
        return {r.cve_id: _row_to_cve(r) for r in rows}

    def upsert(self, cve: CachedCve) -> bool:
        """Insert or refresh a record. Returns True when the content was written.

        An existing record is only replaced by one with a newer
        last_modified_at; otherwise just its fetched/expiry stamps move.
        """
        now = now_iso()
        expires = self._expiry()
        cve_id = cve.cve_id.upper()
        values = dict(
            description=cve.description or "",
            cvss_score=cve.cvss_score,
            cvss_vector=cve.cvss_vector,
            published_at=cve.published_at,
            last_modified_at=cve.last_modified_at,
            cwe_ids=json.dumps(cve.cwe_ids),
            cpe_matches=json.dumps(cve.cpe_matches),
            affected_ranges=json.dumps(cve.affected_ranges),
            reference_urls=json.dumps(cve.references),
            fetched_at=now,
            expires_at=expires,
        )
        with self.engine.begin() as conn:
            current = conn.execute(
                select(cve_cache.c.last_modified_at).where(cve_cache.c.cve_id == cve_id)
            ).fetchone()
            if current is None:
                conn.execute(cve_cache.insert().values(cve_id=cve_id, **values))
                return True
            stored = current.last_modified_at
            incoming = cve.last_modified_at
            if stored and (not incoming or incoming <= stored):
                conn.execute(
                    cve_cache.update().where(cve_cache.c.cve_id == cve_id).values(fetched_at=now, expires_at=expires)
                )
                return False
            conn.execute(cve_cache.update().where(cve_cache.c.cve_id == cve_id).values(**values))
            return True

    def search(self, keywords: Iterable[str], limit: int = 50) -> list[CachedCve]:
        """Cached CVEs whose description or CPE criteria mention any keyword.

        Multi-word keywords are also tried in CPE form ("tomcat server" ->
        "tomcat_server"). Results are ordered by CVSS, highest first.
        """
        clauses = []
        for kw in keywords:
            kw = (kw or "").strip().lower()
            if not kw:
                continue
            clauses.append(func.lower(cve_cache.c.description).contains(kw, autoescape=True))
            clauses.append(func.lower(cve_cache.c.cpe_matches).contains(kw.replace(" ", "_"), autoescape=True))
        if not clauses:
            return []
        stmt = (
            cve_cache.select()
            .where(or_(*clauses))
            .order_by(cve_cache.c.cvss_score.desc().nulls_last(), cve_cache.c.cve_id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_cve(r) for r in rows]

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(cve_cache)).scalar_one()

    def purge_expired(self) -> int:
        """Delete all entries past their expiry. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(delete(cve_cache).where(cve_cache.c.expires_at < now_iso()))
        return result.rowcount


class KevStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def replace_all(self, entries: Iterable[KevEntry]) -> int:
        """Swap the whole catalog in one transaction. Returns the new entry count.

        Duplicate ids keep the first occurrence. If the insert fails the
        previous catalog survives untouched.
        """
        unique: dict[str, KevEntry] = {}
        for entry in entries:
            unique.setdefault(entry.cve_id.upper(), entry)
        rows = [
            dict(
                cve_id=cve_id,
                date_added=e.date_added,
                vendor_project=e.vendor_project,
                product=e.product,
                vulnerability_name=e.vulnerability_name,
                short_description=e.short_description,
                required_action=e.required_action,
                due_date=e.due_date,
                known_ransomware_use=1 if e.known_ransomware_use else 0,
            )
            for cve_id, e in unique.items()
        ]
        with self.engine.begin() as conn:
            conn.execute(delete(kev_entries))
            if rows:
                conn.execute(kev_entries.insert(), rows)
        return len(rows)

    def contains(self, cve_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(kev_entries.c.cve_id).where(kev_entries.c.cve_id == cve_id.upper())
            ).fetchone()
        return row is not None

    def get(self, cve_id: str) -> Optional[KevEntry]:
        with self.engine.connect() as conn:
            row = conn.execute(kev_entries.select().where(kev_entries.c.cve_id == cve_id.upper())).fetchone()
        return _row_to_kev(row) if row is not None else None

    def kev_ids(self) -> set[str]:
        with self.engine.connect() as conn:
            return {r.cve_id for r in conn.execute(select(kev_entries.c.cve_id))}

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(kev_entries)).scalar_one()


class SyncRunStore:
    """Append-only: rows are inserted as "running" and finished exactly once."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def start(self, source: str) -> SyncRun:
        started = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                sync_runs.insert().values(source=source, status=RUN_RUNNING, started_at=started, record_count=0)
            )
        return SyncRun(source=source, started_at=started, id=result.inserted_primary_key[0])

    def finish(self, run_id: int, status: str, record_count: int = 0, error: Optional[str] = None) -> SyncRun:
        with self.engine.begin() as conn:
            conn.execute(
                sync_runs.update()
                .where((sync_runs.c.id == run_id) & (sync_runs.c.status == RUN_RUNNING))
                .values(status=status, record_count=record_count, error=error, completed_at=now_iso())
            )
            row = conn.execute(sync_runs.select().where(sync_runs.c.id == run_id)).fetchone()
        if row is None:
            raise LookupError(f"sync run {run_id} does not exist")
        return _row_to_run(row)

    def latest(self, source: str, completed_only: bool = False) -> Optional[SyncRun]:
        stmt = sync_runs.select().where(sync_runs.c.source == source)
        if completed_only:
            stmt = stmt.where(sync_runs.c.completed_at.isnot(None))
        stmt = stmt.order_by(sync_runs.c.started_at.desc(), sync_runs.c.id.desc()).limit(1)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_run(row) if row is not None else None

    def list_recent(self, source: Optional[str] = None, limit: int = 20) -> list[SyncRun]:
        stmt = sync_runs.select()
        if source:
            stmt = stmt.where(sync_runs.c.source == source)
        stmt = stmt.order_by(sync_runs.c.started_at.desc(), sync_runs.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_run(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _json_list(value: Optional[str]) -> list[str]:
    return json.loads(value) if value else []


def _row_to_cve(row) -> CachedCve:
    return CachedCve(
        cve_id=row.cve_id,
        description=row.description or "",
        cvss_score=row.cvss_score,
        cvss_vector=row.cvss_vector,
        published_at=row.published_at,
        last_modified_at=row.last_modified_at,
        cwe_ids=_json_list(row.cwe_ids),
        cpe_matches=_json_list(row.cpe_matches),
        affected_ranges=_json_list(row.affected_ranges),
        references=_json_list(row.reference_urls),
        fetched_at=row.fetched_at,
        expires_at=row.expires_at,
    )


def _row_to_kev(row) -> KevEntry:
    return KevEntry(
        cve_id=row.cve_id,
        date_added=row.date_added,
        vendor_project=row.vendor_project or "",
        product=row.product or "",
        vulnerability_name=row.vulnerability_name or "",
        short_description=row.short_description or "",
        required_action=row.required_action or "",
        due_date=row.due_date,
        known_ransomware_use=bool(row.known_ransomware_use),
    )


def _row_to_run(row) -> SyncRun:
    return SyncRun(
        id=row.id,
        source=row.source,
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
        record_count=row.record_count,
        error=row.error,
    )
