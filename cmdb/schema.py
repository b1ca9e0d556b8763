"""
cmdb/schema.py -- SQLAlchemy Core tables for Threatwatch.

One MetaData for every table so a single engine serves the feed cache, the
match store and the inventory. All stores take that engine in their
constructor; make_engine() is the only place that creates one.

Uniqueness invariants live here, not in application code:
  asset_cve_matches  (client_id, asset_id, cve_id)
  vendor_cve_matches (scan_id, cve_id)
  vendor_breaches    (vendor_id, title, breach_date)

JSON arrays are serialized as text columns.
"""

from pathlib import Path

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'threatwatch.db'}"

metadata = MetaData()

# ---------------------------------------------------------------------------
# Inventory (owned by the inventory subsystem; read-only for the engine)
# ---------------------------------------------------------------------------

assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("asset_type", String(50)),  # "Software" | "Hardware" | ...
    Column("vendor", String(255)),
    Column("product_name", String(255)),
    Column("version", String(100)),
    Column("description", Text),
    Column("technologies", Text),  # JSON array
)

vendors = Table(
    "vendors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("website", String(255)),
)

# ---------------------------------------------------------------------------
# Feed cache
# ---------------------------------------------------------------------------

cve_cache = Table(
    "cve_cache",
    metadata,
    Column("cve_id", String(30), primary_key=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("cvss_score", Float),
    Column("cvss_vector", String(200)),
    Column("published_at", String(40)),
    Column("last_modified_at", String(40)),
    Column("cwe_ids", Text),  # JSON array
    Column("cpe_matches", Text),  # JSON array
    Column("affected_ranges", Text),  # JSON array
    Column("reference_urls", Text),  # JSON array
    Column("fetched_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)

kev_entries = Table(
    "kev_entries",
    metadata,
    Column("cve_id", String(30), primary_key=True),
    Column("date_added", String(20)),
    Column("vendor_project", String(255)),
    Column("product", String(255)),
    Column("vulnerability_name", Text),
    Column("short_description", Text),
    Column("required_action", Text),
    Column("due_date", String(20)),
    Column("known_ransomware_use", Integer, server_default="0"),
)

sync_runs = Table(
    "sync_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source", String(20), nullable=False),  # "nvd" | "cisa_kev"
    Column("status", String(20), nullable=False),
    Column("started_at", String(40), nullable=False),
    Column("completed_at", String(40)),
    Column("record_count", Integer, nullable=False, server_default="0"),
    Column("error", Text),
    Index("ix_sync_runs_source_started", "source", "started_at"),
)

# ---------------------------------------------------------------------------
# Matches and review workflow
# ---------------------------------------------------------------------------

asset_cve_matches = Table(
    "asset_cve_matches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False),
    Column("asset_id", Integer, nullable=False),
    Column("cve_id", String(30), nullable=False),
    Column("match_score", Integer, nullable=False, server_default="0"),
    Column("match_reason", Text),
    Column("is_kev", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("status", String(20), nullable=False, server_default="suggested"),
    Column("discovered_at", String(40), nullable=False),
    Column("reviewed_at", String(40)),
    Column("reviewed_by", Integer),
    Column("imported_vulnerability_id", Integer),
    UniqueConstraint("client_id", "asset_id", "cve_id", name="uq_client_asset_cve"),
    Index("ix_matches_client_discovered", "client_id", "discovered_at"),
)

vulnerabilities = Table(
    "vulnerabilities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False),
    Column("asset_id", Integer),
    Column("cve_id", String(30)),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("severity", String(20), nullable=False),
    Column("cvss_score", Float),
    Column("source", String(30), nullable=False, server_default="NVD"),
    Column("status", String(20), nullable=False, server_default="open"),
    Column("discovered_at", String(40), nullable=False),
)

# ---------------------------------------------------------------------------
# Vendor assessments
# ---------------------------------------------------------------------------

vendor_scans = Table(
    "vendor_scans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False),
    Column("vendor_id", Integer, nullable=False, index=True),
    Column("risk_score", Integer, nullable=False, server_default="100"),
    Column("vulnerability_count", Integer, nullable=False, server_default="0"),
    Column("breach_count", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default="in_progress"),
    Column("scan_date", String(40), nullable=False),
)

vendor_cve_matches = Table(
    "vendor_cve_matches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scan_id", Integer, nullable=False),
    Column("vendor_id", Integer, nullable=False),
    Column("cve_id", String(30), nullable=False),
    Column("match_score", Integer, nullable=False, server_default="0"),
    Column("match_reason", Text),
    Column("cvss_score", Float),
    Column("is_kev", Integer, nullable=False, server_default="0"),
    Column("discovered_at", String(40), nullable=False),
    UniqueConstraint("scan_id", "cve_id", name="uq_scan_cve"),
)

vendor_breaches = Table(
    "vendor_breaches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vendor_id", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    # "" when unknown; NULLs would not take part in the unique constraint.
    Column("breach_date", String(20), nullable=False, server_default=""),
    Column("description", Text),
    Column("affected_count", Integer, nullable=False, server_default="0"),
    Column("data_classes", Text),  # JSON array
    Column("risk_score", Integer, nullable=False, server_default="0"),
    Column("source", String(100)),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("first_seen_scan_id", Integer),
    UniqueConstraint("vendor_id", "title", "breach_date", name="uq_vendor_breach"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL so scheduled scans can write while API readers proceed.

    Set per-connection: SQLite PRAGMAs are not inherited by pooled connections.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str = _DEFAULT_DB_URL) -> Engine:
    """Create the engine and any missing tables.

    Plain in-memory URLs get a StaticPool so every thread (scheduler worker,
    TestClient thread pool) sees the same database.
    """
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        # The scheduler runs store calls in worker threads.
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine
