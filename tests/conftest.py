"""
tests/conftest.py -- Shared fixtures for Threatwatch tests.

This module provides:
  - engine / store fixtures: a fresh in-memory database per test
  - feed: FixtureFeedClient loaded with the records in nvd_fixtures.py
  - service: ThreatIntelService wired to the stores, the fixture feed and the
    offline breach catalog
  - api_client: TestClient over the real app with a patched lifespan

Design: make_engine() gives "sqlite://" a StaticPool, so every connection
(including TestClient's worker threads) shares one in-memory database. Each
engine is its own database, which keeps tests isolated.

TrustedHostMiddleware only admits localhost, so the TestClient is created
with base_url="http://localhost" instead of the default "testserver".
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from cache.store import CveCacheStore, KevStore, SyncRunStore
from cmdb.models import Asset, Vendor
from cmdb.schema import make_engine
from cmdb.store import InventoryStore, MatchStore, VendorScanStore, VulnerabilityStore
from core.breach import KnownBreachCatalog
from core.config import Settings
from core.fetcher import FixtureFeedClient
from intel.service import ThreatIntelService
from nvd_fixtures import ALL_CVES, kev_record

CLIENT_ID = 1


class RecordingDispatcher:
    """Alert dispatcher that keeps every send() call for assertions."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, list]] = []

    def send(self, client_id, alerts) -> None:
        self.sent.append((client_id, list(alerts)))


def make_settings(**overrides) -> Settings:
    values = dict(database_url="sqlite://", scheduler_enabled=False, nvd_request_interval=0.0)
    values.update(overrides)
    return Settings(**values)


def build_stores(engine) -> SimpleNamespace:
    return SimpleNamespace(
        inventory=InventoryStore(engine),
        cache=CveCacheStore(engine),
        kev=KevStore(engine),
        sync_runs=SyncRunStore(engine),
        matches=MatchStore(engine),
        vulnerabilities=VulnerabilityStore(engine),
        vendor_scans=VendorScanStore(engine),
    )


def build_service(stores, feed, breaches=None, settings=None) -> ThreatIntelService:
    return ThreatIntelService(
        inventory=stores.inventory,
        cache=stores.cache,
        kev=stores.kev,
        sync_runs=stores.sync_runs,
        matches=stores.matches,
        vulnerabilities=stores.vulnerabilities,
        vendor_scans=stores.vendor_scans,
        feed=feed,
        breaches=breaches or KnownBreachCatalog(),
        settings=settings or make_settings(),
    )


def tomcat_asset(client_id: int = CLIENT_ID, **overrides) -> Asset:
    values = dict(
        client_id=client_id,
        name="Billing Tomcat",
        vendor="Apache",
        product_name="Tomcat",
        version="9.0.86",
    )
    values.update(overrides)
    return Asset(**values)


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- a new database for every test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def stores(engine) -> SimpleNamespace:
    return build_stores(engine)


@pytest.fixture
def feed() -> FixtureFeedClient:
    """Fixture feed: four CVEs, CVE-2025-24813 in the KEV catalog."""
    return FixtureFeedClient(cves=ALL_CVES, kev=[kev_record("CVE-2025-24813")])


@pytest.fixture
def service(stores, feed) -> ThreatIntelService:
    return build_service(stores, feed)


@pytest.fixture
def asset_id(stores) -> int:
    return stores.inventory.create_asset(tomcat_asset())


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


# ---------------------------------------------------------------------------
# API client -- module-scoped, one TestClient per test module
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, service):
    """Replace the real lifespan so routes see the test database and fixture feed.

    The purge_task is a long-sleeping coroutine so shutdown has a real task
    to cancel, matching the production lifespan.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, seed) where seed holds the ids of the seeded inventory.

    Inventory: one Tomcat asset and one Zoom vendor for client 1, plus one
    asset owned by client 2 for ownership checks.
    """
    engine = make_engine("sqlite://")
    stores = build_stores(engine)
    feed = FixtureFeedClient(cves=ALL_CVES, kev=[kev_record("CVE-2025-24813")])
    service = build_service(stores, feed)

    seed = SimpleNamespace(
        client_id=CLIENT_ID,
        asset_id=stores.inventory.create_asset(tomcat_asset()),
        vendor_id=stores.inventory.create_vendor(Vendor(client_id=CLIENT_ID, name="Zoom", website="zoom.us")),
        other_asset_id=stores.inventory.create_asset(tomcat_asset(client_id=2, name="Other Tomcat")),
        stores=stores,
    )

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(engine, service)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, seed

    engine.dispose()
