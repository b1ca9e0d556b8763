"""
intel/factory.py -- Builds the production object graph from Settings.

Shared by the API lifespan and the CLI so both run the same wiring:
engine -> stores -> feed and breach clients -> service -> scheduler.
"""

from sqlalchemy.engine import Engine

from cache.store import CveCacheStore, KevStore, SyncRunStore
from cmdb.store import InventoryStore, MatchStore, VendorScanStore, VulnerabilityStore
from core.breach import breach_client_from_settings
from core.config import Settings
from core.fetcher import NvdFeedClient
from intel.alerts import dispatcher_from_settings
from intel.scheduler import Scheduler
from intel.service import ThreatIntelService


def build_service(settings: Settings, engine: Engine) -> tuple[ThreatIntelService, Scheduler]:
    inventory = InventoryStore(engine)
    sync_runs = SyncRunStore(engine)
    service = ThreatIntelService(
        inventory=inventory,
        cache=CveCacheStore(engine, ttl_hours=settings.cve_cache_ttl_hours),
        kev=KevStore(engine),
        sync_runs=sync_runs,
        matches=MatchStore(engine),
        vulnerabilities=VulnerabilityStore(engine),
        vendor_scans=VendorScanStore(engine),
        feed=NvdFeedClient.from_settings(settings),
        breaches=breach_client_from_settings(settings),
        settings=settings,
    )
    scheduler = Scheduler.from_settings(settings, service, inventory, sync_runs, dispatcher_from_settings(settings))
    return service, scheduler
