"""
intel/scheduler.py -- Recurring KEV sync and full-inventory scans.

One Scheduler object owns both timers. Nothing is process-global: the API
lifespan creates it, starts it and stops it; tests skip the timers and call
run_kev_sync_once() / run_asset_scan_once() directly.

Each task has its own non-blocking lock. A run that finds its lock held
returns None immediately, so a slow scan is never started twice by its own
timer (or by a manual trigger racing the timer).

Errors are logged and swallowed at this level so the timers keep running.
The sync ledger and the log are the only record of a failed run.

Single-instance assumption: there is no cross-process lock. Two schedulers
against the same database will both scan.
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

from cmdb.repositories import InventoryRepository, SyncRunRepository
from core.config import now_iso
from core.models import RUN_FAILED, RUN_PARTIAL, RUN_SUCCESS, SOURCE_NVD, SyncRun
from intel.alerts import AlertDispatcher
from intel.service import ThreatIntelService

logger = logging.getLogger("threatwatch.scheduler")

IDLE = "idle"
RUNNING = "running"

KEV_SYNC = "kev_sync"
ASSET_SCAN = "asset_scan"


class Scheduler:
    def __init__(
        self,
        service: ThreatIntelService,
        inventory: InventoryRepository,
        sync_runs: SyncRunRepository,
        alerts: AlertDispatcher,
        kev_interval: float,
        scan_interval: float,
        alert_min_cvss: float = 7.0,
        sync_kev_on_start: bool = True,
    ) -> None:
        self.service = service
        self.inventory = inventory
        self.sync_runs = sync_runs
        self.alerts = alerts
        self.kev_interval = kev_interval
        self.scan_interval = scan_interval
        self.alert_min_cvss = alert_min_cvss
        self.sync_kev_on_start = sync_kev_on_start
        self._locks = {KEV_SYNC: threading.Lock(), ASSET_SCAN: threading.Lock()}
        self.state = {KEV_SYNC: IDLE, ASSET_SCAN: IDLE}
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings, service, inventory, sync_runs, alerts) -> "Scheduler":
        return cls(
            service,
            inventory,
            sync_runs,
            alerts,
            kev_interval=settings.kev_sync_interval_minutes * 60,
            scan_interval=settings.asset_scan_interval_minutes * 60,
            alert_min_cvss=settings.alert_min_cvss,
        )

    # ------------------------------------------------------------------
    # Guarded single runs
    # ------------------------------------------------------------------

    def _guarded(self, name: str, job: Callable[[], Optional[SyncRun]]) -> Optional[SyncRun]:
        lock = self._locks[name]
        if not lock.acquire(blocking=False):
            logger.info("%s already running -- skipping this trigger", name)
            return None
        self.state[name] = RUNNING
        try:
            return job()
        except Exception:
            logger.exception("%s run failed", name)
            return None
        finally:
            self.state[name] = IDLE
            lock.release()

    def run_kev_sync_once(self) -> Optional[SyncRun]:
        """Sync the KEV catalog once. None when a sync is already in progress."""
        return self._guarded(KEV_SYNC, self.service.sync_kev_catalog)

    def run_asset_scan_once(self) -> Optional[SyncRun]:
        """Scan every client's inventory once and alert on new high-severity matches.

        Returns the SyncRun(source="nvd") for the pass, or None when a scan
        is already in progress.
        """
        return self._guarded(ASSET_SCAN, self._scan_all_clients)

    def _scan_all_clients(self) -> SyncRun:
        run = self.sync_runs.start(SOURCE_NVD)
        scanned = failed = new_matches = 0
        errors: list[str] = []
        for client_id in self.inventory.list_client_ids():
            started = now_iso()
            try:
                summary = self.service.scan_all_assets(client_id)
            except Exception as exc:
                logger.exception("Scan failed for client %d", client_id)
                failed += 1
                errors.append(f"client {client_id}: {exc}")
                continue
            scanned += summary.assets_scanned
            failed += summary.assets_failed
            new_matches += summary.new_matches
            errors.extend(f"client {client_id}: {e}" for e in summary.errors)
            self._alert(client_id, started)

        if failed and not scanned:
            status = RUN_FAILED
        elif failed:
            status = RUN_PARTIAL
        else:
            status = RUN_SUCCESS
        logger.info("Full scan finished: %s, %d assets, %d failures, %d new matches", status, scanned, failed, new_matches)
        return self.sync_runs.finish(run.id, status, new_matches, "; ".join(errors[:20]) or None)

    def _alert(self, client_id: int, since: str) -> None:
        try:
            alerts = self.service.list_new_high_severity(client_id, since, self.alert_min_cvss)
            if alerts:
                self.alerts.send(client_id, alerts)
        except Exception:
            logger.exception("Alerting failed for client %d", client_id)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _loop(self, interval: float, job: Callable[[], Optional[SyncRun]], run_first: bool) -> None:
        """Run job every `interval` seconds in a worker thread.

        CancelledError from stop() propagates out of asyncio.sleep and ends
        the loop; a job already running in its thread finishes on its own.
        """
        if run_first:
            await asyncio.to_thread(job)
        while True:
            await asyncio.sleep(interval)
            await asyncio.to_thread(job)

    def start(self) -> None:
        """Create both timer tasks on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(self.kev_interval, self.run_kev_sync_once, self.sync_kev_on_start)),
            asyncio.create_task(self._loop(self.scan_interval, self.run_asset_scan_once, False)),
        ]
        logger.info("Scheduler started (KEV every %ss, scan every %ss)", self.kev_interval, self.scan_interval)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._tasks)
