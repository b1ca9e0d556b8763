#!/usr/bin/env python3
"""
Threatwatch -- threat intelligence correlation for asset and vendor inventories.
NVD and CISA KEV are free; an NVD API key only raises the rate limit.

Usage:
  python main.py sync-kev
  python main.py kev-stats
  python main.py lookup CVE-2021-44228
  python main.py add-asset 1 "Tomcat App Server" --vendor Apache --product Tomcat --version 9.0.50
  python main.py add-vendor 1 Zoom --website zoom.us
  python main.py scan-asset 1 4
  python main.py scan-client 1
  python main.py scan-vendor 1 2
  python main.py suggestions 1 --status suggested
  python main.py review 17 accepted
  python main.py import 1 4 CVE-2024-1234
  python main.py briefing 1
  python main.py run-scheduler

Environment variables (see core/config.py for the full list):
  DATABASE_URL    SQLAlchemy URL, defaults to threatwatch.db next to this file.
  NVD_API_KEY     Optional NVD API key. Raises the rate limit tenfold.
  BREACH_SOURCE   "catalog" (offline, default) or "hibp".
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict

from cmdb.models import Asset, Vendor
from cmdb.schema import make_engine
from core.config import get_settings
from core.errors import ThreatIntelError
from intel.factory import build_service


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _cmd_sync_kev(service, args) -> int:
    print("Syncing CISA Known Exploited Vulnerabilities catalog...", end=" ", flush=True)
    run = service.sync_kev_catalog()
    print(f"{run.status}.")
    print(f"  {run.record_count} entries" + (f" ({run.error})" if run.error else ""))
    return 0 if run.status != "failed" else 1


def _cmd_kev_stats(service, args) -> int:
    stats = service.get_kev_stats()
    print(f"  KEV entries:  {stats.total}")
    print(f"  Last sync:    {stats.last_sync_at or 'never'}")
    print(f"  Last status:  {stats.last_status or '-'}")
    return 0


def _cmd_lookup(service, args) -> int:
    try:
        result = service.lookup_cve(args.cve_id)
    except ValueError:
        print(f"  [!] '{args.cve_id}' doesn't look like a valid CVE ID. Expected format: CVE-YYYY-NNNNN")
        return 2
    if result.cve is None:
        print(f"  [!] No NVD record found for {args.cve_id.upper()}.")
        return 1
    if args.json:
        _print_json({"source": result.source, "is_kev": result.is_kev, "cve": asdict(result.cve)})
        return 0
    cve = result.cve
    print(f"\n  {cve.cve_id}  (from {result.source})")
    print(f"  CVSS:  {cve.cvss_score if cve.cvss_score is not None else 'n/a'}  {cve.cvss_vector or ''}")
    print(f"  KEV:   {'yes -- actively exploited' if result.is_kev else 'no'}")
    print(f"  {cve.description}\n")
    for rng in cve.affected_ranges[:5]:
        print(f"    affected: {rng}")
    return 0


def _cmd_add_asset(service, args) -> int:
    asset_id = service.inventory.create_asset(
        Asset(
            client_id=args.client_id,
            name=args.name,
            vendor=args.vendor,
            product_name=args.product,
            version=args.version,
            description=args.description,
            technologies=args.tech or [],
            asset_type=args.type,
        )
    )
    print(f"  Asset {asset_id} created.")
    return 0


def _cmd_add_vendor(service, args) -> int:
    vendor_id = service.inventory.create_vendor(Vendor(client_id=args.client_id, name=args.name, website=args.website))
    print(f"  Vendor {vendor_id} created.")
    return 0


def _cmd_scan_asset(service, args) -> int:
    result = service.scan_asset(args.client_id, args.asset_id)
    if result.skipped:
        print(f"  Skipped {result.asset_name}: {result.skip_reason}")
        return 0
    if result.feed_error:
        print(f"  [!] Feed unavailable, cache only: {result.feed_error}")
    print(f"  {result.asset_name}: {result.candidates_found} candidates, {result.new_matches} new matches\n")
    for c in result.matches:
        flag = "KEV " if c.is_kev else "    "
        print(f"  {flag}{c.cve_id:<18} score {c.match_score:>3}  cvss {c.cvss_score or '-':>4}  {c.match_reason}")
    return 0


def _cmd_scan_client(service, args) -> int:
    summary = service.scan_all_assets(args.client_id)
    print(
        f"  Client {summary.client_id}: {summary.assets_scanned} scanned, {summary.assets_skipped} skipped,"
        f" {summary.assets_failed} failed, {summary.new_matches} new matches"
    )
    for err in summary.errors:
        print(f"  [!] {err}")
    return 0 if summary.ok else 1


def _cmd_scan_vendor(service, args) -> int:
    result = service.scan_vendor(args.client_id, args.vendor_id)
    scan = result.scan
    print(f"  Vendor {scan.vendor_id}: risk {scan.risk_score}/100 ({scan.status})")
    print(f"  {scan.vulnerability_count} CVE(s), {scan.breach_count} breach(es), {result.new_breaches} new")
    for b in result.breaches:
        print(f"    breach {b.breach_date or '????-??-??'}  risk {b.risk_score:>3}  {b.title}")
    for c in result.matches:
        print(f"    {'KEV ' if c.is_kev else ''}{c.cve_id}  cvss {c.cvss_score or '-'}")
    return 0


def _cmd_suggestions(service, args) -> int:
    rows = service.get_client_suggestions(args.client_id, args.status)
    if not rows:
        print("  No matches.")
        return 0
    for s in rows:
        m = s.match
        print(
            f"  #{m.id:<5} {'KEV ' if m.is_kev else '    '}{m.cve_id:<18} {m.status:<9}"
            f" score {m.match_score:>3}  {s.asset_name}"
        )
    return 0


def _cmd_review(service, args) -> int:
    result = service.update_match_status(args.match_id, args.status, args.reviewed_by)
    print(f"  Match {result.match.id}: {result.match.status}" + ("" if result.changed else " (unchanged)"))
    return 0


def _cmd_import(service, args) -> int:
    result = service.import_cve_as_vulnerability(args.client_id, args.asset_id, args.cve_id, args.match_id)
    verb = "Created" if result.created else "Already imported as"
    print(f"  {verb} vulnerability {result.vulnerability_id} ({result.severity})")
    return 0


def _cmd_briefing(service, args) -> int:
    _print_json(asdict(service.get_daily_briefing(args.client_id)))
    return 0


def _cmd_run_scheduler(scheduler, args) -> int:
    async def _run() -> None:
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print("\n  Scheduler stopped.")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threatwatch",
        description="Correlate NVD and CISA KEV threat data with asset and vendor inventories.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("sync-kev", help="Refresh the CISA KEV catalog and re-flag open matches")
    sub.add_parser("kev-stats", help="Show KEV catalog size and last sync")

    p = sub.add_parser("lookup", help="Look up one CVE (cache first, then NVD)")
    p.add_argument("cve_id", metavar="CVE-ID")
    p.add_argument("--json", action="store_true", help="Output structured JSON")

    p = sub.add_parser("add-asset", help="Add an asset to a client's inventory")
    p.add_argument("client_id", type=int)
    p.add_argument("name")
    p.add_argument("--vendor")
    p.add_argument("--product")
    p.add_argument("--version")
    p.add_argument("--description")
    p.add_argument("--tech", action="append", metavar="NAME", help="Declared technology (repeatable)")
    p.add_argument("--type", default="Software", help="Asset type (default: Software)")

    p = sub.add_parser("add-vendor", help="Add a third-party vendor")
    p.add_argument("client_id", type=int)
    p.add_argument("name")
    p.add_argument("--website")

    p = sub.add_parser("scan-asset", help="Match one asset against NVD and the cache")
    p.add_argument("client_id", type=int)
    p.add_argument("asset_id", type=int)

    p = sub.add_parser("scan-client", help="Scan every asset of a client")
    p.add_argument("client_id", type=int)

    p = sub.add_parser("scan-vendor", help="CVE and breach scan for one vendor")
    p.add_argument("client_id", type=int)
    p.add_argument("vendor_id", type=int)

    p = sub.add_parser("suggestions", help="List a client's matches, KEV first")
    p.add_argument("client_id", type=int)
    p.add_argument("--status", choices=["suggested", "accepted", "dismissed", "imported"])

    p = sub.add_parser("review", help="Accept or dismiss a suggested match")
    p.add_argument("match_id", type=int)
    p.add_argument("status", choices=["accepted", "dismissed"])
    p.add_argument("--reviewed-by", type=int, default=None)

    p = sub.add_parser("import", help="Import a matched CVE as a tracked vulnerability")
    p.add_argument("client_id", type=int)
    p.add_argument("asset_id", type=int)
    p.add_argument("cve_id", metavar="CVE-ID")
    p.add_argument("--match-id", type=int, default=None)

    p = sub.add_parser("briefing", help="Daily threat briefing for a client (JSON)")
    p.add_argument("client_id", type=int)

    sub.add_parser("run-scheduler", help="Run the KEV sync and inventory scan timers in the foreground")
    return parser


_COMMANDS = {
    "sync-kev": _cmd_sync_kev,
    "kev-stats": _cmd_kev_stats,
    "lookup": _cmd_lookup,
    "add-asset": _cmd_add_asset,
    "add-vendor": _cmd_add_vendor,
    "scan-asset": _cmd_scan_asset,
    "scan-client": _cmd_scan_client,
    "scan-vendor": _cmd_scan_vendor,
    "suggestions": _cmd_suggestions,
    "review": _cmd_review,
    "import": _cmd_import,
    "briefing": _cmd_briefing,
}


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO if args.verbose or args.command == "run-scheduler" else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = get_settings()
    engine = make_engine(settings.database_url)
    service, scheduler = build_service(settings, engine)
    try:
        if args.command == "run-scheduler":
            return _cmd_run_scheduler(scheduler, args)
        return _COMMANDS[args.command](service, args)
    except ThreatIntelError as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
