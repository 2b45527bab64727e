"""Command-line entry point.

Usage:
    listing-ingest fetch 389801252 284882215
    listing-ingest fetch 389801252 --country gb --source itunes-lookup --json
    listing-ingest reprocess --source appstore-web --since 2026-01-01 --version 1.2
    listing-ingest init-db
    listing-ingest health
    listing-ingest schedule --ids-file ids.txt
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import List, Optional

import httpx
import structlog

from listing_ingest.config import settings
from listing_ingest.core.logging import configure_logging
from listing_ingest.ingestion.base import FetchOptions
from listing_ingest.ingestion.factory import AdapterFactory


logger = structlog.get_logger(__name__)


def _parse_since(value: str) -> datetime:
    """ISO date or datetime; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _read_ids_file(path: str) -> List[str]:
    with open(path, encoding="utf-8") as handle:
        return [line.strip() for line in handle if line.strip() and not line.startswith("#")]


async def _cmd_fetch(args: argparse.Namespace) -> int:
    from listing_ingest.db.session import async_session_factory

    async with httpx.AsyncClient(follow_redirects=True) as client:
        pipeline = AdapterFactory(http_client=client).build_pipeline(async_session_factory)
        options = FetchOptions(country=args.country)

        if len(args.identifiers) == 1:
            results = {
                args.identifiers[0]: await pipeline.orchestrator.resolve(
                    args.identifiers[0], options, preferred_source=args.source
                )
            }
        else:
            results = await pipeline.batch_fetcher.fetch_batch(args.identifiers, options)

    failed = 0
    for identifier, result in results.items():
        if result.succeeded:
            if args.json:
                print(json.dumps(result.record.to_dict(), ensure_ascii=False))
            else:
                record = result.record
                print(f"{identifier}: {record.title!r} / {record.subtitle!r} [{record.source_name}]")
        else:
            failed += 1
            if args.json:
                print(json.dumps({"identifier": identifier, "error": result.error}))
            else:
                print(f"{identifier}: FAILED ({result.error})")
    return 1 if failed else 0


async def _cmd_reprocess(args: argparse.Namespace) -> int:
    from listing_ingest.db.session import async_session_factory

    pipeline = AdapterFactory().build_pipeline(async_session_factory)
    report = await pipeline.store.reprocess(args.source, args.since, args.version)
    print(
        f"reprocessed {report.scanned} payloads from {report.source_name} as v{report.schema_version}: "
        f"{report.created} created, {report.skipped_existing} already present, {report.rejected} rejected"
    )
    return 0


async def _cmd_init_db(args: argparse.Namespace) -> int:
    from listing_ingest.db.utils import init_db

    await init_db()
    print("database initialized")
    return 0


async def _cmd_health(args: argparse.Namespace) -> int:
    from listing_ingest.db.utils import check_database_health

    db_health = await check_database_health()
    print(f"database: {'ok' if db_health['healthy'] else 'DOWN ' + db_health.get('error', '')}")
    for config in sorted(settings.ADAPTERS, key=lambda c: c.priority):
        state = "enabled" if config.enabled else "disabled"
        print(
            f"adapter {config.name}: priority={config.priority} {state} "
            f"capacity={config.rate_limit.capacity} refill/s={config.rate_limit.refill_per_second:.3f}"
        )
    return 0 if db_health["healthy"] else 1


async def _cmd_schedule(args: argparse.Namespace) -> int:
    from listing_ingest.db.session import async_session_factory
    from listing_ingest.ingestion.scheduler import IngestionScheduler

    async with httpx.AsyncClient(follow_redirects=True) as client:
        pipeline = AdapterFactory(http_client=client).build_pipeline(async_session_factory)
        scheduler = IngestionScheduler(
            pipeline.batch_fetcher,
            identifier_provider=lambda: _read_ids_file(args.ids_file),
            interval_minutes=args.interval or settings.SCHEDULE_INTERVAL_MINUTES,
        )
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listing-ingest",
        description="App listing metadata ingestion pipeline",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch = subparsers.add_parser("fetch", help="Resolve identifiers now")
    fetch.add_argument("identifiers", nargs="+", help="App ids or storefront URLs")
    fetch.add_argument("--country", default=settings.DEFAULT_COUNTRY, help="Storefront country")
    fetch.add_argument("--source", default=None, help="Adapter to try first (single identifier)")
    fetch.add_argument("--json", action="store_true", help="Print records as JSON lines")
    fetch.set_defaults(handler=_cmd_fetch)

    reprocess = subparsers.add_parser("reprocess", help="Re-normalize stored payloads")
    reprocess.add_argument("--source", required=True, help="Adapter name")
    reprocess.add_argument("--since", type=_parse_since, default=None, help="ISO date/datetime")
    reprocess.add_argument("--version", required=True, help="Schema version to stamp")
    reprocess.set_defaults(handler=_cmd_reprocess)

    init_db = subparsers.add_parser("init-db", help="Create snapshot tables")
    init_db.set_defaults(handler=_cmd_init_db)

    health = subparsers.add_parser("health", help="Check database and list adapters")
    health.set_defaults(handler=_cmd_health)

    schedule = subparsers.add_parser("schedule", help="Run periodic ingestion cycles")
    schedule.add_argument("--ids-file", required=True, help="File with one identifier per line")
    schedule.add_argument("--interval", type=int, default=None, help="Minutes between cycles")
    schedule.set_defaults(handler=_cmd_schedule)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    try:
        return asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
