"""
Command line interface for invoice_sync.

Usage:
    python -m invoice_sync init-db
    python -m invoice_sync process S-1001
    python -m invoice_sync drain --limit 20
    python -m invoice_sync retry S-1001 S-1002
    python -m invoice_sync stats tenant-1 --period week
    python -m invoice_sync reclaim --older-than 30
    python -m invoice_sync cleanup --days 90
    python -m invoice_sync scenarios
    python -m invoice_sync test-connection tenant-1
"""
from __future__ import annotations
import argparse
from typing import Optional, Sequence

from loguru import logger

from .config import SyncConfig, configure_logging
from .errors import InvoiceSyncError
from .scenarios import default_catalog
from .service import STAT_PERIODS, InvoiceSyncService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoice_sync",
        description="Invoice Sync - Submit sales invoices to the tax authority",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    p = sub.add_parser("process", help="Submit one sale now")
    p.add_argument("sale_id")

    p = sub.add_parser("drain", help="Run one retry queue drain cycle")
    p.add_argument("--limit", type=int, help="Maximum entries to claim")

    p = sub.add_parser("retry", help="Resubmit sales that failed")
    p.add_argument("sale_ids", nargs="+")

    p = sub.add_parser("stats", help="Submission statistics for a tenant")
    p.add_argument("tenant_id")
    p.add_argument("--period", choices=sorted(STAT_PERIODS), default="month")

    p = sub.add_parser("reclaim", help="Return stale processing entries to pending")
    p.add_argument("--older-than", type=float, help="Minutes (default: RETRY_STALE_MINUTES)")

    p = sub.add_parser("cleanup", help="Delete old completed and failed retry entries")
    p.add_argument("--days", type=int, help="Age in days (default: RETRY_CLEANUP_DAYS)")

    sub.add_parser("scenarios", help="List the known sale scenarios")

    p = sub.add_parser("test-connection", help="Check a tenant's authority credentials")
    p.add_argument("tenant_id")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = SyncConfig.from_env()
    configure_logging(config, verbose=args.verbose)

    if args.command == "scenarios":
        for scenario in default_catalog.list():
            print(f"{scenario.code}  {scenario.name}  ({scenario.tax_rate * 100:g}%)")
        return 0

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        return 1

    try:
        with InvoiceSyncService(config) as service:
            if args.command == "init-db":
                service.initialize_schema()
                print("Schema initialized successfully")
                return 0

            if args.command == "process":
                result = service.process_sale(args.sale_id)
                print(f"{result.outcome.value}: {result.invoice_number or result.message}")
                return 0 if result.ok or result.queued else 1

            if args.command == "drain":
                report = service.drain(args.limit)
                print("\n=== Drain Results ===")
                for key, value in vars(report).items():
                    print(f"{key}: {value}")
                return 0

            if args.command == "retry":
                report = service.retry_failed(args.sale_ids)
                print(f"Retried: {report.retried_count}")
                for error in report.errors:
                    print(f"  {error}")
                return 0 if not report.errors else 1

            if args.command == "stats":
                stats = service.get_statistics(args.tenant_id, args.period)
                print(f"\n=== Statistics ({stats['period']}) ===")
                for key, value in stats.items():
                    if key != "period":
                        print(f"{key}: {value}")
                return 0

            if args.command == "reclaim":
                print(f"Reclaimed: {service.reclaim_stale(args.older_than)}")
                return 0

            if args.command == "cleanup":
                print(f"Deleted: {service.cleanup(args.days)}")
                return 0

            if args.command == "test-connection":
                result = service.test_connection(args.tenant_id)
                print(f"Connection test: {result}")
                return 0 if result["status"] == "connected" else 1

    except InvoiceSyncError as e:
        logger.error(f"Invoice sync error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Command {args.command} failed: {e}")
        return 1

    return 1
