"""
POS tenancy - maintenance CLI.

Commands:
- shards: List shard databases and their (redacted) connection strings
- warm: Connect every shard and report which succeeded
- distribution: Count stores per shard
- assign-stores: Put stores without a shard on the least-loaded shards
- reconcile-users: Find (and with --apply, remove) duplicate users left by
  interrupted migrations

Usage:
    posdb-tenancy shards
    posdb-tenancy assign-stores --dry-run
    posdb-tenancy reconcile-users --apply

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Exit code 0 on success, 1 on any failure
    - Write commands are dry-run capable

How to change safely:
    - Add new commands, don't change the output of existing ones
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import json_log_formatter

from .config import TenancyConfig
from .errors import TenancyError
from .service import TenancyService
from .shards.naming import redact_uri

logger = logging.getLogger(__name__)


def setup_logging(config: TenancyConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Tenancy configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("motor").setLevel(logging.WARNING)


async def _shards(service: TenancyService, args: argparse.Namespace) -> int:
    for shard_id in range(1, service.shards.shard_count + 1):
        print(f"{shard_id}\t{service.shards.database_name(shard_id)}\t{redact_uri(service.shards.shard_uri(shard_id))}")
    return 0


async def _warm(service: TenancyService, args: argparse.Namespace) -> int:
    connected = await service.shards.warm_all()
    print(f"Connected {len(connected)}/{service.shards.shard_count} shards: {connected}")
    return 0 if len(connected) == service.shards.shard_count else 1


async def _distribution(service: TenancyService, args: argparse.Namespace) -> int:
    for shard_id, count in (await service.assigner.distribution()).items():
        print(f"{service.shards.database_name(shard_id)}: {count} stores")
    return 0


async def _assign_stores(service: TenancyService, args: argparse.Namespace) -> int:
    assignments = await service.assigner.assign_unassigned(dry_run=args.dry_run)
    verb = "Would assign" if args.dry_run else "Assigned"
    for store_id, shard_id in assignments:
        print(f"{verb} {store_id} -> {service.shards.database_name(shard_id)}")
    print(f"{verb} {len(assignments)} store(s)")
    return 0


async def _reconcile_users(service: TenancyService, args: argparse.Namespace) -> int:
    report = await service.users.reconcile_migrations(dry_run=not args.apply)
    verb = "Removed" if args.apply else "Would remove"
    for entry in report:
        removed = ", ".join(t or "system" for t in entry["removed"])
        print(f"{entry['user_id']}: kept {entry['kept'] or 'system'}, {verb.lower()} {removed}")
    print(f"{len(report)} duplicated user(s)")
    return 0


COMMANDS = {
    "shards": _shards,
    "warm": _warm,
    "distribution": _distribution,
    "assign-stores": _assign_stores,
    "reconcile-users": _reconcile_users,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="posdb-tenancy", description="POS tenant shard maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("shards", help="List shard databases")
    subparsers.add_parser("warm", help="Connect every shard")
    subparsers.add_parser("distribution", help="Count stores per shard")

    assign_parser = subparsers.add_parser("assign-stores", help="Assign shards to stores that have none")
    assign_parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    reconcile_parser = subparsers.add_parser("reconcile-users", help="Clean up interrupted user migrations")
    reconcile_parser.add_argument("--apply", action="store_true", help="Delete stale copies (default: report only)")

    return parser


async def run(args: argparse.Namespace, service: TenancyService) -> int:
    """Run one command against a service, closing it afterwards."""
    try:
        return await COMMANDS[args.command](service, args)
    except TenancyError as e:
        logger.error(f"{args.command} failed: {e.message}", extra={"code": e.code})
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await service.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = TenancyConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    sys.exit(asyncio.run(run(args, TenancyService(config))))


if __name__ == "__main__":
    main()
