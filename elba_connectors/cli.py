"""CLI entry point: init-db, register, sync, scheduler, status."""

from __future__ import annotations

import argparse
import logging
import os
from collections import Counter

from elba_connectors.app import create_dispatcher, run_users_sync
from elba_connectors.config import load_config
from elba_connectors.connectors import CONNECTOR_REGISTRY
from elba_connectors.db import Database, Organisation
from elba_connectors.logging_config import configure_logging
from elba_connectors.schedule_users_sync import request_first_sync
from elba_connectors.secrets import resolve_secret

logger = logging.getLogger("connectors.cli")

CONNECTOR_CHOICES = ["all", *CONNECTOR_REGISTRY]


def _connector_names(choice: str) -> list[str]:
    return list(CONNECTOR_REGISTRY) if choice == "all" else [choice]


def cmd_init_db(args: argparse.Namespace) -> None:
    config = load_config()
    db = Database(config.database)
    try:
        db.create_schema()
    finally:
        db.close()


def cmd_sync(args: argparse.Namespace) -> None:
    """Run one users sync cycle, or the first sync of a single organisation."""
    config = load_config()
    db = Database(config.database)

    try:
        for name in _connector_names(args.connector):
            dispatcher, store = create_dispatcher(name, config, db)
            if args.organisation:
                organisation = store.get(args.organisation)
                if organisation is None:
                    logger.error("Organisation %s not found", args.organisation)
                    continue
                request_first_sync(dispatcher, name, organisation)
                reports = dispatcher.run_until_idle()
            else:
                reports = run_users_sync(dispatcher, name)
            logger.info(
                "Sync results for %s: %s", name, dict(Counter(r.status for r in reports))
            )
    finally:
        db.close()


def cmd_register(args: argparse.Namespace) -> None:
    """Store an organisation credential and run its first users sync."""
    config = load_config()
    db = Database(config.database)

    try:
        dispatcher, store = create_dispatcher(args.connector, config, db)
        organisation = Organisation(
            id=args.organisation,
            region=args.region,
            token=resolve_secret(args.token),
            account_login=args.account_login,
        )
        store.save(organisation)
        request_first_sync(dispatcher, args.connector, organisation)
        reports = dispatcher.run_until_idle()
        logger.info(
            "First sync results for %s: %s",
            args.organisation,
            dict(Counter(r.status for r in reports)),
            extra={"connector": args.connector, "organisation_id": args.organisation},
        )
    finally:
        db.close()


def cmd_scheduler(args: argparse.Namespace) -> None:
    """Start the cron scheduling loop."""
    from elba_connectors.scheduler import start_scheduler

    config = load_config()
    db = Database(config.database)
    try:
        start_scheduler(config, db, _connector_names(args.connector))
    finally:
        db.close()


def cmd_status(args: argparse.Namespace) -> None:
    """Show recent function runs."""
    config = load_config()
    db = Database(config.database)

    try:
        runs = db.get_recent_runs(function_id=args.function, limit=args.limit)
        if not runs:
            print("No sync runs found.")
            return

        fmt = "{:<36}  {:<30}  {:<36}  {:<9}  {:<9}  {:>8}  {:<20}  {}"
        print(fmt.format(
            "RUN ID", "FUNCTION", "ORGANISATION", "STATUS",
            "OUTPUT", "ATTEMPTS", "FINISHED", "ERROR",
        ))
        print("-" * 180)
        for r in runs:
            finished = str(r["finished_at"])[:19] if r["finished_at"] else ""
            error = (r.get("error_message") or "")[:40]
            print(fmt.format(
                str(r["id"])[:36],
                r["function_id"],
                str(r.get("organisation_id") or ""),
                r["status"],
                r.get("output_status") or "",
                r.get("attempts", 1),
                finished,
                error,
            ))
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="elba-connectors",
        description="Users synchronisation between SaaS connectors and elba",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database tables")
    init_parser.set_defaults(func=cmd_init_db)

    sync_parser = subparsers.add_parser("sync", help="Run one users sync cycle")
    sync_parser.add_argument(
        "--connector", "-c",
        choices=CONNECTOR_CHOICES,
        default="all",
        help="Connector to sync (default: all)",
    )
    sync_parser.add_argument(
        "--organisation", "-o",
        help="Only run the first sync of this organisation id",
    )
    sync_parser.set_defaults(func=cmd_sync)

    register_parser = subparsers.add_parser(
        "register", help="Store an organisation credential and run its first sync"
    )
    register_parser.add_argument(
        "--connector", "-c", choices=list(CONNECTOR_REGISTRY), required=True
    )
    register_parser.add_argument("--organisation", "-o", required=True, help="elba organisation id")
    register_parser.add_argument("--region", "-r", required=True, help="elba region, e.g. eu")
    register_parser.add_argument(
        "--token", "-t", required=True, help="SaaS credential or a secret reference"
    )
    register_parser.add_argument("--account-login", help="GitHub organisation login")
    register_parser.set_defaults(func=cmd_register)

    sched_parser = subparsers.add_parser("scheduler", help="Start the cron sync loop")
    sched_parser.add_argument(
        "--connector", "-c",
        choices=CONNECTOR_CHOICES,
        default="all",
        help="Connector to schedule (default: all)",
    )
    sched_parser.set_defaults(func=cmd_scheduler)

    status_parser = subparsers.add_parser("status", help="Show recent sync runs")
    status_parser.add_argument(
        "--function", "-f",
        help="Filter by function id, e.g. github-sync-users-page",
    )
    status_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=10,
        help="Number of runs to show (default: 10)",
    )
    status_parser.set_defaults(func=cmd_status)
    return parser


def main() -> None:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    args = build_parser().parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
