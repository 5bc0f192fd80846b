#!/usr/bin/env python
"""
Backfill and drift-correction CLI.

Examples:
    python backfill.py orders --merchant M1 --location L1 --start 2024-01-01 --end 2024-02-01
    python backfill.py bookings --merchant M1 B1 B2
    python backfill.py gift-cards --merchant M1 GC1
    python backfill.py team-members --merchant M1 TM1 TM2
    python backfill.py relink --since 2024-01-01
    python backfill.py requeue --stage link-payment
    python backfill.py audit
"""

import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from eventsync.config import get_settings
from eventsync.database import build_engine, build_session_factory
from eventsync.services.backfill import BackfillOrchestrator, BackfillReport
from eventsync.services.persistence import EntityStore
from eventsync.services.upstream_client import UpstreamClient
from eventsync.utils.dates import parse_timestamp
from eventsync.utils.logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay upstream history and correct drift")
    sub = parser.add_subparsers(dest="command", required=True)

    orders = sub.add_parser("orders", help="Replay orders created in a time range")
    orders.add_argument("--merchant", required=True)
    orders.add_argument("--location", action="append", required=True, dest="locations")
    orders.add_argument("--start", required=True)
    orders.add_argument("--end", required=True)

    for name, help_text in (
        ("bookings", "Fetch and apply bookings by id"),
        ("gift-cards", "Sync gift cards and their full activity history"),
        ("team-members", "Fetch and apply team members by id"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--merchant", required=True)
        cmd.add_argument("ids", nargs="+")

    relink = sub.add_parser("relink", help="Enqueue link jobs for payments still unlinked")
    relink.add_argument("--merchant")
    relink.add_argument("--since")

    requeue = sub.add_parser("requeue", help="Requeue failed retry jobs")
    requeue.add_argument("--stage")
    requeue.add_argument("--include-not-found", action="store_true")

    audit = sub.add_parser("audit", help="Report gift cards whose balances disagree")
    audit.add_argument("--merchant")

    return parser


def print_report(label: str, report: BackfillReport) -> None:
    print("=" * 50)
    print(f"{label}: {report.processed} processed, {report.failed} failed, {report.batches} batches")
    for error in report.errors[:20]:
        print(f"  - {error}")
    print("=" * 50)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    upstream = UpstreamClient(settings, max_retries=settings.upstream_max_retries)
    orchestrator = BackfillOrchestrator(session_factory, upstream, settings)

    async def organization_for(merchant_id):
        if not merchant_id:
            return None
        async with session_factory() as db:
            org_id = await EntityStore(db).ensure_organization(merchant_id)
            await db.commit()
        return org_id

    try:
        org_id = await organization_for(getattr(args, "merchant", None))

        if args.command == "orders":
            start, end = parse_timestamp(args.start), parse_timestamp(args.end)
            if start is None or end is None:
                print("--start and --end must be ISO-8601 timestamps")
                return 2
            report = await orchestrator.backfill_orders(org_id, args.locations, start, end)
            print_report("Orders", report)
        elif args.command == "bookings":
            print_report("Bookings", await orchestrator.backfill_bookings(org_id, args.ids))
        elif args.command == "gift-cards":
            print_report("Gift cards", await orchestrator.backfill_gift_cards(org_id, args.ids))
        elif args.command == "team-members":
            print_report("Team members", await orchestrator.backfill_team_members(org_id, args.ids))
        elif args.command == "relink":
            since = parse_timestamp(args.since) if args.since else None
            print_report("Relink", await orchestrator.relink_unlinked_payments(org_id, since))
        elif args.command == "requeue":
            count = await orchestrator.requeue_failed_jobs(args.stage, args.include_not_found)
            print(f"Requeued {count} failed job(s)")
        elif args.command == "audit":
            drifts = await orchestrator.audit_gift_card_balances(org_id)
            for drift in drifts:
                print(
                    f"{drift.external_id}: cached={drift.cached_cents} "
                    f"computed={drift.computed_cents} reported={drift.reported_cents}"
                )
            print(f"{len(drifts)} card(s) drifting")
            return 1 if drifts else 0
        return 0
    finally:
        await upstream.aclose()
        await engine.dispose()


def main():
    args = build_parser().parse_args()
    settings = get_settings()
    setup_logging(settings.log_level, json_format=settings.log_json, include_uvicorn=False)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
