"""
Command-line interface for the ARIA rewards engine.

Server-side commands (dispatch, reconcile) work directly on the database
configured by DATABASE_URL. The sync command plays the device role: it
loads collected items from a JSON file and submits them to the API.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

# Server package lives under backend/
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "backend"))

from app.config import load_settings
from app.db.db import Base, SessionLocal, engine
from app.services.ledger_client import build_ledger_client
from app.services.settlement_dispatcher import SettlementDispatcher
from app.services.wallet_ledger import WalletLedgerService
from app.services.errors import ServiceError
from engine.api_client import AriaApiClient
from engine.config import SyncConfig
from engine.record_store import InMemoryRecordStore
from engine.submitter import BatchSubmitter
from engine.wallet_mirror import BalanceResolver


def cmd_dispatch(args):
    """Run one settlement cycle for a user, or for every user with work."""
    settings = load_settings()
    ledger = build_ledger_client(settings)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        dispatcher = SettlementDispatcher(db, ledger, settings)
        if args.user_id is not None:
            try:
                reports = [dispatcher.run_cycle(args.user_id)]
            except ServiceError as exc:
                print(f"Error: {exc.message}", file=sys.stderr)
                sys.exit(1)
            except ValueError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                sys.exit(1)
        else:
            reports = dispatcher.run_all()

    if not reports:
        print("Nothing to settle.")
        return
    for report in reports:
        print(json.dumps(report.to_dict(), indent=2))


def cmd_reconcile(args):
    """Heal stale pending transactions and abandoned claims for a user."""
    settings = load_settings()
    ledger = build_ledger_client(settings)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        try:
            summary = WalletLedgerService(db, ledger, settings).reconcile(args.user_id)
        except ServiceError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            sys.exit(1)
    print(json.dumps(summary.model_dump(mode="json", by_alias=True), indent=2))


def cmd_sync(args):
    """Submit collected items from a JSON file to the rewards API."""
    path = Path(args.items)
    if not path.exists():
        print(f"Error: {path} not found", file=sys.stderr)
        sys.exit(1)
    with open(path, "r", encoding="utf-8") as f:
        raw_items = json.load(f)

    config = SyncConfig.from_env()
    if args.api_url:
        config.api_base_url = args.api_url
    store = InMemoryRecordStore()
    for raw in raw_items:
        content = raw.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content)
        store.add_item(raw.get("type", "other"), content, item_id=raw.get("id"))

    client = AriaApiClient(config.api_base_url, args.user_id, config.http_timeout_seconds)
    report = BatchSubmitter(store, client, config).sync_once()

    print(f"Batches sent:  {report.batches}")
    print(f"Credited:      {report.credited}")
    print(f"To retry:      {report.retry}")
    if report.rejected_batches:
        print(f"Rejected:      {report.rejected_batches} batches")
    if report.transport_error:
        print(f"Interrupted:   {report.transport_error}")

    total = BalanceResolver(client, store).total_rewards()
    print(f"Total rewards: {total.amount} ({total.source})")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="ARIA Rewards settlement CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Dispatch command
    parser_dispatch = subparsers.add_parser("dispatch", help="Run a settlement cycle")
    parser_dispatch.add_argument("--user-id", type=int, default=None, help="Only this user (default: all)")

    # Reconcile command
    parser_reconcile = subparsers.add_parser("reconcile", help="Reconcile a user's wallet ledger")
    parser_reconcile.add_argument("--user-id", type=int, required=True, help="User id")

    # Sync command
    parser_sync = subparsers.add_parser("sync", help="Submit collected items as a device")
    parser_sync.add_argument("--items", required=True, help="JSON file with [{id, type, content}]")
    parser_sync.add_argument("--user-id", required=True, help="Value of the x-user-id header")
    parser_sync.add_argument("--api-url", default=None, help="API base URL (default: ARIA_API_URL)")

    args = parser.parse_args()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING"))

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Execute command
    if args.command == "dispatch":
        cmd_dispatch(args)
    elif args.command == "reconcile":
        cmd_reconcile(args)
    elif args.command == "sync":
        cmd_sync(args)


if __name__ == "__main__":
    main()
