#!/usr/bin/env python3
"""
Books Sync CLI

Setup and operations tool for the accounting sync engine.

Usage:
    books-sync setup                       # Interactive setup wizard
    books-sync test                        # Test your connection
    books-sync sync 1042 [--draft]         # Sync one order
    books-sync pay 1042                    # Apply an order's payment
    books-sync refund 1042                 # Create missing credit notes
    books-sync bulk --from 2024-01-01 --to 2024-01-31
    books-sync retry [--watch]             # Retry failed syncs
    books-sync reconcile --from 2024-01-01 --to 2024-01-31
    books-sync sweep                       # Fail stale reports, prune old ones
    books-sync status [1042]               # Show sync status
    books-sync stats                       # Show statistics
"""

import argparse
import getpass
import json
import os
import signal
import sys
import threading
from datetime import date
from pathlib import Path

from colorama import Fore, Style, init

from books_sync.config import Settings, get_config_path, load_settings, save_settings
from books_sync.crypto import CredentialCipher
from books_sync.exceptions import SyncError
from books_sync.log import configure_logging
from books_sync.models import SyncResult, SyncStatus
from books_sync.sources import InMemoryOrderSource, JsonOrderSource

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT

ORDERS_ENV = "BOOKS_SYNC_ORDERS_FILE"

STATUS_COLORS = {
    SyncStatus.SYNCED: GREEN,
    SyncStatus.DRAFT: BLUE,
    SyncStatus.PENDING: YELLOW,
    SyncStatus.FAILED: RED,
}


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}Books Sync{RESET}{BLUE}                                               ║
║     Orders → Invoices, Payments and Credit Notes               ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def print_result(record_id: str, result: SyncResult) -> None:
    if result.success:
        invoice = result.data.get("invoice_number") or result.remote_invoice_id
        print_success(f"#{record_id}: {result.status.label} (invoice {invoice})")
    elif result.status == SyncStatus.PENDING:
        print_warning(f"#{record_id}: skipped, {result.error}")
    else:
        print_error(f"#{record_id}: {result.error} [{result.error_kind}]")


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD")


def orders_path(args, settings: Settings) -> Path:
    if getattr(args, "orders", None):
        return Path(args.orders)
    if os.environ.get(ORDERS_ENV):
        return Path(os.environ[ORDERS_ENV])
    return settings.state_path("orders.json") or Path("orders.json")


def build_engine(args, settings: Settings | None = None):
    """Load settings and orders and construct the engine."""
    from books_sync.engine import SyncEngine

    settings = settings or load_settings(args.config)
    path = orders_path(args, settings)
    if path.exists():
        source = JsonOrderSource(path)
    else:
        if args.command not in ("setup", "test", "stats", "sweep"):
            print_warning(f"Orders file {path} not found, no local orders available")
        source = InMemoryOrderSource()
    return SyncEngine(settings, source)


def require_order(engine, record_id: str):
    order = engine.source.get(record_id)
    if order is None:
        print_error(f"Order {record_id} not found")
    return order


def cmd_setup(args):
    """Interactive setup wizard."""
    print_banner()
    print(f"{BOLD}Setup Wizard{RESET}")
    print("Let's connect your accounting organization.\n")

    settings = load_settings(args.config)

    current = settings.api.organization_id
    organization_id = input(f"Organization ID [{current}]: ").strip() or current
    if not organization_id:
        print_error("Organization ID is required")
        print("  Find it under Settings → Organization Profile")
        return 1

    print(f"\n{BOLD}OAuth Credentials{RESET}")
    print("  Create a self client in the developer console to get these.")
    client_id = input("Client ID: ").strip()
    client_secret = getpass.getpass("Client Secret: ").strip()
    refresh_token = getpass.getpass("Refresh Token: ").strip()
    if not (client_id and client_secret and refresh_token):
        print_error("Client ID, client secret and refresh token are all required")
        return 1

    print(f"\n{BOLD}Sync Options{RESET}")
    stop_on_conflict = input(
        "Stop when a paid invoice differs from the order? [Y/n]: "
    ).strip().lower() != "n"
    auto_payment = input("Apply payments automatically on completion? [Y/n]: ").strip().lower() != "n"

    settings.api.organization_id = organization_id
    settings.sync.stop_on_locked_conflict = stop_on_conflict
    settings.triggers.auto_apply_payment = auto_payment
    if not settings.encryption_key:
        settings.encryption_key = CredentialCipher.generate_key()
        print_warning("Generated a new encryption key; keep the config file safe")

    config_path = save_settings(settings, args.config)
    print_success(f"Configuration saved to {config_path}")

    try:
        with build_engine(args, settings) as engine:
            engine.connect(client_id, client_secret, refresh_token)
        print_success("Credentials stored (encrypted)")
    except SyncError as e:
        print_error(f"Failed to store credentials: {e}")
        return 1

    print(f"\n{BOLD}Testing connection...{RESET}")
    return cmd_test(args)


def cmd_test(args):
    """Test the accounting service connection."""
    try:
        engine = build_engine(args)
    except SyncError as e:
        print_error(f"Not configured: {e}")
        print_info("Option 1: Run 'books-sync setup' for interactive setup")
        print_info("Option 2: Set environment variables:")
        print("    export BOOKS_SYNC_ORGANIZATION_ID=10234695")
        print("    export BOOKS_SYNC_ENCRYPTION_KEY=...")
        return 1

    print_info(f"Connecting to organization {engine.settings.api.organization_id}...")
    with engine:
        result = engine.health_check()

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Organization: {result.get('organization', 'unknown')}")
        return 0

    print_error(f"Connection failed: {result.get('message', result['status'])}")
    return 1


def cmd_sync(args):
    """Sync one order."""
    with build_engine(args) as engine:
        order = require_order(engine, args.record_id)
        if order is None:
            return 1

        if args.draft or args.final or args.force:
            plan = engine.policy.plan(order)
            as_draft = args.draft or (plan.as_draft and not args.final)
            result = engine.sync_record(
                order,
                as_draft=as_draft,
                force=args.force,
                with_payment=not as_draft and order.amount_paid > 0
                and engine.settings.triggers.auto_apply_payment,
            )
        else:
            result = engine.sync_for_status(order)

        print_result(order.id, result)
        for key in ("linked_existing", "recreated_from", "invoice_update_skipped"):
            if result.data.get(key):
                print_info(f"  {key.replace('_', ' ')}: {result.data[key]}")
        return 0 if result.success else 1


def cmd_pay(args):
    """Apply an order's payment to its invoice."""
    with build_engine(args) as engine:
        order = require_order(engine, args.record_id)
        if order is None:
            return 1

        outcome = engine.apply_payment(order, force=args.force)
        if not outcome.success:
            print_error(f"Payment failed: {outcome.error} [{outcome.error_kind}]")
            return 1
        if outcome.already_recorded:
            print_info(f"Payment already recorded ({outcome.payment_id or 'invoice settled'})")
        else:
            print_success(f"Payment {outcome.payment_number or outcome.payment_id} recorded: {outcome.amount:.2f}")
            if outcome.bank_charges:
                print(f"  Bank charges: {outcome.bank_charges:.2f}")
        return 0


def cmd_refund(args):
    """Create credit notes for an order's refunds."""
    with build_engine(args) as engine:
        order = require_order(engine, args.record_id)
        if order is None:
            return 1

        if args.refund_id:
            refund = order.get_refund(args.refund_id)
            if refund is None:
                print_error(f"Refund {args.refund_id} not found on order {order.id}")
                return 1
            result = engine.sync_refund(order, refund)
        else:
            result = engine.orchestrator.sync_outstanding_refunds(order)

        if result.success:
            print_success(f"Refunds synced for #{order.id}")
            if result.data.get("credit_note_id"):
                print(f"  Credit note: {result.data['credit_note_id']}")
            if result.data.get("credit_note_applied") is False:
                print_warning("  Credit note could not be applied to the invoice")
            return 0

        print_result(order.id, result)
        return 1


def cmd_bulk(args):
    """Sync many orders."""
    if not args.ids and not (args.date_from and args.date_to):
        print_error("Pass --ids or both --from and --to")
        return 1

    cancel = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    with build_engine(args) as engine:
        print_banner()
        print(f"{BOLD}Starting Bulk Sync{RESET}\n")

        def progress(record_id: str, result: SyncResult) -> None:
            print_result(record_id, result)

        batch = engine.sync_batch(
            record_ids=args.ids.split(",") if args.ids else None,
            date_range=None if args.ids else (args.date_from, args.date_to),
            as_draft=True if args.draft else None,
            cancel_event=cancel,
            on_progress=progress,
        )

        print(f"\n{GREEN}Bulk sync complete!{RESET}" if not batch.cancelled else f"\n{YELLOW}Bulk sync cancelled{RESET}")
        print(f"  Synced: {batch.success_count}")
        if batch.failed_count:
            print_warning(f"  Failed: {batch.failed_count}")
        return 0 if batch.failed_count == 0 else 1


def cmd_retry(args):
    """Retry failed syncs once, or forever with --watch."""
    with build_engine(args) as engine:
        if not args.watch:
            summary = engine.run_retries()
            if summary.skipped_reason:
                print_warning(f"Retry pass skipped: {summary.skipped_reason}")
            print(json.dumps(summary.to_dict(), indent=2))
            return 0 if summary.failed == 0 else 1

        stop = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        print_info(f"Retrying every {engine.settings.retry.interval_minutes:g} minutes (Ctrl+C to stop)")

        def on_pass(summary) -> None:
            print_info(
                f"Pass: {summary.succeeded} succeeded, {summary.failed} failed, "
                f"{summary.skipped} skipped, {summary.exhausted} exhausted"
            )

        engine.scheduler.run_forever(stop, on_pass=on_pass)
        return 0


def cmd_reconcile(args):
    """Compare local orders and remote invoices for a period."""
    with build_engine(args) as engine:
        try:
            report = engine.generate_report(args.date_from, args.date_to)
        except ValueError as e:
            print_error(str(e))
            return 1

        if args.json:
            print(report.model_dump_json(indent=2))
            return 0 if report.is_healthy else 1

        s = report.summary
        print(f"{BOLD}Reconciliation {report.period_start} → {report.period_end}{RESET}")
        print(f"  Report: {report.id} ({report.status.value})")
        if report.error:
            print_error(f"  {report.error}")
            return 1

        print(f"  Local orders: {s.total_local_records}   Remote invoices: {s.total_remote_invoices}")
        print(f"  Matched: {s.matched_count}")
        print(f"  Totals: local {s.local_total_amount:.2f} / remote {s.remote_total_amount:.2f} "
              f"(difference {s.amount_difference:.2f})")

        if not report.discrepancies:
            print_success("No discrepancies")
            return 0

        print(f"\n{BOLD}Discrepancies ({len(report.discrepancies)}):{RESET}")
        for d in report.discrepancies:
            who = f"#{d.order_number}" if d.order_number else d.invoice_id
            print(f"  {YELLOW}{d.type.value:<18}{RESET} {who}: {d.message}")
            print(f"    actions: {', '.join(d.actions)}")
        return 1


def cmd_sweep(args):
    """Fail stale running reports and delete expired ones."""
    with build_engine(args) as engine:
        swept = engine.sweep_stale_reports()
        print_success(f"Marked {swept} stale report(s) failed")
        return 0


def cmd_status(args):
    """Show sync status."""
    with build_engine(args) as engine:
        if args.record_id:
            state = engine.store.get(args.record_id)
            if state is None:
                print_warning(f"No sync state for order {args.record_id}")
                return 1
            print(state.model_dump_json(indent=2))
            return 0

        print_banner()
        print(f"{BOLD}Sync Status{RESET}\n")
        counts = engine.store.count_by_status()
        for status in SyncStatus:
            color = STATUS_COLORS.get(status, "")
            print(f"  {color}{status.label:<8}{RESET} {counts.get(status.value, 0)}")

        failed = engine.store.find_by_status(SyncStatus.FAILED, limit=5)
        if failed:
            print(f"\n{BOLD}Recent failures:{RESET}")
            for state in failed:
                print(f"  #{state.record_id} (retries {state.retry_count}): {state.last_error}")

        latest = engine.reports.latest()
        if latest:
            print(f"\n  Last reconciliation: {latest.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')} "
                  f"({latest.status.value}, {len(latest.discrepancies)} discrepancies)")
        return 0


def cmd_stats(args):
    """Show detailed statistics."""
    with build_engine(args) as engine:
        stats = engine.get_stats()

        print_banner()
        print(f"{BOLD}Engine Statistics{RESET}\n")
        print(f"  Organization: {stats['organization_id']}")

        cache = stats["contact_cache"]
        print(f"\n{BOLD}Contact cache:{RESET}")
        print(f"  {cache['size']}/{cache['max_size']} (hit rate: {cache['hit_rate']:.1%})")

        client = stats["client"]
        print(f"\n{BOLD}API Client:{RESET}")
        print(f"  Requests: {client['request_count']}")
        print(f"  Errors: {client['error_count']} ({client['error_rate']:.2%})")
        rl = client["rate_limiter"]
        print(f"  Rate limiter: {rl['requests_made']} requests, "
              f"{rl['requests_throttled']} throttled, "
              f"{rl['total_wait_time_seconds']:.1f}s wait time")

        token = stats["token"]
        print(f"\n{BOLD}OAuth:{RESET}")
        print(f"  Connected: {'yes' if token['configured'] else 'no'}")
        print(f"  Refreshes: {token['refresh_count']}")
        return 0


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Books Sync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  books-sync setup                 Interactive setup wizard
  books-sync test                  Test your connection
  books-sync sync 1042             Sync one order per its status
  books-sync retry --watch         Keep retrying failed syncs
  books-sync reconcile --from 2024-01-01 --to 2024-01-31
        """,
    )
    parser.add_argument("--config", help=f"Config file (default: {get_config_path()})")
    parser.add_argument("--orders", help=f"Orders JSON file (default: ${ORDERS_ENV})")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("setup", help="Interactive setup wizard")
    subparsers.add_parser("test", help="Test your connection")

    sync_parser = subparsers.add_parser("sync", help="Sync one order")
    sync_parser.add_argument("record_id")
    disposition = sync_parser.add_mutually_exclusive_group()
    disposition.add_argument("--draft", action="store_true", help="Leave the invoice as a draft")
    disposition.add_argument("--final", action="store_true", help="Submit the invoice")
    sync_parser.add_argument("--force", action="store_true", help="Bypass the already-synced check")

    pay_parser = subparsers.add_parser("pay", help="Apply an order's payment")
    pay_parser.add_argument("record_id")
    pay_parser.add_argument("--force", action="store_true", help="Record even if a payment is stored")

    refund_parser = subparsers.add_parser("refund", help="Create credit notes for refunds")
    refund_parser.add_argument("record_id")
    refund_parser.add_argument("--refund-id", help="Only this refund")

    bulk_parser = subparsers.add_parser("bulk", help="Sync many orders")
    bulk_parser.add_argument("--ids", help="Comma-separated order ids")
    bulk_parser.add_argument("--from", dest="date_from", type=parse_date)
    bulk_parser.add_argument("--to", dest="date_to", type=parse_date)
    bulk_parser.add_argument("--draft", action="store_true", help="Sync everything as draft")

    retry_parser = subparsers.add_parser("retry", help="Retry failed syncs")
    retry_parser.add_argument("--watch", action="store_true", help="Keep running on an interval")

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile a period")
    reconcile_parser.add_argument("--from", dest="date_from", type=parse_date, required=True)
    reconcile_parser.add_argument("--to", dest="date_to", type=parse_date, required=True)
    reconcile_parser.add_argument("--json", action="store_true", help="Print the full report as JSON")

    subparsers.add_parser("sweep", help="Fail stale reports and prune old ones")

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("record_id", nargs="?")

    subparsers.add_parser("stats", help="Show statistics")

    args = parser.parse_args(argv)

    if args.command is None:
        print_banner()
        print(f"{BOLD}Quick Start:{RESET}")
        print()
        print("  1. Configure and connect:")
        print(f"     {BLUE}books-sync setup{RESET}")
        print()
        print("  2. Export your orders and point at them:")
        print(f"     {BLUE}export {ORDERS_ENV}=orders.json{RESET}")
        print()
        print("  3. Sync an order:")
        print(f"     {BLUE}books-sync sync 1042{RESET}")
        print()
        parser.print_help()
        return 0

    if args.command != "setup":
        try:
            settings = load_settings(args.config)
        except SyncError as e:
            print_error(str(e))
            return 1
        configure_logging(settings.log_level, json_output=settings.log_json)
    else:
        configure_logging("WARNING")

    commands = {
        "setup": cmd_setup,
        "test": cmd_test,
        "sync": cmd_sync,
        "pay": cmd_pay,
        "refund": cmd_refund,
        "bulk": cmd_bulk,
        "retry": cmd_retry,
        "reconcile": cmd_reconcile,
        "sweep": cmd_sweep,
        "status": cmd_status,
        "stats": cmd_stats,
    }

    try:
        return commands[args.command](args)
    except SyncError as e:
        print_error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
