"""
Credit Rail CLI

Commands:
  serve          - Run the API server
  balance        - Show a tenant's balance and recent transactions
  run-cycle      - Bill due subscriptions
  sweep          - Run the auto-recharge sweep
  seed-packages  - Load the credit package catalogue
"""

import argparse
import json
import os
import sys

# Default catalogue: (id, name, credits, price in cents)
DEFAULT_PACKAGES = [
    ("pkg_1000", "Starter", 1000, 1000),
    ("pkg_2500", "Growth", 2500, 2250),
    ("pkg_5000", "Pro", 5000, 4000),
    ("pkg_10000", "Business", 10000, 7500),
]


def _state():
    from api.server import AppState
    from core.config import Settings

    return AppState(Settings.from_env())


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Credit Rail on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_balance(args):
    """Show a tenant's balance."""
    state = _state()
    balance = state.ledger.get_balance(args.tenant)
    print(f"Tenant: {args.tenant}")
    print(f"Balance: {balance} credits")
    transactions = state.ledger.list_transactions(args.tenant, limit=args.limit)
    if transactions:
        print("=" * 60)
        for txn in transactions:
            print(f"  {txn.created_at:%Y-%m-%d %H:%M}  {txn.amount:>8}  {txn.type.value:<20} {txn.description}")


def cmd_run_cycle(args):
    """Bill due subscriptions."""
    from core.errors import SchedulerPartialFailure

    state = _state()
    report = state.scheduler.run_cycle()
    print(f"Billed: {len(report.billed)}")
    print(f"Suspended: {len(report.suspended)}")
    print(f"Skipped: {len(report.skipped)}")
    print(f"Failed: {len(report.failures)}")
    for failure in report.failures:
        print(f"  {failure['subscription_id']}: {failure['error']}")

    drained = state.outbox.drain()
    print(f"Notifications sent: {drained.sent}")

    if args.strict:
        try:
            report.raise_for_failures()
        except SchedulerPartialFailure as e:
            print(f"Error: {e}")
            sys.exit(1)


def cmd_sweep(args):
    """Run the auto-recharge sweep."""
    state = _state()
    report = state.auto_recharge.sweep()
    print(f"Processed: {report.processed}")
    print(f"Recharged: {report.recharged}")
    print(f"Skipped: {report.skipped}")
    print(f"Failed: {report.failed}")
    for error in report.errors:
        print(f"  {error['tenant_id']}: {error['error']}")


def cmd_seed_packages(args):
    """Load the credit package catalogue."""
    from persistence.models import CreditPackage

    if args.file:
        with open(args.file) as f:
            entries = [
                (p["id"], p["name"], int(p["credits"]), int(p["price_cents"]))
                for p in json.load(f)
            ]
    else:
        entries = DEFAULT_PACKAGES

    state = _state()
    for package_id, name, credits, price_cents in entries:
        state.packages.upsert(CreditPackage(
            id=package_id,
            name=name,
            credits=credits,
            price_cents=price_cents,
        ))
        print(f"  {package_id}: {name} - {credits} credits for {price_cents / 100:.2f}")
    print(f"Seeded {len(entries)} package(s)")


def main():
    parser = argparse.ArgumentParser(
        description="Credit Rail - Prepaid credit ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show tenant balance")
    balance_parser.add_argument("tenant", help="Tenant ID")
    balance_parser.add_argument("--limit", type=int, default=20, help="Transactions to show")

    # run-cycle
    cycle_parser = subparsers.add_parser("run-cycle", help="Bill due subscriptions")
    cycle_parser.add_argument("--strict", action="store_true", help="Exit non-zero on any failure")

    # sweep
    subparsers.add_parser("sweep", help="Run the auto-recharge sweep")

    # seed-packages
    seed_parser = subparsers.add_parser("seed-packages", help="Load credit packages")
    seed_parser.add_argument("--file", help="JSON list of {id, name, credits, price_cents}")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "balance":
        cmd_balance(args)
    elif args.command == "run-cycle":
        cmd_run_cycle(args)
    elif args.command == "sweep":
        cmd_sweep(args)
    elif args.command == "seed-packages":
        cmd_seed_packages(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
