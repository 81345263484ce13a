"""
Tollgate CLI

Commands:
  serve         - Run the gateway server
  init-db       - Create the database schema
  topup         - Credit a user
  balance       - Show a user's balance
  sweep         - Process queued jobs now
  stale-claims  - List jobs stuck in processing
"""

import argparse
import asyncio
import os
import sys
from decimal import Decimal, InvalidOperation


def _gateway():
    from .config import GatewayConfig
    from .gateway import MeteredGateway
    from .storage.object_store import FilesystemObjectStore

    config = GatewayConfig.from_env()
    return MeteredGateway(config, object_store=FilesystemObjectStore(config.artifact_dir))


def cmd_serve(args):
    """Run the gateway server."""
    from .api.server import run

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Tollgate on {host}:{port}")
    run(host=host, port=port, reload=args.reload, workers=args.workers)


def cmd_init_db(args):
    """Create the schema."""
    from .config import GatewayConfig
    from .persistence.database import get_database

    config = GatewayConfig.from_env()
    get_database(config.database_url)
    print(f"Database ready: {config.database_url}")


def cmd_topup(args):
    """Credit a user."""
    try:
        amount = Decimal(args.amount)
    except InvalidOperation:
        print(f"Error: invalid amount: {args.amount}")
        sys.exit(1)
    if not amount.is_finite():
        print(f"Error: invalid amount: {args.amount}")
        sys.exit(1)

    view = _gateway().top_up(args.email, amount, args.reason, {"source": "cli"})
    print(f"Credited {amount} to {view.email}")
    print(f"  Balance: {view.balance}")


def cmd_balance(args):
    """Show a user's balance."""
    view = _gateway().get_balance(args.email)
    print(f"{view.email}: {view.balance} credits" + ("  (low)" if view.low else ""))


def cmd_sweep(args):
    """Process up to --max queued jobs."""
    processed = asyncio.run(_gateway().sweeper.sweep(args.max))
    print(f"Processed {processed} job(s)")


def cmd_stale_claims(args):
    """List jobs claimed more than --older-than seconds ago and never finished."""
    jobs = _gateway().jobs.list_stale_claims(args.older_than)
    if not jobs:
        print("No stale claims")
        return
    for job in jobs:
        print(f"{job.id}  {job.type}  claimed_at={job.claimed_at}  owner={job.owner_email}")


def main(argv=None):
    from .errors import GatewayError

    parser = argparse.ArgumentParser(
        description="Tollgate - Metered text-generation gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # topup
    topup_parser = subparsers.add_parser("topup", help="Credit a user")
    topup_parser.add_argument("email", help="User email")
    topup_parser.add_argument("amount", help="Credits to add")
    topup_parser.add_argument("--reason", default="manual-topup", help="Ledger reason")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show a user's balance")
    balance_parser.add_argument("email", help="User email")

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Process queued jobs")
    sweep_parser.add_argument("--max", type=int, default=5, help="Maximum jobs to process")

    # stale-claims
    stale_parser = subparsers.add_parser("stale-claims", help="List stuck jobs")
    stale_parser.add_argument("--older-than", type=float, default=900, help="Seconds since claim")

    args = parser.parse_args(argv)

    commands = {
        "serve": cmd_serve,
        "init-db": cmd_init_db,
        "topup": cmd_topup,
        "balance": cmd_balance,
        "sweep": cmd_sweep,
        "stale-claims": cmd_stale_claims,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except GatewayError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
