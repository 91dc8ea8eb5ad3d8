"""
Resynchronize local subscription state from Stripe.

Stripe is the source of truth: subscription rows, profile status and tier are
overwritten from Stripe's records. Use after missed webhooks or manual Stripe edits.

Usage (from backend/):
  python -m scripts.fix_subscription cus_ABC123              # one customer
  python -m scripts.fix_subscription cus_ABC123 --dry-run    # show writes, change nothing
  python -m scripts.fix_subscription --all [--dry-run]       # every Stripe customer

Exit code 0 when every customer reconciled (or was skipped), 1 if any failed.
"""
import asyncio
import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def format_result(result: Dict[str, Any], dry_run: bool) -> List[str]:
    """Human-readable lines for one customer's reconciliation result."""
    customer_id = result.get("customer_id")
    status = result.get("status")
    if status == "error":
        return [f"[ERROR]   {customer_id}: {result.get('error')}"]
    if status == "skipped":
        return [f"[SKIPPED] {customer_id}: {result.get('reason')}"]

    lines = [f"[OK]      {customer_id} -> account {result.get('account_id')}"]
    for sub in result.get("subscriptions", []):
        lines.append(
            f"          subscription {sub['subscription_id']} status={sub['status']} "
            f"price={sub['price_id']} plan={sub['plan_name']} ({sub['resolution']})"
        )
    prefix = "WOULD " if dry_run else ""
    for mutation in result.get("mutations", []):
        changes = ", ".join(
            f"{field}: {change['from']!r} -> {change['to']!r}"
            for field, change in mutation["changes"].items()
        )
        lines.append(f"          {prefix}{mutation['action'].upper()} {mutation['collection']}[{mutation['key']}] {changes}")
    if not result.get("mutations"):
        lines.append("          already in sync")
    ledger = result.get("ledger")
    if ledger and not ledger.get("consistent"):
        lines.append(
            f"          LEDGER MISMATCH balance={ledger['balance']} ledger_sum={ledger['ledger_sum']}"
        )
    return lines


def print_summary(summary: Dict[str, Any]) -> None:
    dry_run = summary.get("dry_run")
    if dry_run:
        print("=== DRY RUN - no changes written ===")
    for result in summary["results"]:
        for line in format_result(result, dry_run):
            print(line)
    print("")
    print("Summary:")
    print(f"  Total:     {summary['total']}")
    print(f"  Processed: {summary['processed']}")
    print(f"  Errors:    {summary['errors']}")
    print(f"  Skipped:   {summary['skipped']}")


async def run(customer_id: Optional[str] = None, all_customers: bool = False, dry_run: bool = False) -> Dict[str, Any]:
    from services.subscription_sync_service import subscription_sync_service

    if all_customers:
        return await subscription_sync_service.reconcile_all(dry_run=dry_run)
    return await subscription_sync_service.reconcile_customers([customer_id], dry_run=dry_run)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resync subscription state from Stripe")
    parser.add_argument("customer_id", nargs="?", help="Stripe customer id (cus_...)")
    parser.add_argument("-a", "--all", dest="all_customers", action="store_true", help="Reconcile every Stripe customer")
    parser.add_argument("-d", "--dry-run", action="store_true", help="Report the writes without applying them")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if bool(args.customer_id) == args.all_customers:
        parser.error("provide a customer_id or --all (not both)")

    async def _():
        await database.connect()
        try:
            return await run(
                customer_id=args.customer_id,
                all_customers=args.all_customers,
                dry_run=args.dry_run,
            )
        finally:
            await database.close()

    try:
        summary = asyncio.run(_())
    except Exception as e:
        logger.error(f"Reconciliation aborted: {e}")
        return 1

    print_summary(summary)
    return 0 if summary["errors"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
