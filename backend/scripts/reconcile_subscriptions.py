#!/usr/bin/env python3
"""
Subscription Reconciliation Script

Pulls subscription state from Stripe and applies it locally, for one user
or for every user stuck without an entitled subscription after checkout.
Run as a cron job or manually: python -m scripts.reconcile_subscriptions

Usage:
    python -m scripts.reconcile_subscriptions --heal                 # Heal up to 50 users
    python -m scripts.reconcile_subscriptions --heal --limit 200     # Heal up to 200 users
    python -m scripts.reconcile_subscriptions --user <id>            # One user
    python -m scripts.reconcile_subscriptions --user <id> --session cs_...
"""

import asyncio
import argparse
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.infrastructure.db.database import close_db, init_db
from app.infrastructure.exceptions import BillingSyncError
from app.infrastructure.services.billing_services import build_billing_services

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def reconcile_user(user_id: str, session_handle: str = None, cancel_if_missing: bool = False) -> int:
    services = build_billing_services(settings)
    try:
        report = await services.reconciler.reconcile(user_id, session_handle, cancel_if_missing)
    except BillingSyncError as e:
        logger.error(f"Reconciliation failed for {user_id}: {e.message}")
        return 1
    finally:
        await services.projections.drain()

    print("\n=== Reconciliation Complete ===")
    print(f"User: {report.user_id}")
    print(f"Result: {report.message}")
    for sub in report.subscriptions:
        print(f"  {sub.remote_subscription_id}: {sub.status.value} ({sub.tier.value}) -> {sub.outcome.value}")
    print(f"Mismatches: {len(report.mismatches)}")
    if report.projection is not None:
        print(f"Projection: {report.projection.tier.value}")
    return 0


async def heal(limit: int) -> int:
    services = build_billing_services(settings)
    try:
        report = await services.reconciler.heal_missing(limit)
    finally:
        await services.projections.drain()

    print("\n=== Heal Complete ===")
    print(f"Checked: {report.checked}")
    print(f"Fixed: {report.fixed}")
    print(f"Failed: {report.failed}")
    for error in report.errors:
        print(f"  {error['userId']}: {error['error']}")
    return 1 if report.failed else 0


async def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile subscriptions with Stripe")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user", help="Internal user id to reconcile")
    target.add_argument(
        "--heal",
        action="store_true",
        help="Reconcile users with a completed checkout but no entitled subscription"
    )
    parser.add_argument("--session", help="Checkout session (cs_...) or subscription (sub_...) id")
    parser.add_argument(
        "--cancel-if-missing",
        action="store_true",
        help="Cancel local subscriptions Stripe no longer has"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.reconcile_batch_size,
        help=f"Maximum users to heal (default: {settings.reconcile_batch_size})"
    )
    args = parser.parse_args()

    await init_db()
    try:
        if args.heal:
            return await heal(args.limit)
        return await reconcile_user(args.user, args.session, args.cancel_if_missing)
    finally:
        await close_db()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
