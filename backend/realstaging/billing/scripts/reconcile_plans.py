"""Sync the plan catalog into the database and check for price ID drift.

The same routine runs on application startup; this entry point is for
operators after changing STRIPE_*_PRICE_ID or PLAN_*_MONTHLY_LIMIT:

    python -m realstaging.billing.scripts.reconcile_plans --validate
    python -m realstaging.billing.scripts.reconcile_plans --prune-hours 720

Exits non-zero on configuration errors or detected drift.
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from realstaging.billing.errors import BillingError, CatalogDriftError
from realstaging.billing.plans import PlanCatalog
from realstaging.config import settings
from realstaging.database import async_session_factory, engine
from realstaging.services.event_ledger import prune_processed_events
from realstaging.services.plan_reconciler import PlanReconciler

logger = logging.getLogger("realstaging.reconcile_plans")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--validate",
        action="store_true",
        help="check entitling subscriptions for price IDs missing from the catalog",
    )
    parser.add_argument(
        "--prune-hours",
        type=int,
        default=None,
        metavar="HOURS",
        help="also delete processed webhook events older than HOURS (minimum 72)",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    catalog = PlanCatalog.from_settings(settings)
    exit_code = 0

    async with async_session_factory() as db:
        async with db.begin():
            result = await PlanReconciler(db, catalog).sync_plans()
        print(f"created:   {', '.join(result.created) or '-'}")
        print(f"updated:   {', '.join(result.updated) or '-'}")
        print(f"unchanged: {', '.join(result.unchanged) or '-'}")
        if result.orphaned:
            print(f"orphaned (not in catalog): {', '.join(result.orphaned)}")

        if args.validate:
            try:
                await PlanReconciler(db, catalog).validate_price_ids()
                print("price IDs: OK")
            except CatalogDriftError as e:
                for sub_id, price_id in e.mismatches:
                    print(f"DRIFT: active subscription {sub_id} has unknown price_id: {price_id}")
                exit_code = 2

    if args.prune_hours is not None:
        async with async_session_factory() as db, db.begin():
            deleted = await prune_processed_events(db, timedelta(hours=args.prune_hours))
        print(f"pruned {deleted} processed events")

    return exit_code


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return await run(args)
    except BillingError as e:
        logger.error("Reconciliation failed: %s", e)
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(main()))
