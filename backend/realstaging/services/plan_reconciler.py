"""Plan reconciler — keeps the plans table in sync with the plan catalog."""

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from realstaging.billing.errors import CatalogDriftError
from realstaging.billing.plans import PlanCatalog
from realstaging.database import store_errors, upsert
from realstaging.models.plan import Plan
from realstaging.services.subscription_service import list_all_entitling_subscriptions

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync run, by plan code."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.updated)


class PlanReconciler:
    """One-directional catalog -> plans table reconciliation.

    The catalog is authoritative. Persisted plans that are no longer in the
    catalog are reported, never deleted, because assignments may still
    reference them.
    """

    def __init__(self, db: AsyncSession, catalog: PlanCatalog) -> None:
        self.db = db
        self.catalog = catalog

    async def sync_plans(self) -> SyncResult:
        """Upsert every catalog plan by code, writing only rows that differ."""
        self.catalog.validate()
        result = SyncResult()

        with store_errors("load plans"):
            rows = await self.db.execute(select(Plan))
            persisted = {plan.code: plan for plan in rows.scalars().all()}

        for plan in self.catalog.all_plans():
            existing = persisted.get(plan.code)
            if existing is None:
                result.created.append(plan.code)
            elif existing.price_id != plan.price_id or existing.monthly_limit != plan.monthly_limit:
                result.updated.append(plan.code)
                logger.info(
                    "Plan %s changed: price_id %s -> %s, monthly_limit %s -> %s",
                    plan.code,
                    existing.price_id,
                    plan.price_id,
                    existing.monthly_limit,
                    plan.monthly_limit,
                )
            else:
                result.unchanged.append(plan.code)
                continue

            # A concurrent sync may have inserted the row since we looked
            stmt = (
                upsert(self.db, Plan)
                .values(code=plan.code, price_id=plan.price_id, monthly_limit=plan.monthly_limit)
                .on_conflict_do_update(
                    index_elements=[Plan.code],
                    set_={
                        "price_id": plan.price_id,
                        "monthly_limit": plan.monthly_limit,
                        "updated_at": func.now(),
                    },
                )
            )
            with store_errors(f"upsert plan {plan.code}"):
                await self.db.execute(stmt)

        catalog_codes = {plan.code for plan in self.catalog.all_plans()}
        result.orphaned = sorted(set(persisted) - catalog_codes)
        if result.orphaned:
            logger.warning("Persisted plans missing from catalog (left untouched): %s", result.orphaned)

        # Drop stale identity-map copies of rows rewritten through Core
        for code in result.updated:
            self.db.expire(persisted[code])
        logger.info(
            "Plan sync finished: created=%s updated=%s unchanged=%s",
            result.created,
            result.updated,
            result.unchanged,
        )
        return result

    async def validate_price_ids(self) -> None:
        """Check every entitling subscription's price ID against the catalog.

        Detection only: a mismatch is a deployment defect that a human must
        reconcile, so nothing is remapped.

        Raises:
            CatalogDriftError: One or more subscriptions reference unknown price IDs.
        """
        known = self.catalog.price_ids()
        mismatches = [
            (sub.stripe_subscription_id, sub.price_id)
            for sub in await list_all_entitling_subscriptions(self.db)
            if sub.price_id not in known
        ]
        if mismatches:
            logger.error("Catalog drift: %d entitling subscriptions with unknown price IDs", len(mismatches))
            raise CatalogDriftError(mismatches)
        logger.info("Price ID validation passed")


async def reconcile_plans(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    validate: bool = True,
) -> SyncResult:
    """Sync plans in their own transaction, then optionally validate price IDs.

    Safe to call on every startup and on a schedule. Drift found by
    validation is logged rather than raised so a health check never blocks
    startup.
    """
    async with session_factory() as db:
        with store_errors("commit plan sync"):
            async with db.begin():
                result = await PlanReconciler(db, catalog).sync_plans()

        if validate:
            try:
                await PlanReconciler(db, catalog).validate_price_ids()
            except CatalogDriftError as e:
                logger.error("Price ID validation failed: %s", e)
    return result
