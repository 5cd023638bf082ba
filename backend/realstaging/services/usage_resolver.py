"""Usage period resolver — which plan a user is on and which window to count."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.billing.errors import ConfigurationError
from realstaging.billing.periods import calendar_month_bounds, is_valid_period, utcnow
from realstaging.billing.plans import PlanCatalog
from realstaging.database import store_errors
from realstaging.models.plan import Plan
from realstaging.models.subscription import Subscription
from realstaging.services.plan_assignment_service import get_plan_assignment
from realstaging.services.subscription_service import get_entitling_subscription

logger = logging.getLogger(__name__)


class PlanSource(str, Enum):
    ASSIGNMENT = "assignment"
    SUBSCRIPTION = "subscription"
    FREE_FALLBACK = "free_fallback"


@dataclass(frozen=True)
class ResolvedPlan:
    code: str
    price_id: str
    monthly_limit: int | None  # None = unlimited
    has_entitling_subscription: bool
    source: PlanSource


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime
    end: datetime
    # False when we fell back to the calendar month (no usable subscription period)
    authoritative: bool


class UsagePeriodResolver:
    """Resolves a user's effective plan and current billing period.

    Plan resolution order, first match wins:

    1. an explicit plan assignment,
    2. the most recent entitling subscription whose price ID is in the catalog,
    3. the catalog's free plan (fails closed if its price ID is unset).
    """

    def __init__(
        self,
        db: AsyncSession,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.clock = clock

    async def resolve(self, user_id: uuid.UUID) -> tuple[ResolvedPlan, BillingPeriod]:
        """Resolve plan and period from a single subscription lookup."""
        subscription = await get_entitling_subscription(self.db, user_id)
        plan = await self._resolve_plan(user_id, subscription)
        period = self._resolve_period(user_id, subscription)
        return plan, period

    async def resolve_plan(self, user_id: uuid.UUID) -> ResolvedPlan:
        subscription = await get_entitling_subscription(self.db, user_id)
        return await self._resolve_plan(user_id, subscription)

    async def resolve_billing_period(self, user_id: uuid.UUID) -> BillingPeriod:
        subscription = await get_entitling_subscription(self.db, user_id)
        return self._resolve_period(user_id, subscription)

    async def _resolve_plan(
        self, user_id: uuid.UUID, subscription: Subscription | None
    ) -> ResolvedPlan:
        assignment = await get_plan_assignment(self.db, user_id)
        if assignment is not None:
            return await self._plan_for_code(assignment.plan_code)

        if subscription is not None:
            plan = self.catalog.find_by_price_id(subscription.price_id)
            if plan is not None:
                return ResolvedPlan(
                    code=plan.code,
                    price_id=plan.price_id,
                    monthly_limit=plan.monthly_limit,
                    has_entitling_subscription=True,
                    source=PlanSource.SUBSCRIPTION,
                )
            logger.warning(
                "Subscription %s for user %s has price ID %s not in the plan catalog; "
                "falling back to the free plan",
                subscription.stripe_subscription_id,
                user_id,
                subscription.price_id,
            )

        free = self.catalog.free_plan()
        return ResolvedPlan(
            code=free.code,
            price_id=free.price_id,
            monthly_limit=free.monthly_limit,
            has_entitling_subscription=False,
            source=PlanSource.FREE_FALLBACK,
        )

    async def _plan_for_code(self, code: str) -> ResolvedPlan:
        """Resolve an assigned plan code: persisted row first, then catalog."""
        with store_errors("get plan"):
            row = await self.db.get(Plan, code)
        if row is not None:
            price_id, monthly_limit = row.price_id, row.monthly_limit
        else:
            plan = self.catalog.get(code)
            if plan is None or not plan.price_id:
                raise ConfigurationError(f"assigned plan {code} is neither persisted nor configured")
            price_id, monthly_limit = plan.price_id, plan.monthly_limit
        return ResolvedPlan(
            code=code,
            price_id=price_id,
            monthly_limit=monthly_limit,
            has_entitling_subscription=True,
            source=PlanSource.ASSIGNMENT,
        )

    def _resolve_period(self, user_id: uuid.UUID, subscription: Subscription | None) -> BillingPeriod:
        if subscription is not None and is_valid_period(
            subscription.current_period_start, subscription.current_period_end
        ):
            logger.debug(
                "Billing period for user %s from subscription %s",
                user_id,
                subscription.stripe_subscription_id,
            )
            return BillingPeriod(
                start=subscription.current_period_start,
                end=subscription.current_period_end,
                authoritative=True,
            )

        start, end = calendar_month_bounds(self.clock())
        logger.warning(
            "billing_period_fallback: user %s has no entitling subscription with a valid period "
            "(subscription=%s); counting calendar month %s..%s",
            user_id,
            subscription.stripe_subscription_id if subscription else None,
            start.isoformat(),
            end.isoformat(),
        )
        return BillingPeriod(start=start, end=end, authoritative=False)
