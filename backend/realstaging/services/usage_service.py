"""Usage service — the entry point request handlers use for quota checks.

``can_create_image`` is a check, not a reservation: two concurrent requests
for the same user can both pass before either image row exists, so a user
may exceed their quota by the number of in-flight requests.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.billing.errors import ConfigurationError, InvalidInputError, NotFoundError
from realstaging.billing.periods import utcnow
from realstaging.billing.plans import PlanCatalog, validate_plan_code
from realstaging.database import store_errors
from realstaging.models.image import Image
from realstaging.models.plan import Plan
from realstaging.services.usage_resolver import UsagePeriodResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    """A user's usage in the current billing period."""

    used: int
    limit: int | None  # None = unlimited
    plan_code: str
    period_start: datetime
    period_end: datetime
    has_subscription: bool
    remaining: int | None  # None = unlimited

    @property
    def can_create_image(self) -> bool:
        return self.limit is None or self.used < self.limit


@dataclass(frozen=True)
class PlanInfo:
    code: str
    name: str
    price_id: str
    monthly_limit: int | None
    source: str  # "database" or "catalog"


def parse_user_id(user_id: str | uuid.UUID) -> uuid.UUID:
    """Validate a user identifier.

    Raises:
        InvalidInputError: Empty or not a UUID.
    """
    if isinstance(user_id, uuid.UUID):
        return user_id
    if not user_id:
        raise InvalidInputError("userID cannot be empty")
    try:
        return uuid.UUID(user_id)
    except (ValueError, TypeError, AttributeError):
        raise InvalidInputError("invalid user ID format") from None


async def count_images_in_period(
    db: AsyncSession, user_id: uuid.UUID, start: datetime, end: datetime
) -> int:
    """Count images the user created in ``[start, end)``."""
    with store_errors("count images"):
        result = await db.execute(
            select(func.count())
            .select_from(Image)
            .where(
                Image.user_id == user_id,
                Image.created_at >= start,
                Image.created_at < end,
            )
        )
        return result.scalar_one()


class UsageService:
    """Composes plan/period resolution with usage counting."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.resolver = UsagePeriodResolver(db, catalog, clock=clock)

    async def get_usage(self, user_id: str | uuid.UUID) -> UsageSnapshot:
        uid = parse_user_id(user_id)
        plan, period = await self.resolver.resolve(uid)
        used = await count_images_in_period(self.db, uid, period.start, period.end)

        remaining = None if plan.monthly_limit is None else max(0, plan.monthly_limit - used)
        return UsageSnapshot(
            used=used,
            limit=plan.monthly_limit,
            plan_code=plan.code,
            period_start=period.start,
            period_end=period.end,
            has_subscription=plan.has_entitling_subscription,
            remaining=remaining,
        )

    async def can_create_image(self, user_id: str | uuid.UUID) -> bool:
        """Check the user's quota against a freshly computed snapshot."""
        snapshot = await self.get_usage(user_id)
        if not snapshot.can_create_image:
            logger.info(
                "User %s at image limit (%d/%s) on plan %s",
                user_id,
                snapshot.used,
                snapshot.limit,
                snapshot.plan_code,
            )
        return snapshot.can_create_image

    async def get_plan_by_code(self, code: str) -> PlanInfo:
        """Look up a plan by code: persisted row first, then the catalog.

        Raises:
            InvalidInputError: Empty or malformed code.
            NotFoundError: Code is neither persisted nor in the catalog.
            ConfigurationError: Catalog plan has no price ID configured.
        """
        validate_plan_code(code)
        with store_errors("get plan"):
            row = await self.db.get(Plan, code)
        plan = self.catalog.get(code)
        if row is not None:
            return PlanInfo(
                code=row.code,
                name=plan.display_name if plan is not None else row.code.title(),
                price_id=row.price_id,
                monthly_limit=row.monthly_limit,
                source="database",
            )

        if plan is None:
            raise NotFoundError(f"unknown plan code: {code}")
        if not plan.price_id:
            raise ConfigurationError(f"{code} plan price ID not configured")
        return PlanInfo(
            code=plan.code,
            name=plan.display_name,
            price_id=plan.price_id,
            monthly_limit=plan.monthly_limit,
            source="catalog",
        )
