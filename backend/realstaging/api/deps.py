"""Shared API dependencies — single import point for all routers.

Re-exports database session and authentication dependencies and builds the
billing collaborators so that router modules can import everything they need
from one place::

    from realstaging.api.deps import get_db, get_current_active_user, get_usage_service
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.auth.dependencies import (
    get_current_active_user,
    get_current_admin_user,
    get_current_user,
)
from realstaging.billing.plans import PlanCatalog
from realstaging.billing.stripe_client import StripeCredentials, StripeGateway
from realstaging.config import settings
from realstaging.database import get_db, get_session_factory
from realstaging.services.usage_service import UsageService


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    """Plan catalog built once from settings."""
    return PlanCatalog.from_settings(settings)


@lru_cache
def get_stripe_gateway() -> StripeGateway:
    """Stripe gateway with credentials from settings."""
    return StripeGateway(StripeCredentials.from_settings(settings))


async def get_usage_service(
    db: AsyncSession = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> UsageService:
    return UsageService(db, catalog)


__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_active_user",
    "get_current_admin_user",
    "get_plan_catalog",
    "get_stripe_gateway",
    "get_usage_service",
]
