"""Billing API endpoints — image quota usage, subscriptions and plan lookup."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.api.deps import get_current_active_user, get_db, get_plan_catalog, get_usage_service
from realstaging.billing.errors import (
    ConfigurationError,
    InvalidInputError,
    NotFoundError,
    TransientStoreError,
)
from realstaging.billing.plans import PlanCatalog
from realstaging.models.user import User
from realstaging.schemas.billing import (
    CanCreateImageResponse,
    PlanResponse,
    PlansListResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    UsageResponse,
)
from realstaging.services.subscription_service import has_active_subscription, list_user_subscriptions
from realstaging.services.usage_service import PlanInfo, UsageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _usage_unavailable(e: Exception, user: User) -> HTTPException:
    # Details stay in the logs; callers only learn that usage is unavailable
    logger.error("Usage lookup failed for user %s: %s", user.id, e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Unable to determine usage",
    )


def _plan_response(plan: PlanInfo) -> PlanResponse:
    return PlanResponse(
        code=plan.code,
        name=plan.name,
        price_id=plan.price_id,
        monthly_limit=plan.monthly_limit,
        source=plan.source,
    )


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    current_user: User = Depends(get_current_active_user),
    service: UsageService = Depends(get_usage_service),
) -> UsageResponse:
    """Image usage and quota for the current billing period."""
    try:
        snapshot = await service.get_usage(current_user.id)
    except (ConfigurationError, TransientStoreError) as e:
        raise _usage_unavailable(e, current_user) from e

    return UsageResponse(
        plan_code=snapshot.plan_code,
        used=snapshot.used,
        limit=snapshot.limit,
        remaining=snapshot.remaining,
        period_start=snapshot.period_start,
        period_end=snapshot.period_end,
        has_subscription=snapshot.has_subscription,
        can_create_image=snapshot.can_create_image,
    )


@router.get("/can-create-image", response_model=CanCreateImageResponse)
async def can_create_image(
    current_user: User = Depends(get_current_active_user),
    service: UsageService = Depends(get_usage_service),
) -> CanCreateImageResponse:
    """Quota check before starting an image job."""
    try:
        allowed = await service.can_create_image(current_user.id)
    except (ConfigurationError, TransientStoreError) as e:
        raise _usage_unavailable(e, current_user) from e
    return CanCreateImageResponse(allowed=allowed)


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    limit: int = Query(20, ge=1, le=100, description="Pagination limit"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionListResponse:
    """The current user's subscriptions in any status, newest first."""
    try:
        subscriptions, total = await list_user_subscriptions(db, current_user.id, limit=limit, offset=offset)
        active = await has_active_subscription(db, current_user.id)
    except TransientStoreError as e:
        logger.error("Subscription listing failed for user %s: %s", current_user.id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to load subscriptions",
        ) from e
    return SubscriptionListResponse(
        items=[SubscriptionResponse.model_validate(sub) for sub in subscriptions],
        total=total,
        limit=limit,
        offset=offset,
        has_active_subscription=active,
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(
    catalog: PlanCatalog = Depends(get_plan_catalog),
    service: UsageService = Depends(get_usage_service),
) -> PlansListResponse:
    """List plans with a configured Stripe price (public — no auth required)."""
    plans = []
    for plan in catalog.all_plans():
        if not plan.price_id:
            continue
        try:
            plans.append(_plan_response(await service.get_plan_by_code(plan.code)))
        except TransientStoreError as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to load plans",
            ) from e
    return PlansListResponse(plans=plans)


@router.get("/plans/{code}", response_model=PlanResponse)
async def get_plan(
    code: str,
    service: UsageService = Depends(get_usage_service),
) -> PlanResponse:
    """Look up one plan by code."""
    try:
        plan = await service.get_plan_by_code(code)
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (ConfigurationError, TransientStoreError) as e:
        logger.error("Plan lookup for %r failed: %s", code, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Plan is not available",
        ) from e
    return _plan_response(plan)
