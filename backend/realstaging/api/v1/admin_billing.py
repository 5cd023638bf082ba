"""Admin billing endpoints — plan sync, drift checks, plan grants, ledger pruning."""

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.api.deps import get_current_admin_user, get_db, get_plan_catalog
from realstaging.billing.errors import (
    CatalogDriftError,
    ConfigurationError,
    InvalidInputError,
    NotFoundError,
    TransientStoreError,
)
from realstaging.billing.plans import PlanCatalog
from realstaging.config import settings
from realstaging.models.user import User
from realstaging.schemas.billing import (
    PlanAssignmentRequest,
    PlanAssignmentResponse,
    PriceIdMismatch,
    PruneEventsRequest,
    PruneEventsResponse,
    SyncPlansResponse,
    ValidatePriceIdsResponse,
)
from realstaging.services.event_ledger import prune_processed_events
from realstaging.services.plan_assignment_service import assign_plan, revoke_plan_assignment
from realstaging.services.plan_reconciler import PlanReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/billing", tags=["admin-billing"])


def _store_unavailable(e: TransientStoreError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/sync-plans", response_model=SyncPlansResponse)
async def sync_plans(
    db: AsyncSession = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    admin: User = Depends(get_current_admin_user),
) -> SyncPlansResponse:
    """Upsert the plan catalog into the plans table."""
    admin_email = admin.email
    try:
        result = await PlanReconciler(db, catalog).sync_plans()
        await db.commit()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except TransientStoreError as e:
        raise _store_unavailable(e) from e

    logger.info("Plan sync requested by %s: %d writes", admin_email, result.writes)
    return SyncPlansResponse(
        created=result.created,
        updated=result.updated,
        unchanged=result.unchanged,
        orphaned=result.orphaned,
    )


@router.post("/validate-price-ids", response_model=ValidatePriceIdsResponse)
async def validate_price_ids(
    db: AsyncSession = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    _admin: User = Depends(get_current_admin_user),
) -> ValidatePriceIdsResponse:
    """Report entitling subscriptions whose price ID is not in the catalog."""
    try:
        await PlanReconciler(db, catalog).validate_price_ids()
    except CatalogDriftError as e:
        return ValidatePriceIdsResponse(
            valid=False,
            mismatches=[
                PriceIdMismatch(stripe_subscription_id=sub_id, price_id=price_id)
                for sub_id, price_id in e.mismatches
            ],
        )
    except TransientStoreError as e:
        raise _store_unavailable(e) from e
    return ValidatePriceIdsResponse(valid=True, mismatches=[])


@router.put("/users/{user_id}/plan", response_model=PlanAssignmentResponse)
async def put_plan_assignment(
    user_id: uuid.UUID,
    body: PlanAssignmentRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin_user),
) -> PlanAssignmentResponse:
    """Grant a plan to a user, replacing any previous grant."""
    try:
        assignment = await assign_plan(db, user_id, body.plan_code, reason=body.reason)
        await db.commit()
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except TransientStoreError as e:
        raise _store_unavailable(e) from e

    logger.info("Admin %s assigned plan %s to user %s", admin.email, body.plan_code, user_id)
    return PlanAssignmentResponse(
        user_id=assignment.user_id,
        plan_code=assignment.plan_code,
        reason=assignment.reason,
    )


@router.delete("/users/{user_id}/plan", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan_assignment(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin_user),
) -> Response:
    """Remove a user's plan grant so their subscriptions apply again."""
    try:
        revoked = await revoke_plan_assignment(db, user_id)
        await db.commit()
    except TransientStoreError as e:
        raise _store_unavailable(e) from e
    if not revoked:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No plan assignment for user")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/prune-events", response_model=PruneEventsResponse)
async def prune_events(
    body: PruneEventsRequest | None = None,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin_user),
) -> PruneEventsResponse:
    """Delete processed-event ledger rows older than the retention window."""
    hours = (body.older_than_hours if body else None) or settings.processed_event_retention_hours
    try:
        deleted = await prune_processed_events(db, timedelta(hours=hours))
        await db.commit()
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except TransientStoreError as e:
        raise _store_unavailable(e) from e
    return PruneEventsResponse(deleted=deleted, older_than_hours=hours)
