"""Plan assignments — explicit plan grants managed by admins."""

import logging
import uuid

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.billing.errors import NotFoundError
from realstaging.billing.plans import validate_plan_code
from realstaging.database import store_errors, upsert
from realstaging.models.plan import Plan
from realstaging.models.plan_assignment import PlanAssignment
from realstaging.models.user import User

logger = logging.getLogger(__name__)


async def get_plan_assignment(db: AsyncSession, user_id: uuid.UUID) -> PlanAssignment | None:
    with store_errors("get plan assignment"):
        result = await db.execute(select(PlanAssignment).where(PlanAssignment.user_id == user_id))
        return result.scalar_one_or_none()


async def assign_plan(
    db: AsyncSession, user_id: uuid.UUID, plan_code: str, reason: str | None = None
) -> PlanAssignment:
    """Grant ``plan_code`` to the user, replacing any previous grant.

    The plan must already be persisted (run plan sync first).
    """
    validate_plan_code(plan_code)
    with store_errors("assign plan"):
        if await db.get(User, user_id) is None:
            raise NotFoundError(f"user not found: {user_id}")
        if await db.get(Plan, plan_code) is None:
            raise NotFoundError(f"unknown plan code: {plan_code}")

        stmt = (
            upsert(db, PlanAssignment)
            .values(id=uuid.uuid4(), user_id=user_id, plan_code=plan_code, reason=reason)
            .on_conflict_do_update(
                index_elements=[PlanAssignment.user_id],
                set_={"plan_code": plan_code, "reason": reason, "updated_at": func.now()},
            )
            .returning(PlanAssignment.id)
        )
        assignment_id = (await db.execute(stmt)).scalar_one()
        assignment = await db.get(PlanAssignment, assignment_id, populate_existing=True)

    logger.info("Assigned plan %s to user %s (reason=%s)", plan_code, user_id, reason)
    return assignment


async def revoke_plan_assignment(db: AsyncSession, user_id: uuid.UUID) -> bool:
    """Remove the user's plan grant. Returns False if there was none."""
    with store_errors("revoke plan assignment"):
        result = await db.execute(delete(PlanAssignment).where(PlanAssignment.user_id == user_id))
    revoked = bool(result.rowcount)
    if revoked:
        logger.info("Revoked plan assignment for user %s", user_id)
    return revoked
