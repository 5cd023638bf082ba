"""Subscription service — reads and upserts of the local subscription mirror."""

import logging
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.database import store_errors, upsert
from realstaging.models.subscription import ENTITLING_STATUSES, Subscription
from realstaging.models.user import User

logger = logging.getLogger(__name__)

# Columns a Stripe event may overwrite on an existing row
UPSERTABLE_FIELDS = frozenset(
    {
        "stripe_customer_id",
        "status",
        "price_id",
        "current_period_start",
        "current_period_end",
        "cancel_at",
        "canceled_at",
        "cancel_at_period_end",
        "created_at",
        "last_event_at",
    }
)


def most_recent_subscription(subscriptions: Iterable[Subscription]) -> Subscription | None:
    """Pick the most recently created subscription.

    A subscription with no ``created_at`` counts as the oldest, so it is never
    chosen over one that has a timestamp. Among equal timestamps the first one
    seen wins.
    """
    selected: Subscription | None = None
    for sub in subscriptions:
        if selected is None:
            selected = sub
        elif sub.created_at is not None and (
            selected.created_at is None or sub.created_at > selected.created_at
        ):
            selected = sub
    return selected


async def list_entitling_subscriptions(db: AsyncSession, user_id: uuid.UUID) -> list[Subscription]:
    """List the user's active/trialing subscriptions, newest first."""
    with store_errors("list entitling subscriptions"):
        result = await db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(sorted(ENTITLING_STATUSES)),
            )
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())


async def get_entitling_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Return the subscription that drives the user's plan and billing period."""
    return most_recent_subscription(await list_entitling_subscriptions(db, user_id))


async def list_user_subscriptions(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 20, offset: int = 0
) -> tuple[list[Subscription], int]:
    """Return one page of the user's subscriptions in any status, newest first, and the total."""
    with store_errors("list user subscriptions"):
        total_result = await db.execute(
            select(func.count()).select_from(Subscription).where(Subscription.user_id == user_id)
        )
        result = await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc().nulls_last(), Subscription.stripe_subscription_id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total_result.scalar_one()


async def has_active_subscription(db: AsyncSession, user_id: uuid.UUID) -> bool:
    """Whether the user holds at least one active or trialing subscription.

    ``past_due`` does not count; there is no grace-period access.
    """
    return any(sub.is_entitling for sub in await list_entitling_subscriptions(db, user_id))


async def list_all_entitling_subscriptions(db: AsyncSession) -> list[Subscription]:
    """List every active/trialing subscription (used by price-ID validation)."""
    with store_errors("list all entitling subscriptions"):
        result = await db.execute(
            select(Subscription).where(Subscription.status.in_(sorted(ENTITLING_STATUSES)))
        )
        return list(result.scalars().all())


async def get_subscription_by_stripe_subscription(
    db: AsyncSession, stripe_subscription_id: str, for_update: bool = False
) -> Subscription | None:
    """Look up subscription by Stripe subscription ID (used by webhooks)."""
    stmt = select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    if for_update:
        stmt = stmt.with_for_update()
    with store_errors("get subscription"):
        result = await db.execute(stmt)
        return result.scalar_one_or_none()


async def upsert_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    stripe_subscription_id: str,
    fields: Mapping[str, Any],
) -> Subscription:
    """Insert or update a subscription keyed by its Stripe ID.

    Only the given fields are written on conflict; ``user_id`` is never
    reassigned once a row exists.
    """
    unknown = set(fields) - UPSERTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot upsert subscription fields: {sorted(unknown)}")

    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "stripe_subscription_id": stripe_subscription_id,
        **fields,
    }
    values.setdefault("status", "incomplete")

    insert_stmt = upsert(db, Subscription).values(**values)
    stmt = insert_stmt.on_conflict_do_update(
        index_elements=[Subscription.stripe_subscription_id],
        set_={**fields, "updated_at": func.now()},
    ).returning(Subscription.id)

    with store_errors("upsert subscription"):
        result = await db.execute(stmt)
        subscription_id = result.scalar_one()
        subscription = await db.get(Subscription, subscription_id, populate_existing=True)

    logger.debug(
        "Upserted subscription %s (stripe %s): %s",
        subscription_id,
        stripe_subscription_id,
        sorted(fields),
    )
    return subscription


async def update_subscription_fields(
    db: AsyncSession, subscription: Subscription, fields: Mapping[str, Any]
) -> Subscription:
    """Overwrite selected fields on an already-loaded subscription."""
    for name, value in fields.items():
        if name not in UPSERTABLE_FIELDS:
            raise ValueError(f"Cannot update subscription field: {name}")
        setattr(subscription, name, value)
    with store_errors("update subscription"):
        await db.flush()
    return subscription


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    with store_errors("get user"):
        return await db.get(User, user_id)


async def get_user_by_stripe_customer(db: AsyncSession, stripe_customer_id: str) -> User | None:
    """Look up the user linked to a Stripe customer ID."""
    with store_errors("get user by stripe customer"):
        result = await db.execute(select(User).where(User.stripe_customer_id == stripe_customer_id))
        return result.scalar_one_or_none()


async def link_stripe_customer(db: AsyncSession, user: User, stripe_customer_id: str) -> None:
    """Record the Stripe customer ID on the user if it is not set yet."""
    if user.stripe_customer_id == stripe_customer_id:
        return
    if user.stripe_customer_id is not None:
        logger.warning(
            "User %s already linked to Stripe customer %s, not relinking to %s",
            user.id,
            user.stripe_customer_id,
            stripe_customer_id,
        )
        return
    user.stripe_customer_id = stripe_customer_id
    with store_errors("link stripe customer"):
        await db.flush()
    logger.info("Linked Stripe customer %s to user %s", stripe_customer_id, user.id)

