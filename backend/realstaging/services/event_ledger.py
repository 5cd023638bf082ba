"""Processed-event ledger — idempotency boundary for Stripe webhooks."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from realstaging.billing.errors import InvalidInputError
from realstaging.billing.periods import utcnow
from realstaging.config import MIN_EVENT_RETENTION_HOURS
from realstaging.database import store_errors, upsert
from realstaging.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)

MIN_RETENTION = timedelta(hours=MIN_EVENT_RETENTION_HOURS)


async def has_processed(db: AsyncSession, event_id: str) -> bool:
    """True if the event ID is already in the ledger."""
    with store_errors("check processed event"):
        result = await db.execute(
            select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None


async def record_event(db: AsyncSession, event_id: str, event_type: str) -> bool:
    """Insert the event into the ledger.

    Returns False when another transaction already recorded the same ID,
    which makes the caller's delivery a duplicate.
    """
    stmt = (
        upsert(db, ProcessedEvent)
        .values(event_id=event_id, event_type=event_type)
        .on_conflict_do_nothing(index_elements=[ProcessedEvent.event_id])
        .returning(ProcessedEvent.event_id)
    )
    with store_errors("record processed event"):
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None


async def prune_processed_events(
    db: AsyncSession, older_than: timedelta, now: datetime | None = None
) -> int:
    """Delete ledger rows processed before ``now - older_than``.

    Raises:
        InvalidInputError: ``older_than`` is shorter than the Stripe retry
            window, which would let a redelivered event apply twice.
    """
    if older_than < MIN_RETENTION:
        raise InvalidInputError(
            f"retention must be at least {MIN_EVENT_RETENTION_HOURS} hours, got {older_than}"
        )
    cutoff = (now or utcnow()) - older_than
    with store_errors("prune processed events"):
        result = await db.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
    deleted = result.rowcount or 0
    logger.info("Pruned %d processed events older than %s", deleted, cutoff.isoformat())
    return deleted
