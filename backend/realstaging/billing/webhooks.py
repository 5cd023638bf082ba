"""Stripe webhook event applier — idempotent subscription lifecycle updates.

Every event is applied in one transaction together with its ledger row, so a
crash can never leave an event recorded but not applied. Events are applied
in arrival order: fields present on the payload overwrite the stored ones.
Stripe gives no ordering guarantee, so a late ``created`` can overwrite an
earlier ``deleted``; set ``reject_stale_events`` to drop events older than the
last one applied to the row instead.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from realstaging.billing.errors import InvalidInputError, NotFoundError
from realstaging.billing.periods import is_valid_period, ts_to_naive
from realstaging.billing.plans import PlanCatalog
from realstaging.database import store_errors
from realstaging.models.subscription import ENTITLING_STATUSES, Subscription, SubscriptionStatus
from realstaging.services.event_ledger import has_processed, record_event
from realstaging.services.subscription_service import (
    get_subscription_by_stripe_subscription,
    get_user,
    get_user_by_stripe_customer,
    link_stripe_customer,
    update_subscription_fields,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

SubscriptionFetcher = Callable[[str], Awaitable[Mapping[str, Any]]]

# Statuses a successful invoice payment moves back to active
_RECOVERABLE_STATUSES = frozenset(
    {
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.INCOMPLETE.value,
    }
)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"


def _id_of(value: Any) -> str | None:
    """Return the ID of an expandable Stripe field (ID string or expanded object)."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def _get_first_item(stripe_sub: Mapping[str, Any]) -> Mapping[str, Any] | None:
    """Get the first subscription item, using bracket-style access to avoid
    collision with dict ``.items()``.
    """
    sub_items = stripe_sub.get("items")
    if isinstance(sub_items, Mapping) and sub_items.get("data"):
        return sub_items["data"][0]
    return None


def _get_price_id_from_subscription(stripe_sub: Mapping[str, Any]) -> str | None:
    """Extract the first price ID from a Stripe subscription's items."""
    item = _get_first_item(stripe_sub)
    if item is None:
        return None
    return _id_of(item.get("price"))


def _get_period(stripe_sub: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved
    from the subscription object to the subscription item; older payloads
    still carry them at the top level.
    """
    item = _get_first_item(stripe_sub)
    if item and item.get("current_period_start") is not None:
        return (
            ts_to_naive(item.get("current_period_start")),
            ts_to_naive(item.get("current_period_end")),
        )
    return (
        ts_to_naive(stripe_sub.get("current_period_start")),
        ts_to_naive(stripe_sub.get("current_period_end")),
    )


def _subscription_fields(stripe_sub: Mapping[str, Any]) -> dict[str, Any]:
    """Map the fields present on a Stripe subscription to local columns."""
    fields: dict[str, Any] = {}

    customer_id = _id_of(stripe_sub.get("customer"))
    if customer_id:
        fields["stripe_customer_id"] = customer_id
    if stripe_sub.get("status"):
        fields["status"] = stripe_sub["status"]

    price_id = _get_price_id_from_subscription(stripe_sub)
    if price_id:
        fields["price_id"] = price_id

    period_start, period_end = _get_period(stripe_sub)
    if period_start is not None:
        fields["current_period_start"] = period_start
    if period_end is not None:
        fields["current_period_end"] = period_end

    # Explicit nulls clear a scheduled cancellation
    for key in ("cancel_at", "canceled_at"):
        if key in stripe_sub:
            fields[key] = ts_to_naive(stripe_sub[key])
    if "cancel_at_period_end" in stripe_sub:
        fields["cancel_at_period_end"] = bool(stripe_sub["cancel_at_period_end"])

    if stripe_sub.get("created") is not None:
        fields["created_at"] = ts_to_naive(stripe_sub["created"])
    return fields


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    """Subscription ID of an invoice (top-level before basil, under ``parent`` after)."""
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def _is_recurring_line(line: Mapping[str, Any]) -> bool:
    """True for a regular subscription charge, false for prorations and one-off items.

    Proration lines cover `[change_time, period_end]` and must not move the
    billing period. Handles both the legacy `type`/`proration` fields and the
    basil `parent.subscription_item_details` shape.
    """
    parent = line.get("parent") or {}
    details = parent.get("subscription_item_details") or {}
    if line.get("proration") or details.get("proration"):
        return False
    line_type = line.get("type")
    if line_type is not None and line_type != "subscription":
        return False
    parent_type = parent.get("type")
    return parent_type is None or parent_type == "subscription_item_details"


def _invoice_period(invoice: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Billing period covered by the invoice's first recurring line with a valid period."""
    lines = invoice.get("lines") or {}
    for line in lines.get("data") or []:
        if not _is_recurring_line(line):
            continue
        period = line.get("period") or {}
        start, end = ts_to_naive(period.get("start")), ts_to_naive(period.get("end"))
        if is_valid_period(start, end):
            return start, end
    return None, None


def _metadata_user_id(obj: Mapping[str, Any]) -> uuid.UUID | None:
    raw = obj.get("client_reference_id") or (obj.get("metadata") or {}).get("user_id")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        logger.warning("Ignoring malformed user_id %r on Stripe object %s", raw, obj.get("id"))
        return None


class WebhookEventApplier:
    """Applies verified Stripe events to the subscription store.

    Handlers run inside the transaction opened by :meth:`apply`; any error
    rolls back both the subscription change and the ledger row and is
    re-raised so Stripe redelivers the event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog | None = None,
        fetch_subscription: SubscriptionFetcher | None = None,
        reject_stale_events: bool = False,
    ) -> None:
        self.session_factory = session_factory
        self.catalog = catalog
        self.fetch_subscription = fetch_subscription
        self.reject_stale_events = reject_stale_events
        self._handlers = {
            "customer.subscription.created": self._handle_subscription_event,
            "customer.subscription.updated": self._handle_subscription_event,
            "customer.subscription.deleted": self._handle_subscription_event,
            "checkout.session.completed": self._handle_checkout_session_completed,
            "invoice.payment_succeeded": self._handle_invoice_payment_succeeded,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    async def apply(self, event: Mapping[str, Any]) -> ApplyOutcome:
        """Apply one event exactly once."""
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise InvalidInputError("Stripe event is missing id or type")

        async with self.session_factory() as db:
            try:
                if await has_processed(db, event_id):
                    logger.debug("Duplicate webhook event %s (%s), skipping", event_id, event_type)
                    return ApplyOutcome.DUPLICATE

                if not await record_event(db, event_id, event_type):
                    # A concurrent delivery of the same event won the insert
                    await db.rollback()
                    logger.debug("Webhook event %s recorded concurrently, skipping", event_id)
                    return ApplyOutcome.DUPLICATE

                handler = self._handlers.get(event_type)
                if handler is None:
                    logger.debug("Unhandled webhook event type: %s (id=%s)", event_type, event_id)
                    outcome = ApplyOutcome.IGNORED
                else:
                    outcome = await handler(db, event)

                with store_errors("commit webhook event"):
                    await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info("Webhook event %s (%s): %s", event_id, event_type, outcome.value)
        return outcome

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_subscription_event(self, db: AsyncSession, event: Mapping[str, Any]) -> ApplyOutcome:
        """customer.subscription.created / updated / deleted — upsert the row."""
        stripe_sub = _event_object(event)
        fields = _subscription_fields(stripe_sub)
        if event["type"] == "customer.subscription.deleted" and "status" not in fields:
            fields["status"] = SubscriptionStatus.CANCELED.value
        return await self._apply_subscription(db, stripe_sub, fields, event)

    async def _handle_checkout_session_completed(
        self, db: AsyncSession, event: Mapping[str, Any]
    ) -> ApplyOutcome:
        """checkout.session.completed — link the customer, then sync its subscription."""
        session = _event_object(event)
        customer_id = _id_of(session.get("customer"))

        user = None
        user_id = _metadata_user_id(session)
        if user_id is not None:
            user = await get_user(db, user_id)
        if user is None and customer_id:
            user = await get_user_by_stripe_customer(db, customer_id)
        if user is None:
            logger.warning(
                "Checkout session %s (customer %s) does not map to a known user",
                session.get("id"),
                customer_id,
            )
            return ApplyOutcome.IGNORED
        if customer_id:
            await link_stripe_customer(db, user, customer_id)

        subscription = session.get("subscription")
        if not subscription:
            logger.info("Checkout session %s has no subscription (one-time?), skipping", session.get("id"))
            return ApplyOutcome.APPLIED

        if isinstance(subscription, Mapping):
            stripe_sub = subscription
        elif self.fetch_subscription is not None:
            stripe_sub = await self.fetch_subscription(subscription)
        else:
            logger.info(
                "Checkout session %s: subscription %s will sync from its own lifecycle events",
                session.get("id"),
                subscription,
            )
            return ApplyOutcome.APPLIED
        return await self._apply_subscription(db, stripe_sub, _subscription_fields(stripe_sub), event)

    async def _handle_invoice_payment_failed(self, db: AsyncSession, event: Mapping[str, Any]) -> ApplyOutcome:
        """invoice.payment_failed — mark subscription as past_due."""

        def changes(subscription: Subscription) -> dict[str, Any]:
            if subscription.status == SubscriptionStatus.CANCELED.value:
                return {}
            return {"status": SubscriptionStatus.PAST_DUE.value}

        return await self._apply_invoice(db, event, changes)

    async def _handle_invoice_payment_succeeded(
        self, db: AsyncSession, event: Mapping[str, Any]
    ) -> ApplyOutcome:
        """invoice.payment_succeeded — recover past_due subscriptions, roll the period."""
        period_start, period_end = _invoice_period(_event_object(event))

        def changes(subscription: Subscription) -> dict[str, Any]:
            fields: dict[str, Any] = {}
            if subscription.status in _RECOVERABLE_STATUSES:
                fields["status"] = SubscriptionStatus.ACTIVE.value
            if period_start is not None:
                fields["current_period_start"] = period_start
                fields["current_period_end"] = period_end
            return fields

        return await self._apply_invoice(db, event, changes)

    # ------------------------------------------------------------------
    # Shared application logic
    # ------------------------------------------------------------------

    async def _apply_subscription(
        self,
        db: AsyncSession,
        stripe_sub: Mapping[str, Any],
        fields: dict[str, Any],
        event: Mapping[str, Any],
    ) -> ApplyOutcome:
        stripe_subscription_id = stripe_sub.get("id")
        if not stripe_subscription_id:
            raise InvalidInputError(f"Event {event['id']} carries a subscription without an id")

        event_at = ts_to_naive(event.get("created"))
        existing = await get_subscription_by_stripe_subscription(db, stripe_subscription_id, for_update=True)
        if self._is_stale(existing, event_at, event):
            return ApplyOutcome.STALE

        if existing is not None:
            user_id = existing.user_id
            previous_status = existing.status
        else:
            user_id = await self._resolve_user_id(db, stripe_sub)
            previous_status = None

        if event_at is not None:
            fields["last_event_at"] = event_at
        subscription = await upsert_subscription(db, user_id, stripe_subscription_id, fields)

        self._log_transition(subscription, previous_status, event)
        self._warn_unknown_price(subscription)
        return ApplyOutcome.APPLIED

    async def _apply_invoice(
        self,
        db: AsyncSession,
        event: Mapping[str, Any],
        changes: Callable[[Subscription], dict[str, Any]],
    ) -> ApplyOutcome:
        invoice = _event_object(event)
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice %s has no subscription (one-time), skipping", invoice.get("id"))
            return ApplyOutcome.IGNORED

        subscription = await get_subscription_by_stripe_subscription(db, subscription_id, for_update=True)
        if subscription is None:
            if self.fetch_subscription is not None:
                stripe_sub = await self.fetch_subscription(subscription_id)
                return await self._apply_subscription(db, stripe_sub, _subscription_fields(stripe_sub), event)
            # Roll back so Stripe redelivers once the subscription events land
            raise NotFoundError(
                f"No local subscription for Stripe subscription {subscription_id} (invoice {invoice.get('id')})"
            )

        event_at = ts_to_naive(event.get("created"))
        if self._is_stale(subscription, event_at, event):
            return ApplyOutcome.STALE

        previous_status = subscription.status
        fields = changes(subscription)
        if event_at is not None:
            fields["last_event_at"] = event_at
        await update_subscription_fields(db, subscription, fields)

        self._log_transition(subscription, previous_status, event)
        return ApplyOutcome.APPLIED

    async def _resolve_user_id(self, db: AsyncSession, stripe_obj: Mapping[str, Any]) -> uuid.UUID:
        """Find the owner of a subscription we have not seen before.

        Raises:
            NotFoundError: Neither metadata nor the customer link identify a
                user; the event is rolled back and retried by Stripe.
        """
        user_id = _metadata_user_id(stripe_obj)
        if user_id is not None and await get_user(db, user_id) is not None:
            return user_id

        customer_id = _id_of(stripe_obj.get("customer"))
        if customer_id:
            user = await get_user_by_stripe_customer(db, customer_id)
            if user is not None:
                return user.id

        logger.warning(
            "Cannot resolve user for Stripe subscription %s (customer %s)",
            stripe_obj.get("id"),
            customer_id,
        )
        raise NotFoundError(f"No user for Stripe customer {customer_id}")

    def _is_stale(
        self, subscription: Subscription | None, event_at: datetime | None, event: Mapping[str, Any]
    ) -> bool:
        if not self.reject_stale_events or subscription is None:
            return False
        if event_at is None or subscription.last_event_at is None:
            return False
        if event_at < subscription.last_event_at:
            logger.warning(
                "Stale webhook event %s (%s) created %s, subscription %s last updated by event created %s",
                event["id"],
                event["type"],
                event_at.isoformat(),
                subscription.stripe_subscription_id,
                subscription.last_event_at.isoformat(),
            )
            return True
        return False

    def _log_transition(
        self, subscription: Subscription, previous_status: str | None, event: Mapping[str, Any]
    ) -> None:
        if (
            previous_status == SubscriptionStatus.CANCELED.value
            and subscription.status in ENTITLING_STATUSES
        ):
            logger.warning(
                "Subscription %s moved from canceled to %s by event %s (%s); "
                "possible out-of-order delivery",
                subscription.stripe_subscription_id,
                subscription.status,
                event["id"],
                event["type"],
            )
        elif previous_status != subscription.status:
            logger.info(
                "Subscription %s: %s -> %s (user %s)",
                subscription.stripe_subscription_id,
                previous_status or "none",
                subscription.status,
                subscription.user_id,
            )

    def _warn_unknown_price(self, subscription: Subscription) -> None:
        if self.catalog is None or subscription.price_id is None:
            return
        if self.catalog.find_by_price_id(subscription.price_id) is None:
            logger.warning(
                "Subscription %s uses price ID %s which is not in the plan catalog",
                subscription.stripe_subscription_id,
                subscription.price_id,
            )


def _event_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object")
    if not isinstance(obj, Mapping):
        raise InvalidInputError(f"Stripe event {event.get('id')} has no data.object")
    return obj
