"""Tests for the Stripe webhook event applier against a real (SQLite) store."""

import logging
import uuid
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from realstaging.billing.errors import InvalidInputError, NotFoundError, TransientStoreError
from realstaging.billing.periods import ts_to_naive
from realstaging.billing.webhooks import (
    ApplyOutcome,
    WebhookEventApplier,
    _get_period,
    _get_price_id_from_subscription,
    _invoice_subscription_id,
)
from realstaging.models.processed_event import ProcessedEvent
from realstaging.models.subscription import Subscription
from realstaging.models.user import User
from realstaging.services.usage_resolver import UsagePeriodResolver

T_CREATED = 1_700_000_100
T_DELETED = 1_700_000_200
PERIOD_START = 1_700_000_000
PERIOD_END = 1_702_592_000


def _event(event_type: str, obj: dict, created: int = T_CREATED, event_id: str | None = None) -> dict:
    """Create a Stripe event payload as delivered to the webhook."""
    return {
        "id": event_id or f"evt_test_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def _stripe_sub(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    price_id: str = "price_pro",
    period_start: int = PERIOD_START,
    period_end: int = PERIOD_END,
    **extra,
) -> dict:
    """Create a Stripe Subscription payload (basil: periods on the item)."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "created": 1_699_000_000,
        "cancel_at_period_end": False,
        "items": {
            "data": [
                {
                    "price": {"id": price_id},
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ]
        },
        **extra,
    }


def _invoice(
    subscription: str | None = "sub_1",
    period: tuple[int, int] | None = None,
    lines: list[dict] | None = None,
) -> dict:
    lines = list(lines or [])
    if period is not None:
        lines.append({"period": {"start": period[0], "end": period[1]}})
    return {
        "id": f"in_{uuid.uuid4().hex[:8]}",
        "object": "invoice",
        "subscription": subscription,
        "lines": {"data": lines},
    }


async def _load_subscription(
    session_factory: async_sessionmaker[AsyncSession], stripe_subscription_id: str = "sub_1"
) -> Subscription | None:
    async with session_factory() as db:
        result = await db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        )
        return result.scalar_one_or_none()


async def _processed_count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(ProcessedEvent))
        return result.scalar_one()


@pytest_asyncio.fixture
async def customer(db_session: AsyncSession) -> User:
    """User already linked to Stripe customer cus_1."""
    user = User(email=f"cust-{uuid.uuid4().hex[:8]}@test.com", stripe_customer_id="cus_1")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def applier(session_factory, catalog) -> WebhookEventApplier:
    return WebhookEventApplier(session_factory, catalog=catalog)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    """Test payload extraction helpers."""

    def test_price_id_from_first_item(self):
        assert _get_price_id_from_subscription(_stripe_sub(price_id="price_business")) == "price_business"

    def test_price_id_without_items(self):
        assert _get_price_id_from_subscription({"id": "sub_1"}) is None

    def test_period_from_item_level(self):
        start, end = _get_period(_stripe_sub())
        assert start == ts_to_naive(PERIOD_START)
        assert end == ts_to_naive(PERIOD_END)

    def test_period_falls_back_to_top_level(self):
        """Pre-basil payloads carry the period on the subscription itself."""
        sub = {
            "id": "sub_1",
            "items": {"data": [{"price": {"id": "price_pro"}}]},
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        }
        assert _get_period(sub) == (ts_to_naive(PERIOD_START), ts_to_naive(PERIOD_END))

    def test_invoice_subscription_top_level(self):
        assert _invoice_subscription_id({"subscription": "sub_9"}) == "sub_9"

    def test_invoice_subscription_under_parent(self):
        invoice = {"parent": {"subscription_details": {"subscription": "sub_9"}}}
        assert _invoice_subscription_id(invoice) == "sub_9"

    def test_invoice_without_subscription(self):
        assert _invoice_subscription_id({"id": "in_1", "subscription": None}) is None


# ---------------------------------------------------------------------------
# Subscription lifecycle events
# ---------------------------------------------------------------------------


class TestSubscriptionEvents:
    """customer.subscription.created / updated / deleted."""

    async def test_created_inserts_subscription(self, applier, session_factory, customer):
        outcome = await applier.apply(_event("customer.subscription.created", _stripe_sub()))

        assert outcome == ApplyOutcome.APPLIED
        sub = await _load_subscription(session_factory)
        assert sub is not None
        assert sub.user_id == customer.id
        assert sub.status == "active"
        assert sub.price_id == "price_pro"
        assert sub.stripe_customer_id == "cus_1"
        assert sub.current_period_start == datetime(2023, 11, 14, 22, 13, 20)
        assert sub.current_period_end == ts_to_naive(PERIOD_END)
        assert sub.last_event_at == ts_to_naive(T_CREATED)

    async def test_user_resolved_from_metadata(self, applier, session_factory, test_user):
        """An unlinked customer is resolved through metadata.user_id."""
        stripe_sub = _stripe_sub(customer="cus_new", metadata={"user_id": str(test_user.id)})

        await applier.apply(_event("customer.subscription.created", stripe_sub))

        sub = await _load_subscription(session_factory)
        assert sub.user_id == test_user.id

    async def test_updated_overwrites_present_fields(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.created", _stripe_sub()))
        await applier.apply(
            _event(
                "customer.subscription.updated",
                _stripe_sub(price_id="price_business", cancel_at_period_end=True),
                created=T_CREATED + 10,
            )
        )

        sub = await _load_subscription(session_factory)
        assert sub.price_id == "price_business"
        assert sub.cancel_at_period_end is True
        assert sub.user_id == customer.id

    async def test_explicit_null_clears_cancel_at(self, applier, session_factory, customer):
        await applier.apply(
            _event("customer.subscription.updated", _stripe_sub(cancel_at=1_702_000_000))
        )
        assert (await _load_subscription(session_factory)).cancel_at is not None

        await applier.apply(
            _event("customer.subscription.updated", _stripe_sub(cancel_at=None), created=T_CREATED + 5)
        )
        assert (await _load_subscription(session_factory)).cancel_at is None

    async def test_deleted_without_status_stores_canceled(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.created", _stripe_sub()))
        payload = {"id": "sub_1", "customer": "cus_1"}

        outcome = await applier.apply(_event("customer.subscription.deleted", payload, created=T_DELETED))

        assert outcome == ApplyOutcome.APPLIED
        assert (await _load_subscription(session_factory)).status == "canceled"

    async def test_unresolvable_user_rolls_back(self, applier, session_factory):
        """No metadata and an unknown customer: nothing is written, Stripe retries."""
        event = _event("customer.subscription.created", _stripe_sub(customer="cus_unknown"))

        with pytest.raises(NotFoundError):
            await applier.apply(event)

        assert await _load_subscription(session_factory) is None
        assert await _processed_count(session_factory) == 0


# ---------------------------------------------------------------------------
# Idempotency, atomicity and ordering
# ---------------------------------------------------------------------------


class TestIdempotency:
    """Each event ID is applied at most once."""

    async def test_same_event_twice(self, applier, session_factory, customer):
        event = _event("customer.subscription.created", _stripe_sub())

        first = await applier.apply(event)
        state_after_first = await _load_subscription(session_factory)
        second = await applier.apply(event)
        state_after_second = await _load_subscription(session_factory)

        assert first == ApplyOutcome.APPLIED
        assert second == ApplyOutcome.DUPLICATE
        assert await _processed_count(session_factory) == 1
        assert state_after_second.status == state_after_first.status
        assert state_after_second.price_id == state_after_first.price_id
        assert state_after_second.updated_at == state_after_first.updated_at

    async def test_duplicate_does_not_reapply(self, applier, session_factory, customer):
        """A redelivered old event must not undo a later change."""
        created = _event("customer.subscription.created", _stripe_sub())
        await applier.apply(created)
        await applier.apply(
            _event("customer.subscription.updated", _stripe_sub(status="past_due"), created=T_CREATED + 1)
        )

        assert await applier.apply(created) == ApplyOutcome.DUPLICATE
        assert (await _load_subscription(session_factory)).status == "past_due"

    async def test_concurrent_claim_is_duplicate(self, applier, session_factory, customer):
        """Another worker recorded the event between our ledger check and insert."""
        await applier.apply(_event("customer.subscription.created", _stripe_sub(), event_id="evt_race"))
        racing = _event(
            "customer.subscription.updated",
            _stripe_sub(status="canceled"),
            created=T_CREATED + 1,
            event_id="evt_race",
        )

        with patch("realstaging.billing.webhooks.has_processed", new=AsyncMock(return_value=False)):
            outcome = await applier.apply(racing)

        assert outcome == ApplyOutcome.DUPLICATE
        assert await _processed_count(session_factory) == 1
        assert (await _load_subscription(session_factory)).status == "active"

    async def test_unknown_event_type_is_recorded(self, applier, session_factory):
        outcome = await applier.apply(_event("customer.created", {"id": "cus_1"}))

        assert outcome == ApplyOutcome.IGNORED
        assert await _processed_count(session_factory) == 1

    async def test_event_without_id_rejected(self, applier):
        with pytest.raises(InvalidInputError):
            await applier.apply({"type": "customer.subscription.created", "data": {"object": {}}})


class TestAtomicity:
    """The ledger row and the subscription change commit together or not at all."""

    async def test_store_failure_leaves_event_unrecorded(self, applier, session_factory, customer):
        event = _event("customer.subscription.created", _stripe_sub())

        with patch(
            "realstaging.billing.webhooks.upsert_subscription",
            new=AsyncMock(side_effect=TransientStoreError("upsert subscription failed")),
        ):
            with pytest.raises(TransientStoreError):
                await applier.apply(event)

        assert await _processed_count(session_factory) == 0
        assert await _load_subscription(session_factory) is None

        # Stripe's redelivery then applies normally
        assert await applier.apply(event) == ApplyOutcome.APPLIED
        assert (await _load_subscription(session_factory)).status == "active"


class TestOutOfOrderDelivery:
    """Stripe does not guarantee delivery order."""

    async def test_deleted_before_created_last_arrival_wins(
        self, applier, session_factory, customer, caplog
    ):
        caplog.set_level(logging.WARNING, logger="realstaging.billing.webhooks")
        deleted = _event("customer.subscription.deleted", _stripe_sub(status="canceled"), created=T_DELETED)
        created = _event("customer.subscription.created", _stripe_sub(status="active"), created=T_CREATED)

        assert await applier.apply(deleted) == ApplyOutcome.APPLIED
        assert (await _load_subscription(session_factory)).status == "canceled"
        assert await applier.apply(created) == ApplyOutcome.APPLIED

        # Arrival order, not payload timestamps, decides the final state
        assert (await _load_subscription(session_factory)).status == "active"
        assert "possible out-of-order delivery" in caplog.text

    async def test_stale_event_rejected_when_enabled(self, session_factory, catalog, customer):
        applier = WebhookEventApplier(session_factory, catalog=catalog, reject_stale_events=True)
        deleted = _event("customer.subscription.deleted", _stripe_sub(status="canceled"), created=T_DELETED)
        created = _event("customer.subscription.created", _stripe_sub(status="active"), created=T_CREATED)

        await applier.apply(deleted)
        outcome = await applier.apply(created)

        assert outcome == ApplyOutcome.STALE
        sub = await _load_subscription(session_factory)
        assert sub.status == "canceled"
        assert sub.last_event_at == ts_to_naive(T_DELETED)
        # Stale events are still recorded so redeliveries are duplicates
        assert await applier.apply(created) == ApplyOutcome.DUPLICATE


class TestMissingCreatedTimestamp:
    """A subscription stored without Stripe's `created` ranks as the oldest."""

    async def test_created_at_stays_null(self, applier, session_factory, customer):
        payload = _stripe_sub()
        del payload["created"]

        await applier.apply(_event("customer.subscription.created", payload))

        assert (await _load_subscription(session_factory)).created_at is None

    async def test_timestamped_subscription_drives_plan(self, applier, session_factory, catalog, customer):
        newer = _stripe_sub(sub_id="sub_new", price_id="price_business", created=1_717_200_000)
        undated = _stripe_sub(sub_id="sub_old", price_id="price_pro")
        del undated["created"]

        await applier.apply(_event("customer.subscription.created", newer))
        await applier.apply(_event("customer.subscription.created", undated, created=T_CREATED + 1))

        async with session_factory() as db:
            plan = await UsagePeriodResolver(db, catalog).resolve_plan(customer.id)
        assert plan.code == "business"


# ---------------------------------------------------------------------------
# Invoice events
# ---------------------------------------------------------------------------


class TestInvoiceEvents:
    """invoice.payment_failed / invoice.payment_succeeded."""

    async def test_payment_failed_marks_past_due(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.created", _stripe_sub()))

        outcome = await applier.apply(_event("invoice.payment_failed", _invoice(), created=T_CREATED + 1))

        assert outcome == ApplyOutcome.APPLIED
        assert (await _load_subscription(session_factory)).status == "past_due"

    async def test_payment_failed_leaves_canceled_alone(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.deleted", _stripe_sub(status="canceled")))

        await applier.apply(_event("invoice.payment_failed", _invoice(), created=T_CREATED + 1))

        assert (await _load_subscription(session_factory)).status == "canceled"

    async def test_payment_succeeded_recovers_and_rolls_period(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.created", _stripe_sub(status="past_due")))
        next_period = (PERIOD_END, PERIOD_END + 2_592_000)

        outcome = await applier.apply(
            _event("invoice.payment_succeeded", _invoice(period=next_period), created=T_CREATED + 1)
        )

        assert outcome == ApplyOutcome.APPLIED
        sub = await _load_subscription(session_factory)
        assert sub.status == "active"
        assert sub.current_period_start == ts_to_naive(next_period[0])
        assert sub.current_period_end == ts_to_naive(next_period[1])

    async def test_proration_line_does_not_move_period(self, applier, session_factory, customer):
        """An upgrade invoice leads with a proration line covering [change_time, period_end]."""
        await applier.apply(_event("customer.subscription.created", _stripe_sub()))
        change_time = PERIOD_START + 1_300_000
        proration = {"type": "subscription", "proration": True, "period": {"start": change_time, "end": PERIOD_END}}

        await applier.apply(
            _event("invoice.payment_succeeded", _invoice(lines=[proration]), created=T_CREATED + 1)
        )

        sub = await _load_subscription(session_factory)
        assert sub.current_period_start == ts_to_naive(PERIOD_START)
        assert sub.current_period_end == ts_to_naive(PERIOD_END)

    async def test_recurring_line_wins_over_proration(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.created", _stripe_sub()))
        next_period = (PERIOD_END, PERIOD_END + 2_592_000)
        proration = {
            "parent": {"type": "subscription_item_details", "subscription_item_details": {"proration": True}},
            "period": {"start": PERIOD_START + 1_300_000, "end": PERIOD_END},
        }
        one_off = {"type": "invoiceitem", "period": {"start": PERIOD_START + 5, "end": PERIOD_START + 6}}

        await applier.apply(
            _event(
                "invoice.payment_succeeded",
                _invoice(period=next_period, lines=[proration, one_off]),
                created=T_CREATED + 1,
            )
        )

        sub = await _load_subscription(session_factory)
        assert sub.current_period_start == ts_to_naive(next_period[0])
        assert sub.current_period_end == ts_to_naive(next_period[1])

    async def test_payment_succeeded_keeps_trialing(self, applier, session_factory, customer):
        await applier.apply(_event("customer.subscription.created", _stripe_sub(status="trialing")))

        await applier.apply(_event("invoice.payment_succeeded", _invoice(), created=T_CREATED + 1))

        assert (await _load_subscription(session_factory)).status == "trialing"

    async def test_one_time_invoice_is_ignored(self, applier, session_factory):
        outcome = await applier.apply(_event("invoice.payment_succeeded", _invoice(subscription=None)))

        assert outcome == ApplyOutcome.IGNORED
        assert await _processed_count(session_factory) == 1

    async def test_unknown_subscription_without_fetcher_retries(self, applier, session_factory):
        with pytest.raises(NotFoundError):
            await applier.apply(_event("invoice.payment_failed", _invoice(subscription="sub_missing")))

        assert await _processed_count(session_factory) == 0

    async def test_unknown_subscription_fetched(self, session_factory, catalog, customer):
        fetch = AsyncMock(return_value=_stripe_sub(sub_id="sub_2", status="past_due"))
        applier = WebhookEventApplier(session_factory, catalog=catalog, fetch_subscription=fetch)

        outcome = await applier.apply(_event("invoice.payment_failed", _invoice(subscription="sub_2")))

        assert outcome == ApplyOutcome.APPLIED
        fetch.assert_awaited_once_with("sub_2")
        sub = await _load_subscription(session_factory, "sub_2")
        assert sub.status == "past_due"
        assert sub.user_id == customer.id


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class TestCheckoutSessionCompleted:
    """checkout.session.completed links the customer to the user."""

    async def test_links_customer_from_client_reference_id(self, applier, session_factory, test_user):
        session = {
            "id": "cs_1",
            "customer": "cus_new",
            "client_reference_id": str(test_user.id),
            "subscription": "sub_1",
        }

        outcome = await applier.apply(_event("checkout.session.completed", session))

        assert outcome == ApplyOutcome.APPLIED
        async with session_factory() as db:
            user = await db.get(User, test_user.id)
        assert user.stripe_customer_id == "cus_new"
        # No fetcher: the subscription arrives through its own events
        assert await _load_subscription(session_factory) is None

    async def test_expanded_subscription_is_upserted(self, applier, session_factory, test_user):
        session = {
            "id": "cs_1",
            "customer": "cus_new",
            "metadata": {"user_id": str(test_user.id)},
            "subscription": _stripe_sub(customer="cus_new", price_id="price_business"),
        }

        await applier.apply(_event("checkout.session.completed", session))

        sub = await _load_subscription(session_factory)
        assert sub.user_id == test_user.id
        assert sub.price_id == "price_business"

    async def test_unknown_user_is_ignored(self, applier, session_factory):
        session = {"id": "cs_1", "customer": "cus_nobody", "subscription": "sub_1"}

        outcome = await applier.apply(_event("checkout.session.completed", session))

        assert outcome == ApplyOutcome.IGNORED
        assert await _load_subscription(session_factory) is None
