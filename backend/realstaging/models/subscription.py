"""Subscription model — Stripe billing state per user."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, String, false, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from realstaging.database import Base, UUIDPrimaryKeyMixin


class SubscriptionStatus(str, enum.Enum):
    """Stripe subscription statuses."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


# Only these statuses grant feature access.
ENTITLING_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
)


class Subscription(UUIDPrimaryKeyMixin, Base):
    """Local mirror of a Stripe subscription.

    Written only by the webhook applier and never deleted; canceled rows are
    kept for history.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user_id_status", "user_id", "status"),)

    # A user may transiently hold several subscriptions during plan changes
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Stripe identifiers
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Plan & status
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)

    # Cancellation
    cancel_at: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false(), default=False)

    # Stripe's own `created`; NULL when unknown so the row ranks oldest
    created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    # `created` of the last Stripe event applied to this row
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="noload")  # type: ignore[name-defined]  # noqa: F821

    @property
    def is_entitling(self) -> bool:
        return self.status in ENTITLING_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"stripe_subscription_id={self.stripe_subscription_id}, status={self.status})>"
        )
