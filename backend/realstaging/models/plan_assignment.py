"""Plan assignment — an explicit plan grant that bypasses subscriptions."""

import uuid

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from realstaging.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PlanAssignment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Grants a user a plan regardless of their Stripe subscriptions."""

    __tablename__ = "plan_assignments"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    plan_code: Mapped[str] = mapped_column(ForeignKey("plans.code"), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="plan_assignment", lazy="noload")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<PlanAssignment(user_id={self.user_id}, plan_code={self.plan_code})>"
