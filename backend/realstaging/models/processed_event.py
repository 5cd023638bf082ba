"""Processed Stripe events — the webhook idempotency ledger."""

from datetime import datetime

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from realstaging.database import Base


class ProcessedEvent(Base):
    """One row per Stripe event ID already applied. Append-only."""

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return f"<ProcessedEvent(event_id={self.event_id}, event_type={self.event_type})>"
