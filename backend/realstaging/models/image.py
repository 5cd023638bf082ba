"""Image model — one row per image creation, counted against the plan quota."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from realstaging.database import Base, UUIDPrimaryKeyMixin


class Image(UUIDPrimaryKeyMixin, Base):
    """Usage event owned by the image pipeline; billing only counts rows."""

    __tablename__ = "images"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return f"<Image(id={self.id}, user_id={self.user_id}, created_at={self.created_at})>"
