"""Plan model — persisted copy of the plan catalog."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from realstaging.database import Base, TimestampMixin


class Plan(TimestampMixin, Base):
    """A plan row, upserted from the catalog by the plan reconciler only."""

    __tablename__ = "plans"

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    price_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # NULL = unlimited; 0 is a real zero quota
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Plan(code={self.code}, price_id={self.price_id}, monthly_limit={self.monthly_limit})>"
