"""Async SQLAlchemy engine, session factory, and declarative base."""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from realstaging.billing.errors import TransientStoreError
from realstaging.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.async_database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
    )


class UUIDPrimaryKeyMixin:
    """Mixin that adds a UUID primary key column."""

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)


def upsert(db: AsyncSession, model):
    """Return a dialect-specific ``INSERT`` that supports ``ON CONFLICT``.

    Both PostgreSQL and SQLite expose ``on_conflict_do_update`` /
    ``on_conflict_do_nothing`` with the same signature.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(model)
    if dialect == "postgresql":
        return postgresql.insert(model)
    raise NotImplementedError(f"Upsert is not supported on the {dialect!r} dialect")


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate driver-level failures into :class:`TransientStoreError`.

    The original exception is chained but its message is not propagated,
    so query details never reach API callers.
    """
    try:
        yield
    except DBAPIError as e:
        logger.error("Store failure during %s: %s", operation, e.__class__.__name__)
        raise TransientStoreError(f"{operation} failed") from e


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async database session for FastAPI dependency injection.

    Usage::

        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory for handlers that own their transaction."""
    return async_session_factory
