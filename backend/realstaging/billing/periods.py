"""Billing-period helpers. All datetimes are naive UTC to match the DB columns."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Stripe Unix timestamp to a naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def calendar_month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[first-of-month, first-of-next-month)`` for ``now`` (naive UTC)."""
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


def is_valid_period(start: datetime | None, end: datetime | None) -> bool:
    return start is not None and end is not None and start < end
