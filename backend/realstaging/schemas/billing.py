"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class PlanAssignmentRequest(BaseModel):
    """Grant a plan to a user, bypassing their subscriptions."""

    plan_code: str
    reason: str | None = Field(default=None, max_length=255)


class PruneEventsRequest(BaseModel):
    """Prune processed webhook events; defaults to the configured retention."""

    older_than_hours: int | None = Field(default=None, gt=0)


# --- Response schemas ---


class UsageResponse(BaseModel):
    """Image usage in the current billing period."""

    plan_code: str
    used: int
    limit: int | None  # None = unlimited
    remaining: int | None  # None = unlimited
    period_start: datetime
    period_end: datetime
    has_subscription: bool
    can_create_image: bool


class CanCreateImageResponse(BaseModel):
    allowed: bool


class PlanResponse(BaseModel):
    """Plan details for display."""

    code: str
    name: str
    price_id: str
    monthly_limit: int | None  # None = unlimited
    source: str  # "database" or "catalog"


class PlansListResponse(BaseModel):
    """All configured plans."""

    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """One of the user's Stripe subscriptions, as mirrored locally."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    stripe_subscription_id: str
    status: str
    is_entitling: bool
    price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at: datetime | None
    canceled_at: datetime | None
    cancel_at_period_end: bool
    created_at: datetime | None
    updated_at: datetime


class SubscriptionListResponse(BaseModel):
    """Paginated subscriptions, newest first."""

    items: list[SubscriptionResponse]
    total: int
    limit: int
    offset: int
    has_active_subscription: bool


class SyncPlansResponse(BaseModel):
    """Result of a catalog -> plans table sync, by plan code."""

    created: list[str]
    updated: list[str]
    unchanged: list[str]
    orphaned: list[str]


class PriceIdMismatch(BaseModel):
    stripe_subscription_id: str
    price_id: str | None


class ValidatePriceIdsResponse(BaseModel):
    """Entitling subscriptions whose price ID is missing from the catalog."""

    valid: bool
    mismatches: list[PriceIdMismatch]


class PlanAssignmentResponse(BaseModel):
    user_id: uuid.UUID
    plan_code: str
    reason: str | None


class PruneEventsResponse(BaseModel):
    deleted: int
    older_than_hours: int
