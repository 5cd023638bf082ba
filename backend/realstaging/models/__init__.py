"""SQLAlchemy models for the billing engine.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from realstaging.models.image import Image
from realstaging.models.plan import Plan
from realstaging.models.plan_assignment import PlanAssignment
from realstaging.models.processed_event import ProcessedEvent
from realstaging.models.subscription import ENTITLING_STATUSES, Subscription, SubscriptionStatus
from realstaging.models.user import User

__all__ = [
    "ENTITLING_STATUSES",
    "Image",
    "Plan",
    "PlanAssignment",
    "ProcessedEvent",
    "Subscription",
    "SubscriptionStatus",
    "User",
]
