"""Billing error taxonomy.

``InvalidInputError`` is always a caller bug and is never retried.
``ConfigurationError`` is a deployment defect surfaced to operators and never
auto-healed. ``NotFoundError`` is an expected absence. ``TransientStoreError``
is a retryable persistence failure; webhook callers must let it propagate so
Stripe redelivers the event.
"""


class BillingError(Exception):
    """Base class for all billing engine errors."""


class InvalidInputError(BillingError):
    """Malformed or empty user identifier or plan code."""


class ConfigurationError(BillingError):
    """Plan catalog is incomplete or disagrees with stored subscriptions."""


class CatalogDriftError(ConfigurationError):
    """Entitling subscriptions reference price IDs missing from the catalog."""

    def __init__(self, mismatches: list[tuple[str, str | None]]) -> None:
        self.mismatches = mismatches
        details = ", ".join(
            f"active subscription {sub_id} has unknown price_id: {price_id}"
            for sub_id, price_id in mismatches
        )
        super().__init__(details)


class NotFoundError(BillingError):
    """Plan code, user, or subscription has no resolvable state."""


class TransientStoreError(BillingError):
    """Persistence-layer failure; the operation may be retried."""
