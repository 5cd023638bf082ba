"""Plan catalog — deploy-time plan codes, Stripe price IDs and monthly quotas."""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from realstaging.billing.errors import ConfigurationError, InvalidInputError, NotFoundError
from realstaging.config import Settings

FREE_PLAN_CODE = "free"

_PLAN_CODE_RE = re.compile(r"^[a-z][a-z0-9_-]{0,49}$")


@dataclass(frozen=True)
class PlanDefinition:
    """A plan as configured for this deployment."""

    code: str
    display_name: str
    price_id: str | None  # None = not configured for this deployment
    monthly_limit: int | None  # None = unlimited
    price_env_var: str | None = None

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_limit is None


def validate_plan_code(code: str) -> str:
    """Return ``code`` if it is a well-formed plan code, else raise InvalidInputError."""
    if not code:
        raise InvalidInputError("code cannot be empty")
    if not _PLAN_CODE_RE.match(code):
        raise InvalidInputError("invalid plan code format")
    return code


class PlanCatalog:
    """Static, read-only set of plans keyed by code and by Stripe price ID."""

    def __init__(self, plans: Iterable[PlanDefinition], free_plan_code: str = FREE_PLAN_CODE) -> None:
        self._plans: dict[str, PlanDefinition] = {}
        self._by_price_id: dict[str, PlanDefinition] = {}

        for plan in plans:
            validate_plan_code(plan.code)
            if plan.code in self._plans:
                raise ConfigurationError(f"duplicate plan code in catalog: {plan.code}")
            if plan.monthly_limit is not None and plan.monthly_limit < 0:
                raise ConfigurationError(f"{plan.code} plan has a negative monthly limit")
            if plan.price_id:
                other = self._by_price_id.get(plan.price_id)
                if other is not None:
                    raise ConfigurationError(
                        f"price ID {plan.price_id} is configured for both {other.code} and {plan.code}"
                    )
                self._by_price_id[plan.price_id] = plan
            self._plans[plan.code] = plan

        if free_plan_code not in self._plans:
            raise ConfigurationError(f"catalog has no {free_plan_code} plan")
        self.free_plan_code = free_plan_code

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanCatalog":
        """Build the standard free / pro / business catalog from settings."""
        return cls(
            [
                PlanDefinition(
                    code="free",
                    display_name="Free",
                    price_id=settings.stripe_free_price_id or None,
                    monthly_limit=settings.plan_free_monthly_limit,
                    price_env_var="STRIPE_FREE_PRICE_ID",
                ),
                PlanDefinition(
                    code="pro",
                    display_name="Pro",
                    price_id=settings.stripe_pro_price_id or None,
                    monthly_limit=settings.plan_pro_monthly_limit,
                    price_env_var="STRIPE_PRO_PRICE_ID",
                ),
                PlanDefinition(
                    code="business",
                    display_name="Business",
                    price_id=settings.stripe_business_price_id or None,
                    monthly_limit=settings.plan_business_monthly_limit,
                    price_env_var="STRIPE_BUSINESS_PRICE_ID",
                ),
            ]
        )

    def all_plans(self) -> list[PlanDefinition]:
        return list(self._plans.values())

    def get(self, code: str) -> PlanDefinition | None:
        return self._plans.get(code)

    def get_price_id(self, code: str) -> str:
        """Return the configured price ID for ``code``.

        Raises:
            NotFoundError: The code is not in the catalog.
            ConfigurationError: The plan exists but has no price ID.
        """
        plan = self._plans.get(code)
        if plan is None:
            raise NotFoundError(f"unknown plan code: {code}")
        if not plan.price_id:
            raise ConfigurationError(f"{code} plan price ID not configured")
        return plan.price_id

    def find_by_price_id(self, price_id: str | None) -> PlanDefinition | None:
        """Reverse lookup: Stripe price ID -> plan. Returns None if not found."""
        if not price_id:
            return None
        return self._by_price_id.get(price_id)

    def price_ids(self) -> set[str]:
        return set(self._by_price_id)

    def free_plan(self) -> PlanDefinition:
        """Return the free plan, failing closed when its price ID is unset."""
        self.get_price_id(self.free_plan_code)
        return self._plans[self.free_plan_code]

    def validate(self) -> None:
        """Raise ConfigurationError naming every plan without a price ID."""
        missing = [plan for plan in self._plans.values() if not plan.price_id]
        if missing:
            names = ", ".join(
                f"{plan.price_env_var or plan.code} environment variable is required" for plan in missing
            )
            raise ConfigurationError(f"invalid plans configuration: {names}")
