"""Async Stripe API wrapper — credentials are passed in, never set globally."""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import stripe
from stripe import StripeClient

from realstaging.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StripeCredentials:
    """Secrets and verification settings for one Stripe account."""

    secret_key: str
    webhook_secret: str
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeCredentials":
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )


def _to_mapping(obj: Any) -> Mapping[str, Any]:
    """Normalise a Stripe API object into plain dicts and lists."""
    if isinstance(obj, Mapping):
        return obj
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class StripeGateway:
    """The calls the billing engine makes to Stripe."""

    def __init__(self, credentials: StripeCredentials) -> None:
        self.credentials = credentials
        self._client: StripeClient | None = None

    @property
    def client(self) -> StripeClient:
        if self._client is None:
            if not self.credentials.secret_key:
                raise RuntimeError("Stripe secret key is not configured")
            self._client = StripeClient(
                self.credentials.secret_key,
                http_client=stripe.HTTPXClient(),
            )
        return self._client

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a webhook signature and return the event as a plain dict.

        Raises:
            stripe.SignatureVerificationError: Bad signature or timestamp
                outside the tolerance window.
            ValueError: Payload is not valid JSON.
        """
        text = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            text,
            sig_header,
            self.credentials.webhook_secret,
            self.credentials.webhook_tolerance_seconds,
        )
        event = json.loads(text)
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise ValueError("Webhook payload is not a Stripe event")
        return event

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        """Retrieve a Stripe subscription by ID."""
        logger.info("Fetching Stripe subscription %s", subscription_id)
        subscription = await self.client.v1.subscriptions.retrieve_async(subscription_id)
        return _to_mapping(subscription)
