"""Stripe webhook endpoint — receives and applies Stripe events."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from realstaging.api.deps import get_plan_catalog, get_session_factory, get_stripe_gateway
from realstaging.billing.errors import InvalidInputError
from realstaging.billing.plans import PlanCatalog
from realstaging.billing.stripe_client import StripeGateway
from realstaging.billing.webhooks import WebhookEventApplier
from realstaging.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> dict[str, str]:
    """Receive and apply Stripe webhook events."""
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    # 2. Verify signature
    try:
        event = gateway.construct_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    # 3. Apply in the applier's own transaction (webhook has no auth context)
    applier = WebhookEventApplier(
        session_factory,
        catalog=catalog,
        fetch_subscription=gateway.retrieve_subscription if gateway.credentials.secret_key else None,
        reject_stale_events=settings.webhook_reject_stale_events,
    )
    try:
        outcome = await applier.apply(event)
    except InvalidInputError as e:
        logger.warning("Malformed webhook event %s: %s", event.get("id"), e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e
    except Exception as e:
        logger.exception("Error processing webhook event %s (%s)", event.get("id"), event.get("type"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": outcome.value}
