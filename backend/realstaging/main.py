"""Real Staging Billing — FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from realstaging.api.deps import get_plan_catalog
from realstaging.api.v1.admin_billing import router as admin_billing_router
from realstaging.api.v1.billing import router as billing_router
from realstaging.api.v1.webhooks import router as webhooks_router
from realstaging.config import settings
from realstaging.database import async_session_factory, engine
from realstaging.services.plan_reconciler import reconcile_plans

# Configure root logger so all realstaging.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


async def _plan_sync_loop(interval_seconds: int) -> None:
    """Re-run plan reconciliation forever; failures are logged, never fatal."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await reconcile_plans(async_session_factory, get_plan_catalog())
        except Exception:
            logger.exception("Scheduled plan sync failed; retrying in %ss", interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup: plans must be persisted before the first request is served
    if settings.plan_sync_on_startup:
        await reconcile_plans(async_session_factory, get_plan_catalog())

    sync_task = None
    if settings.plan_sync_interval_seconds > 0:
        sync_task = asyncio.create_task(_plan_sync_loop(settings.plan_sync_interval_seconds))

    yield

    # Shutdown: stop the sync loop, dispose engine connections
    if sync_task is not None:
        sync_task.cancel()
        with suppress(asyncio.CancelledError):
            await sync_task
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription-aware image quota accounting backed by Stripe.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(billing_router)
app.include_router(admin_billing_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
