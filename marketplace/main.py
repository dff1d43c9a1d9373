"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.config import settings
from marketplace.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from marketplace.routers import cron, disputes, jobs, payments, payouts, quotes, webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the reconciliation scheduler for the lifetime of the app."""
    scheduler_task = None
    if settings.scheduler_enabled:
        from marketplace.services.scheduler import run_scheduler
        scheduler_task = asyncio.create_task(run_scheduler())
    else:
        logger.info("Reconciliation scheduler disabled")

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Services Marketplace Escrow Engine",
    description="Job lifecycle, escrow funding and reconciliation for a services marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters: outermost first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware)

app.include_router(jobs.router)
app.include_router(quotes.router)
app.include_router(payments.router)
app.include_router(disputes.router)
app.include_router(payouts.router)
app.include_router(webhooks.router)
app.include_router(cron.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
