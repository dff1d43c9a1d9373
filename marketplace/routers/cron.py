"""Manual and external-cron triggers for the reconciliation sweeps."""

import hmac

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import get_db
from marketplace.redis import get_redis
from marketplace.schemas.cron import SweepResponse
from marketplace.services.reconciliation import SWEEPS
from marketplace.services.scheduler import run_sweep

DEV_CRON_SECRET = "dev-cron-secret"

router = APIRouter(prefix="/cron", tags=["cron"])


def _expected_secret() -> str:
    if settings.cron_secret:
        return settings.cron_secret
    return DEV_CRON_SECRET if settings.env == "development" else ""


async def verify_cron_secret(authorization: str = Header("")) -> None:
    """Require ``Authorization: Bearer <cron_secret>``."""
    secret = _expected_secret()
    if not secret or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/{sweep}", response_model=SweepResponse, dependencies=[Depends(verify_cron_secret)])
async def trigger_sweep(
    sweep: str,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> SweepResponse:
    """Run one reconciliation sweep now."""
    if sweep not in SWEEPS:
        raise HTTPException(status_code=404, detail=f"Unknown sweep '{sweep}'")
    result = await run_sweep(sweep, redis, db)
    if result is None:
        raise HTTPException(status_code=409, detail=f"Sweep '{sweep}' is already running")
    return SweepResponse(sweep=sweep, result=result)
