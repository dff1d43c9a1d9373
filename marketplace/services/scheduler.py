"""Background scheduler for the reconciliation sweeps.

Every process runs the same loop. A sweep's interval is claimed in Redis with
SET NX EX, so across all processes each sweep runs at most once per
interval; a second short-lived key marks a sweep as running so a manual
trigger cannot overlap a scheduled run.
"""

import asyncio
import logging
import os
import socket
import uuid

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.repositories.sql import SqlStore
from marketplace.services.gateway import get_gateway
from marketplace.services.notifications import get_notifier
from marketplace.services.reconciliation import SWEEPS

logger = logging.getLogger(__name__)

TICK_SECONDS = 60

# Delete the running-lock only while it still holds this run's token
_RELEASE_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def sweep_intervals() -> dict[str, int]:
    daily = settings.daily_sweep_interval_seconds
    return {
        "repair-funding": settings.repair_interval_seconds,
        "reminders": settings.reminder_interval_seconds,
        "release-escrow": daily,
        "expire-jobs": daily,
        "expire-quotes": daily,
        "expire-payouts": daily,
    }


def _owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def run_sweep(
    name: str, redis: aioredis.Redis, session: AsyncSession
) -> dict[str, int] | None:
    """Run one sweep under the running-lock. Returns None if it is already running."""
    from marketplace.dependencies import build_reconciliation

    lock_key = f"sweep:running:{name}"
    token = f"{_owner()}:{uuid.uuid4().hex}"
    acquired = await redis.set(lock_key, token, nx=True, ex=settings.sweep_lock_ttl_seconds)
    if not acquired:
        logger.info("Sweep %s already running elsewhere, skipping", name)
        return None

    try:
        service = build_reconciliation(SqlStore(session), get_notifier(), get_gateway())
        result = await getattr(service, SWEEPS[name])()
        logger.info("Sweep %s finished: %s", name, result)
        return result
    finally:
        await redis.eval(_RELEASE_LOCK_SCRIPT, 1, lock_key, token)


async def claim_interval(redis: aioredis.Redis, name: str, interval: int) -> bool:
    """Claim this interval's run of a sweep for the current process."""
    return bool(await redis.set(f"sweep:due:{name}", _owner(), nx=True, ex=interval))


async def run_due_sweeps(redis: aioredis.Redis, session_factory) -> list[str]:  # type: ignore[no-untyped-def]
    """Run every sweep whose interval slot this process manages to claim."""
    ran = []
    for name, interval in sweep_intervals().items():
        if not await claim_interval(redis, name, interval):
            continue
        try:
            async with session_factory() as session:
                await run_sweep(name, redis, session)
            ran.append(name)
        except Exception:
            logger.exception("Sweep %s failed", name)
    return ran


async def run_scheduler() -> None:
    """Loop forever, running sweeps as their intervals come due."""
    from marketplace.database import async_session
    from marketplace.redis import redis_client

    redis = redis_client()
    logger.info("Reconciliation scheduler started")

    while True:
        try:
            await run_due_sweeps(redis, async_session)
            await asyncio.sleep(TICK_SECONDS)
        except asyncio.CancelledError:
            logger.info("Reconciliation scheduler shutting down")
            break
        except Exception:
            logger.exception("Scheduler error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()
