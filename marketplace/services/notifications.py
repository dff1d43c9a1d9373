"""In-app notification and live status-update dispatch.

Supports two backends:
- Redis pub/sub (production): publishes to per-user channels that the
  realtime gateway fans out to connected browsers
- Log-only (development / testing): logs the event instead of publishing

Delivery is fire-and-forget: a failed publish is logged and never raised into
the lifecycle operation that triggered it.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Protocol

import redis.asyncio as aioredis

from marketplace.config import settings

logger = logging.getLogger(__name__)

ADMIN_CHANNEL = "notifications:admins"


@dataclass
class Notification:
    type: str
    title: str
    message: str
    data: dict = field(default_factory=dict)


@dataclass
class StatusUpdate:
    """Live field change on an entity, e.g. a job's escrow status."""

    entity: str
    id: str
    fields: dict = field(default_factory=dict)


class Notifier(Protocol):
    async def push(self, user_id: uuid.UUID, notification: Notification) -> None: ...

    async def push_status_update(self, user_id: uuid.UUID, update: StatusUpdate) -> None: ...

    async def push_admins(self, notification: Notification) -> None: ...


async def push_status_update_many(
    notifier: Notifier, user_ids: list[uuid.UUID], update: StatusUpdate
) -> None:
    for user_id in user_ids:
        await notifier.push_status_update(user_id, update)


class LogNotifier:
    """Development notifier, logs instead of publishing."""

    async def push(self, user_id: uuid.UUID, notification: Notification) -> None:
        logger.info(
            "NOTIFY user=%s type=%s title=%s", user_id, notification.type, notification.title
        )

    async def push_status_update(self, user_id: uuid.UUID, update: StatusUpdate) -> None:
        logger.info("STATUS user=%s %s/%s %s", user_id, update.entity, update.id, update.fields)

    async def push_admins(self, notification: Notification) -> None:
        logger.info("NOTIFY admins type=%s title=%s", notification.type, notification.title)


class RedisNotifier:
    """Production notifier, publishes JSON messages over Redis pub/sub."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def _publish(self, channel: str, kind: str, payload: dict) -> None:
        message = json.dumps({"kind": kind, "payload": payload}, default=str)
        try:
            await self.redis.publish(channel, message)
        except aioredis.RedisError:
            logger.exception("Failed to publish %s to %s", kind, channel)

    async def push(self, user_id: uuid.UUID, notification: Notification) -> None:
        await self._publish(f"notifications:{user_id}", "notification", asdict(notification))

    async def push_status_update(self, user_id: uuid.UUID, update: StatusUpdate) -> None:
        await self._publish(f"notifications:{user_id}", "status_update", asdict(update))

    async def push_admins(self, notification: Notification) -> None:
        await self._publish(ADMIN_CHANNEL, "notification", asdict(notification))


def get_notifier() -> Notifier:
    if settings.notification_backend == "redis":
        from marketplace.redis import redis_client

        return RedisNotifier(redis_client())
    return LogNotifier()
