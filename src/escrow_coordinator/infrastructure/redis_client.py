"""Redis client for fired-action keys and event broadcast.

Usage:
    from escrow_coordinator.infrastructure.redis_client import init_redis, close_redis

    redis = await init_redis()
    fired_keys = RedisFiredKeyStore(redis)
    gateway = RedisEventGateway(redis)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from escrow_coordinator.config import get_settings
from escrow_coordinator.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_coordinator.domain.enums import EventType

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during runtime startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during runtime shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Fired Keys ---


class RedisFiredKeyStore:
    """FiredKeyStore backed by SET NX EX, so claims survive restarts and are
    shared between every engine process pointed at the same Redis."""

    def __init__(self, redis: aioredis.Redis, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().event_channel_prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:fired:{key}"

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(self._key(key), "1", nx=True, ex=ttl_seconds))

    async def refresh(self, key: str, ttl_seconds: int) -> None:
        await self._redis.expire(self._key(key), ttl_seconds)

    async def release(self, key: str) -> None:
        await self._redis.delete(self._key(key))


# --- Event Gateway ---


class RedisEventGateway:
    """EventGateway that publishes JSON payloads on one pub/sub channel per event type.

    Channel names are ``<prefix>:<event type>``, e.g. ``escrow:transaction.updated``.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().event_channel_prefix

    def channel_for(self, event_type: EventType) -> str:
        return f"{self._prefix}:{event_type}"

    async def emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        channel = self.channel_for(event_type)
        receivers = await self._publish(channel, json.dumps(payload, default=str))
        logger.debug("event.published", channel=channel, receivers=receivers)

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _publish(self, channel: str, message: str) -> int:
        """Publish with exponential backoff on transient connection failures."""
        return await self._redis.publish(channel, message)
