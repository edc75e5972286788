"""Tests for the Redis fired-key store and event gateway, using a mocked client."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from escrow_coordinator.domain.enums import EventType
from escrow_coordinator.infrastructure.redis_client import (
    RedisEventGateway,
    RedisFiredKeyStore,
    get_redis,
)


@pytest.fixture
def redis_mock() -> AsyncMock:
    return AsyncMock()


class TestRedisFiredKeyStore:
    @pytest.mark.asyncio
    async def test_claim_uses_set_nx_ex(self, redis_mock) -> None:
        redis_mock.set.return_value = True
        store = RedisFiredKeyStore(redis_mock, prefix="escrow")
        assert await store.claim("rule:d-1:sig:0", 600)
        redis_mock.set.assert_awaited_once_with(
            "escrow:fired:rule:d-1:sig:0", "1", nx=True, ex=600
        )

    @pytest.mark.asyncio
    async def test_claim_taken(self, redis_mock) -> None:
        redis_mock.set.return_value = None
        store = RedisFiredKeyStore(redis_mock, prefix="escrow")
        assert not await store.claim("k", 60)

    @pytest.mark.asyncio
    async def test_refresh_and_release(self, redis_mock) -> None:
        store = RedisFiredKeyStore(redis_mock, prefix="escrow")
        await store.refresh("k", 3600)
        await store.release("k")
        redis_mock.expire.assert_awaited_once_with("escrow:fired:k", 3600)
        redis_mock.delete.assert_awaited_once_with("escrow:fired:k")


class TestRedisEventGateway:
    @pytest.mark.asyncio
    async def test_publishes_json_per_event_type(self, redis_mock) -> None:
        redis_mock.publish.return_value = 2
        gateway = RedisEventGateway(redis_mock, prefix="escrow")
        await gateway.emit(EventType.DISPUTE_UPDATED, {"id": "d-1", "status": "OPEN"})

        channel, message = redis_mock.publish.await_args.args
        assert channel == "escrow:dispute.updated"
        assert json.loads(message) == {"id": "d-1", "status": "OPEN"}

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, redis_mock) -> None:
        redis_mock.publish.side_effect = [RedisConnectionError("reset"), 1]
        gateway = RedisEventGateway(redis_mock, prefix="escrow")
        await gateway.emit(EventType.TASK_CREATED, {"task_id": "t"})
        assert redis_mock.publish.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, redis_mock) -> None:
        redis_mock.publish.side_effect = RedisConnectionError("down")
        gateway = RedisEventGateway(redis_mock, prefix="escrow")
        with pytest.raises(RedisConnectionError):
            await gateway.emit(EventType.TASK_CREATED, {"task_id": "t"})
        assert redis_mock.publish.await_count == 3


def test_get_redis_requires_init() -> None:
    with pytest.raises(RuntimeError):
        get_redis()
