"""Shared fixtures for unit tests."""

from typing import AsyncGenerator

import fakeredis
import pytest

from errorwatch.services.redis_client import RedisClient


@pytest.fixture
async def redis_client() -> AsyncGenerator[RedisClient, None]:
    """Create Redis client with fakeredis for testing."""
    client = RedisClient(redis_url="redis://localhost:6379/0")

    # Replace the real Redis client with fakeredis
    fake_redis = fakeredis.FakeAsyncRedis(decode_responses=True)
    client._client = fake_redis

    yield client

    await fake_redis.flushdb()
    await fake_redis.aclose()
