"""
Unit тесты кэша Redis перед БД.
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatebot.services import redis_conn, settings_cache


@pytest.mark.asyncio
async def test_miss_loads_and_stores(fake_redis):
    loader = AsyncMock(return_value={"value": 1})

    first = await settings_cache.get_or_load("test:key", loader, ttl=60)
    second = await settings_cache.get_or_load("test:key", loader, ttl=60)

    assert first == second == {"value": 1}
    loader.assert_awaited_once()
    assert json.loads(await fake_redis.get("test:key")) == {"value": 1}
    assert 0 < await fake_redis.ttl("test:key") <= 60
    assert await fake_redis.get("test:key:lock") is None


@pytest.mark.asyncio
async def test_concurrent_misses_load_once():
    """Тест: при одновременных промахах БД читает только держатель блокировки."""
    calls = 0

    async def slow_loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.1)
        return {"value": calls}

    results = await asyncio.gather(*[
        settings_cache.get_or_load("test:stampede", slow_loader, ttl=60)
        for _ in range(5)
    ])

    assert calls == 1
    assert all(result == {"value": 1} for result in results)


@pytest.mark.asyncio
async def test_invalidate_removes_value(fake_redis):
    await fake_redis.set("test:key", json.dumps({"value": 1}))

    await settings_cache.invalidate("test:key")

    assert await fake_redis.get("test:key") is None


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_loader(monkeypatch):
    """Тест: Redis недоступен -> значение читается напрямую."""
    broken = AsyncMock()
    broken.get.side_effect = RedisConnectionError("connection refused")
    broken.delete.side_effect = RedisConnectionError("connection refused")
    monkeypatch.setattr(redis_conn, "redis", broken)
    loader = AsyncMock(return_value={"value": 2})

    assert await settings_cache.get_or_load("test:key", loader, ttl=60) == {"value": 2}
    # invalidate тоже не падает
    await settings_cache.invalidate("test:key")
