# gatebot/services/settings_cache.py
"""
Кэш настроек в Redis перед базой данных.

Чтение: Redis -> (промах) -> загрузчик из БД -> запись в Redis с TTL.
При одновременных промахах загрузку выполняет тот, кто взял
блокировку SET NX, остальные коротко ждут появления значения.
Redis недоступен - читаем напрямую из БД.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict

from redis.exceptions import RedisError

from gatebot.services import redis_conn


logger = logging.getLogger(__name__)

# TTL блокировки загрузки (секунды)
LOAD_LOCK_TTL = 5
# Сколько раз и как часто ждущие проверяют кэш
LOAD_WAIT_ATTEMPTS = 10
LOAD_WAIT_DELAY = 0.05


async def get_or_load(
    key: str,
    loader: Callable[[], Awaitable[Dict[str, Any]]],
    ttl: int,
) -> Dict[str, Any]:
    """
    Возвращает значение из кэша или загружает его через loader.

    Args:
        key: Ключ Redis
        loader: Корутина-фабрика, возвращающая JSON-сериализуемый dict
        ttl: Время жизни записи в кэше (секунды)

    Returns:
        dict со значением
    """
    try:
        cached = await redis_conn.redis.get(key)
        if cached is not None:
            return json.loads(cached)

        lock_key = f"{key}:lock"
        acquired = await redis_conn.redis.set(lock_key, "1", nx=True, ex=LOAD_LOCK_TTL)
        if not acquired:
            for _ in range(LOAD_WAIT_ATTEMPTS):
                await asyncio.sleep(LOAD_WAIT_DELAY)
                cached = await redis_conn.redis.get(key)
                if cached is not None:
                    return json.loads(cached)
            # Держатель блокировки не успел, грузим сами
            return await loader()

        try:
            value = await loader()
            await redis_conn.redis.set(key, json.dumps(value), ex=ttl)
            return value
        finally:
            await redis_conn.redis.delete(lock_key)
    except RedisError as e:
        logger.warning(f"⚠️ [SETTINGS_CACHE] Redis недоступен, читаем из БД: key={key}, error={e}")
        return await loader()


async def invalidate(key: str) -> None:
    """Удаляет значение из кэша после записи в БД."""
    try:
        await redis_conn.redis.delete(key)
    except RedisError as e:
        logger.warning(f"⚠️ [SETTINGS_CACHE] Не удалось сбросить кэш: key={key}, error={e}")
