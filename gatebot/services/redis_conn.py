from redis.asyncio import Redis
import logging

from gatebot.config import REDIS_HOST, REDIS_PORT, REDIS_DB, REDIS_PASSWORD

logger = logging.getLogger(__name__)

redis = Redis(
    host=REDIS_HOST,
    port=REDIS_PORT,
    db=REDIS_DB,
    password=REDIS_PASSWORD,
    decode_responses=True,
)


async def test_connection() -> bool:
    try:
        await redis.ping()
        logger.info(f"✅ Соединение с Redis ({REDIS_HOST}:{REDIS_PORT}) установлено")
        return True
    except Exception as e:
        logger.error(f"❌ Ошибка подключения к Redis ({REDIS_HOST}:{REDIS_PORT}): {e}")
        return False
