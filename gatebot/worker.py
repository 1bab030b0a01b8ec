import asyncio
import logging

from aiogram import Bot

# ВАЖНО: сначала загружаем конфиг (.env), потом всё остальное
from gatebot.config import BOT_TOKEN, CAPTCHA_SWEEP_TIMEOUT_SECONDS, LOG_LEVEL
from gatebot.database.session import init_db
from gatebot.services import redis_conn
from gatebot.services.captcha.actions import TelegramCaptchaActions
from gatebot.services.captcha.sweepers import recover_pending_attempts, start_sweepers, wait_in_flight
from gatebot.utils.logger import setup_logging

logger = logging.getLogger(__name__)


async def main():
    """
    Воркер капчи: восстановление после рестарта + фоновые очистки.

    Приём апдейтов (polling/webhook) здесь не запускается.
    """
    setup_logging(LOG_LEVEL)

    if not BOT_TOKEN:
        raise ValueError("BOT_TOKEN не установлен!")

    bot = Bot(token=BOT_TOKEN)
    actions = TelegramCaptchaActions(bot)

    await init_db()
    await redis_conn.test_connection()

    await recover_pending_attempts(actions)
    tasks = start_sweepers(actions)
    logger.info("🚀 Воркер капчи запущен")

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await wait_in_flight(timeout=CAPTCHA_SWEEP_TIMEOUT_SECONDS)
        await bot.session.close()
        await redis_conn.redis.aclose()
        logger.info("🛑 Воркер капчи остановлен")
