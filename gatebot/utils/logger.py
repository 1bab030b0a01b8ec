import os
import asyncio
import logging

import aiohttp

BOT_TOKEN = os.getenv("BOT_TOKEN")
LOG_CHANNEL_ID = os.getenv("LOG_CHANNEL_ID")

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Максимальная длина сообщения Telegram
TELEGRAM_MESSAGE_LIMIT = 4096


# ==== ОТПРАВКА ЛОГОВ В TELEGRAM ====

async def send_formatted_log(message):
    """Отправляет отформатированное сообщение в канал логов в Telegram"""
    if not BOT_TOKEN or not LOG_CHANNEL_ID:
        return

    url = f"https://api.telegram.org/bot{BOT_TOKEN}/sendMessage"
    payload = {
        "chat_id": LOG_CHANNEL_ID,
        "text": message[:TELEGRAM_MESSAGE_LIMIT],
        "disable_web_page_preview": True
    }

    async with aiohttp.ClientSession() as session:
        try:
            resp = await session.post(url, data=payload)
            if resp.status != 200:
                text = await resp.text()
                print(f"❌ Telegram API Error: {resp.status} {text}")
        except aiohttp.ClientError as e:
            print(f"❌ Ошибка при отправке лога в Telegram: {e}")


class TelegramLogHandler(logging.Handler):
    """
    Пересылает записи лога в канал LOG_CHANNEL_ID.

    Работает только внутри запущенного event loop: отправка
    ставится задачей и не блокирует вызывающий код.
    """

    def __init__(self, level=logging.ERROR):
        super().__init__(level=level)
        self._tasks = set()

    def emit(self, record):
        if not BOT_TOKEN or not LOG_CHANNEL_ID:
            return
        # aiohttp пишет в лог сам, не пересылаем его записи обратно
        if record.name.startswith("aiohttp"):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        try:
            text = self.format(record)
        except Exception:
            self.handleError(record)
            return
        task = loop.create_task(send_formatted_log(text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def setup_logging(level="INFO"):
    """Настраивает корневой логгер: консоль + канал логов в Telegram."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Создаем обработчик для консоли
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    # Создаем обработчик для Telegram (только ошибки)
    telegram_handler = TelegramLogHandler(level=logging.ERROR)
    telegram_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(telegram_handler)

    # Отключаем болтливое логирование aiogram
    for logger_name in ("aiogram", "aiogram.dispatcher", "aiogram.event"):
        log = logging.getLogger(logger_name)
        log.setLevel(logging.ERROR)

    return logger
