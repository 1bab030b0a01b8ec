# ============================================================
# RETRY UTILS - УТИЛИТЫ ДЛЯ RETRY ПРИ СЕТЕВЫХ ОШИБКАХ
# ============================================================
# Повторные попытки вызовов Telegram API при сетевых ошибках
# и при ответе "Too Many Requests" (retry_after).
# Ошибки Telegram вида Bad Request не повторяются.
# ============================================================

import asyncio
import logging
from typing import TypeVar, Callable, Awaitable
from functools import wraps

from aiogram.exceptions import TelegramNetworkError, TelegramRetryAfter

logger = logging.getLogger(__name__)

# Тип для возвращаемого значения
T = TypeVar('T')


async def retry_on_network_error(
    factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0
) -> T:
    """
    Выполняет вызов с retry при сетевых ошибках.

    Принимает фабрику корутин, а не корутину: каждая попытка
    создаёт новый вызов, уже awaited корутину повторить нельзя.

    Args:
        factory: Функция без аргументов, возвращающая корутину
        max_retries: Максимальное количество повторных попыток
        delay: Начальная задержка между попытками (секунды)
        backoff: Множитель задержки для каждой следующей попытки

    Returns:
        Результат выполнения корутины

    Raises:
        Последнее исключение если все попытки неудачны

    Example:
        await retry_on_network_error(
            lambda: bot.delete_message(chat_id, message_id),
            max_retries=3
        )
    """
    current_delay = delay

    for attempt in range(max_retries + 1):
        try:
            return await factory()
        except TelegramRetryAfter as e:
            if attempt >= max_retries:
                logger.error(f"[Retry] Telegram rate limit, попытки исчерпаны: {e}")
                raise
            # Telegram просит подождать
            wait_time = e.retry_after + 1
            logger.warning(f"[Retry] Telegram rate limit. Ожидание {wait_time}с...")
            await asyncio.sleep(wait_time)
        except TelegramNetworkError as e:
            if attempt >= max_retries:
                logger.error(
                    f"[Retry] Все {max_retries + 1} попыток исчерпаны. "
                    f"Последняя ошибка: {e}"
                )
                raise
            logger.warning(
                f"[Retry] Сетевая ошибка (попытка {attempt + 1}/{max_retries + 1}): {e}. "
                f"Повтор через {current_delay:.1f}с..."
            )
            await asyncio.sleep(current_delay)
            current_delay *= backoff


def with_retry(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0
) -> Callable:
    """
    Декоратор для автоматического retry при сетевых ошибках.

    Example:
        @with_retry(max_retries=3)
        async def lift_restriction(self, user_id, chat_id):
            await self.bot.restrict_chat_member(...)
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_on_network_error(
                lambda: func(*args, **kwargs),
                max_retries=max_retries,
                delay=delay,
                backoff=backoff,
            )

        return wrapper
    return decorator
