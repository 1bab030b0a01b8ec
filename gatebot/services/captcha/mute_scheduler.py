# gatebot/services/captcha/mute_scheduler.py
"""
Отложенный размут пользователей, проваливших капчу при failure_action = mute.

Запись в captcha_muted_users - обязательство снять ограничение после unmute_at.
Удаление записи по ID служит захватом: размут выполняет тот, чей DELETE
удалил строку.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from gatebot.config import CAPTCHA_MUTE_DURATION_HOURS
from gatebot.database.models import CaptchaMutedUser, utcnow
from gatebot.database.record_store import delete_where, transaction


logger = logging.getLogger(__name__)


async def create_muted_user(user_id: int, chat_id: int, unmute_at: datetime) -> CaptchaMutedUser:
    """
    Создаёт запись о муте.

    unmute_at не проверяется: запись с прошедшим временем
    будет обработана ближайшим проходом очистки.
    """
    record = CaptchaMutedUser(user_id=user_id, chat_id=chat_id, unmute_at=unmute_at, created_at=utcnow())
    try:
        async with transaction() as session:
            session.add(record)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Не удалось запланировать размут: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise

    logger.info(f"🔇 [CAPTCHA_MUTE] Размут запланирован: user_id={user_id}, chat_id={chat_id}, unmute_at={unmute_at}")
    return record


async def schedule_unmute(user_id: int, chat_id: int, delay: Optional[timedelta] = None) -> CaptchaMutedUser:
    """Планирует размут через delay (по умолчанию CAPTCHA_MUTE_DURATION_HOURS)."""
    if delay is None:
        delay = timedelta(hours=CAPTCHA_MUTE_DURATION_HOURS)
    return await create_muted_user(user_id, chat_id, utcnow() + delay)


async def get_users_to_unmute() -> List[CaptchaMutedUser]:
    """Записи, у которых unmute_at уже прошёл."""
    try:
        async with transaction() as session:
            result = await session.execute(
                select(CaptchaMutedUser)
                .where(CaptchaMutedUser.unmute_at < utcnow())
                .order_by(CaptchaMutedUser.unmute_at, CaptchaMutedUser.id)
            )
            return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка выборки пользователей для размута: {e}")
        raise


async def delete_muted_user(muted_id: int) -> bool:
    """Удаляет запись. True только если строка была удалена этим вызовом."""
    try:
        async with transaction() as session:
            deleted = await delete_where(session, CaptchaMutedUser, CaptchaMutedUser.id == muted_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления записи о муте: id={muted_id}, error={e}")
        raise
    return deleted > 0


async def delete_muted_users(ids: Sequence[int]) -> int:
    if not ids:
        return 0
    try:
        async with transaction() as session:
            return await delete_where(session, CaptchaMutedUser, CaptchaMutedUser.id.in_(list(ids)))
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления записей о муте: {e}")
        raise
