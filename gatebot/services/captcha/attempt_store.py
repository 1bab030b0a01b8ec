# gatebot/services/captcha/attempt_store.py
"""
Хранилище попыток капчи (таблица captcha_attempts).

Отвечает за:
- Создание попытки с заменой предыдущей для той же пары user/chat
- Счётчик неверных ответов под блокировкой строки
- Обновление капчи (refresh)
- Атомарный "захват" попытки через DELETE: кто удалил строку,
  тот и применяет результат (успех или провал), остальные ничего не делают
- Выборки и массовое удаление для фоновой очистки

Каждая функция открывает собственную сессию и выполняет
одну инструкцию или одну транзакцию.
"""

import logging
from datetime import timedelta
from typing import List, Optional, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from gatebot.database.models import CaptchaAttempt, utcnow
from gatebot.database.record_store import (
    delete_where,
    get_record,
    lock_pair,
    transaction,
    update_where,
)


# Логгер для операций с попытками капчи
logger = logging.getLogger(__name__)


async def create_attempt(
    user_id: int,
    chat_id: int,
    answer: str,
    timeout_minutes: int,
) -> CaptchaAttempt:
    """
    Создаёт попытку капчи, удаляя все прежние попытки этой пары.

    Удаление и вставка выполняются в одной транзакции под блокировкой пары,
    поэтому после коммита у пары ровно одна попытка.
    Сообщение с капчей ещё не отправлено: message_id = 0.

    Args:
        user_id: ID пользователя
        chat_id: ID группы
        answer: Правильный ответ
        timeout_minutes: Через сколько минут попытка истекает

    Returns:
        Созданная попытка
    """
    now = utcnow()
    try:
        async with transaction() as session:
            await lock_pair(session, user_id, chat_id)
            replaced = await delete_where(
                session,
                CaptchaAttempt,
                CaptchaAttempt.user_id == user_id,
                CaptchaAttempt.chat_id == chat_id,
            )
            attempt = CaptchaAttempt(
                user_id=user_id,
                chat_id=chat_id,
                answer=answer,
                attempts=0,
                message_id=0,
                refresh_count=0,
                expires_at=now + timedelta(minutes=timeout_minutes),
                created_at=now,
                updated_at=now,
            )
            session.add(attempt)
            await session.flush()
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Не удалось создать попытку: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise

    if replaced:
        logger.info(f"♻️ [CAPTCHA_DB] Заменено старых попыток: {replaced}, user_id={user_id}, chat_id={chat_id}")
    logger.debug(f"🆕 [CAPTCHA_DB] Попытка создана: id={attempt.id}, expires_at={attempt.expires_at}")
    return attempt


async def attach_message(attempt_id: int, message_id: int) -> bool:
    """Сохраняет ID отправленного сообщения с капчей. False если попытки уже нет."""
    try:
        async with transaction() as session:
            updated = await update_where(
                session,
                CaptchaAttempt,
                {"message_id": message_id, "updated_at": utcnow()},
                CaptchaAttempt.id == attempt_id,
            )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Не удалось сохранить message_id: attempt_id={attempt_id}, error={e}")
        raise
    return updated > 0


async def get_active_attempt(user_id: int, chat_id: int) -> Optional[CaptchaAttempt]:
    """Возвращает неистёкшую попытку пары или None."""
    try:
        async with transaction() as session:
            return await get_record(
                session,
                CaptchaAttempt,
                CaptchaAttempt.user_id == user_id,
                CaptchaAttempt.chat_id == chat_id,
                CaptchaAttempt.expires_at > utcnow(),
                order_by=CaptchaAttempt.id.desc(),
            )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка чтения попытки: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise


async def get_attempt_by_id(attempt_id: int) -> Optional[CaptchaAttempt]:
    """Возвращает попытку по ID, даже если она истекла."""
    try:
        async with transaction() as session:
            return await get_record(session, CaptchaAttempt, CaptchaAttempt.id == attempt_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка чтения попытки: attempt_id={attempt_id}, error={e}")
        raise


async def increment_attempts(user_id: int, chat_id: int) -> Optional[CaptchaAttempt]:
    """
    Увеличивает счётчик неверных ответов.

    Строка блокируется (SELECT ... FOR UPDATE), инкремент выполняется
    выражением attempts + 1 на стороне БД, поэтому параллельные
    ответы не теряются.

    Returns:
        Попытка с новым значением attempts или None, если активной попытки нет
    """
    try:
        async with transaction() as session:
            attempt = await get_record(
                session,
                CaptchaAttempt,
                CaptchaAttempt.user_id == user_id,
                CaptchaAttempt.chat_id == chat_id,
                CaptchaAttempt.expires_at > utcnow(),
                order_by=CaptchaAttempt.id.desc(),
                for_update=True,
            )
            if attempt is None:
                return None

            await update_where(
                session,
                CaptchaAttempt,
                {"attempts": CaptchaAttempt.attempts + 1, "updated_at": utcnow()},
                CaptchaAttempt.id == attempt.id,
            )
            await session.refresh(attempt)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка инкремента попыток: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise

    logger.debug(f"🔢 [CAPTCHA_DB] Неверных ответов: {attempt.attempts}, attempt_id={attempt.id}")
    return attempt


async def refresh_challenge(attempt_id: int, new_answer: str, new_message_id: int) -> Optional[CaptchaAttempt]:
    """
    Заменяет ответ и сообщение капчи, увеличивает refresh_count.

    refresh_count может быть NULL у старых записей, считаем его нулём.

    Returns:
        Обновлённая попытка или None, если её уже удалили
    """
    try:
        async with transaction() as session:
            updated = await update_where(
                session,
                CaptchaAttempt,
                {
                    "answer": new_answer,
                    "message_id": new_message_id,
                    "refresh_count": func.coalesce(CaptchaAttempt.refresh_count, 0) + 1,
                    "updated_at": utcnow(),
                },
                CaptchaAttempt.id == attempt_id,
            )
            if not updated:
                return None
            return await get_record(session, CaptchaAttempt, CaptchaAttempt.id == attempt_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка обновления капчи: attempt_id={attempt_id}, error={e}")
        raise


async def claim_attempt(user_id: int, chat_id: int) -> bool:
    """
    Атомарно забирает попытку пары.

    True только у того вызова, чей DELETE удалил строку.
    """
    try:
        async with transaction() as session:
            deleted = await delete_where(
                session,
                CaptchaAttempt,
                CaptchaAttempt.user_id == user_id,
                CaptchaAttempt.chat_id == chat_id,
            )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка захвата попытки: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise
    return deleted > 0


async def claim_attempt_by_id(attempt_id: int, user_id: int, chat_id: int) -> bool:
    """
    Атомарно забирает конкретную попытку.

    user_id и chat_id проверяются вместе с ID: чужую попытку
    захватить нельзя.
    """
    try:
        async with transaction() as session:
            deleted = await delete_where(
                session,
                CaptchaAttempt,
                CaptchaAttempt.id == attempt_id,
                CaptchaAttempt.user_id == user_id,
                CaptchaAttempt.chat_id == chat_id,
            )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка захвата попытки: attempt_id={attempt_id}, error={e}")
        raise

    if deleted:
        logger.debug(f"🔒 [CAPTCHA_DB] Попытка захвачена: attempt_id={attempt_id}")
    return deleted > 0


async def list_expired_attempts() -> List[CaptchaAttempt]:
    """Все попытки с expires_at в прошлом."""
    try:
        async with transaction() as session:
            result = await session.execute(
                select(CaptchaAttempt)
                .where(CaptchaAttempt.expires_at < utcnow())
                .order_by(CaptchaAttempt.expires_at, CaptchaAttempt.id)
            )
            return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка выборки истёкших попыток: {e}")
        raise


async def list_all_attempts() -> List[CaptchaAttempt]:
    """Все попытки, включая активные. Используется при старте."""
    try:
        async with transaction() as session:
            result = await session.execute(select(CaptchaAttempt).order_by(CaptchaAttempt.id))
            return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка выборки попыток: {e}")
        raise


async def delete_expired_attempts() -> int:
    try:
        async with transaction() as session:
            deleted = await delete_where(session, CaptchaAttempt, CaptchaAttempt.expires_at < utcnow())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления истёкших попыток: {e}")
        raise

    if deleted:
        logger.info(f"🧹 [CAPTCHA_DB] Удалено истёкших попыток: {deleted}")
    return deleted


async def delete_attempts_by_ids(ids: Sequence[int]) -> int:
    if not ids:
        return 0
    try:
        async with transaction() as session:
            return await delete_where(session, CaptchaAttempt, CaptchaAttempt.id.in_(list(ids)))
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления попыток по ID: {e}")
        raise


async def delete_all_attempts_for_chat(chat_id: int) -> int:
    """Удаляет все попытки группы (при выключении капчи)."""
    try:
        async with transaction() as session:
            deleted = await delete_where(session, CaptchaAttempt, CaptchaAttempt.chat_id == chat_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления попыток группы: chat_id={chat_id}, error={e}")
        raise

    logger.info(f"🧹 [CAPTCHA_DB] Удалены все попытки группы: chat_id={chat_id}, count={deleted}")
    return deleted


async def list_attempts_for_chat(chat_id: int) -> List[CaptchaAttempt]:
    try:
        async with transaction() as session:
            result = await session.execute(
                select(CaptchaAttempt).where(CaptchaAttempt.chat_id == chat_id).order_by(CaptchaAttempt.id)
            )
            return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка выборки попыток группы: chat_id={chat_id}, error={e}")
        raise


async def restore_attempt(attempt: CaptchaAttempt) -> bool:
    """
    Возвращает захваченную попытку в таблицу с тем же ID.

    Нужен, когда захват прошёл, а провал применить не удалось:
    следующий проход очистки заберёт попытку снова.

    Returns:
        False если у пары уже появилась новая попытка (она важнее)
        или строка с этим ID уже есть
    """
    try:
        async with transaction() as session:
            await lock_pair(session, attempt.user_id, attempt.chat_id)
            existing = await get_record(
                session,
                CaptchaAttempt,
                or_(
                    CaptchaAttempt.id == attempt.id,
                    and_(CaptchaAttempt.user_id == attempt.user_id, CaptchaAttempt.chat_id == attempt.chat_id),
                ),
            )
            if existing is not None:
                return False
            session.add(
                CaptchaAttempt(
                    id=attempt.id,
                    user_id=attempt.user_id,
                    chat_id=attempt.chat_id,
                    answer=attempt.answer,
                    attempts=attempt.attempts,
                    message_id=attempt.message_id,
                    refresh_count=attempt.refresh_count,
                    expires_at=attempt.expires_at,
                    created_at=attempt.created_at,
                    updated_at=utcnow(),
                )
            )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Не удалось вернуть попытку: attempt_id={attempt.id}, error={e}")
        raise

    logger.info(f"↩️ [CAPTCHA_DB] Попытка возвращена: attempt_id={attempt.id}")
    return True
