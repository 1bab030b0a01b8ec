# gatebot/services/captcha/stored_messages.py
"""
Хранилище сообщений, отправленных пользователем до прохождения капчи.

Сообщение удаляется из группы, а его содержимое (текст или file_id)
сохраняется с привязкой к попытке. После решения капчи
сообщения можно показать админам или вернуть пользователю,
после провала они просто удаляются.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from gatebot.database.models import StoredMessage, utcnow
from gatebot.database.record_store import delete_where, transaction


logger = logging.getLogger(__name__)


class MessageType(IntEnum):
    """Тип сохранённого сообщения (значение хранится в БД)."""
    TEXT = 1
    STICKER = 2
    DOCUMENT = 3
    PHOTO = 4
    AUDIO = 5
    VOICE = 6
    VIDEO = 7
    VIDEO_NOTE = 8


UNSUPPORTED_CONTENT = "[Unsupported message type]"


@dataclass
class StoredPayload:
    message_type: MessageType
    content: str = ""
    file_id: str = ""
    caption: str = ""


def extract_message_payload(message) -> StoredPayload:
    """
    Превращает aiogram Message в данные для сохранения.

    Для фото берётся самый большой размер.
    Неизвестные типы сохраняются как текст-заглушка.
    """
    caption = message.caption or ""

    if message.text:
        return StoredPayload(MessageType.TEXT, content=message.text)
    if message.sticker:
        return StoredPayload(MessageType.STICKER, file_id=message.sticker.file_id)
    if message.document:
        return StoredPayload(MessageType.DOCUMENT, file_id=message.document.file_id, caption=caption)
    if message.photo:
        largest = max(message.photo, key=lambda size: size.width * size.height)
        return StoredPayload(MessageType.PHOTO, file_id=largest.file_id, caption=caption)
    if message.audio:
        return StoredPayload(MessageType.AUDIO, file_id=message.audio.file_id, caption=caption)
    if message.voice:
        return StoredPayload(MessageType.VOICE, file_id=message.voice.file_id, caption=caption)
    if message.video:
        return StoredPayload(MessageType.VIDEO, file_id=message.video.file_id, caption=caption)
    if message.video_note:
        return StoredPayload(MessageType.VIDEO_NOTE, file_id=message.video_note.file_id)

    return StoredPayload(MessageType.TEXT, content=UNSUPPORTED_CONTENT)


def summarize_message_types(messages: Sequence[StoredMessage]) -> List[str]:
    """Уникальные названия типов в порядке первого появления: ["text", "photo"]."""
    seen = []
    for stored in messages:
        name = MessageType(stored.message_type).name.lower()
        if name not in seen:
            seen.append(name)
    return seen


async def store_message(
    user_id: int,
    chat_id: int,
    attempt_id: int,
    message_type: MessageType,
    content: str = "",
    file_id: str = "",
    caption: str = "",
) -> StoredMessage:
    """Сохраняет одно сообщение, привязанное к попытке."""
    stored = StoredMessage(
        user_id=user_id,
        chat_id=chat_id,
        attempt_id=attempt_id,
        message_type=int(message_type),
        content=content,
        file_id=file_id,
        caption=caption,
        created_at=utcnow(),
    )
    try:
        async with transaction() as session:
            session.add(stored)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Не удалось сохранить сообщение: attempt_id={attempt_id}, error={e}")
        raise

    logger.debug(
        f"📦 [CAPTCHA_DB] Сообщение сохранено: type={MessageType(message_type).name}, "
        f"user_id={user_id}, chat_id={chat_id}, attempt_id={attempt_id}"
    )
    return stored


async def get_messages_for_attempt(attempt_id: int) -> List[StoredMessage]:
    try:
        async with transaction() as session:
            result = await session.execute(
                select(StoredMessage)
                .where(StoredMessage.attempt_id == attempt_id)
                .order_by(StoredMessage.created_at, StoredMessage.id)
            )
            return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка чтения сообщений: attempt_id={attempt_id}, error={e}")
        raise


async def get_messages_for_user(user_id: int, chat_id: int) -> List[StoredMessage]:
    try:
        async with transaction() as session:
            result = await session.execute(
                select(StoredMessage)
                .where(StoredMessage.user_id == user_id, StoredMessage.chat_id == chat_id)
                .order_by(StoredMessage.created_at, StoredMessage.id)
            )
            return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка чтения сообщений: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise


async def delete_messages_for_attempt(attempt_id: int) -> int:
    try:
        async with transaction() as session:
            return await delete_where(session, StoredMessage, StoredMessage.attempt_id == attempt_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления сообщений: attempt_id={attempt_id}, error={e}")
        raise


async def delete_messages_for_user(user_id: int, chat_id: int) -> int:
    """Удаляет все сообщения пары, в том числе оставшиеся от удалённых попыток."""
    try:
        async with transaction() as session:
            return await delete_where(
                session,
                StoredMessage,
                StoredMessage.user_id == user_id,
                StoredMessage.chat_id == chat_id,
            )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка удаления сообщений: user_id={user_id}, chat_id={chat_id}, error={e}")
        raise


async def count_messages_for_attempt(attempt_id: int) -> int:
    try:
        async with transaction() as session:
            result = await session.execute(
                select(func.count()).select_from(StoredMessage).where(StoredMessage.attempt_id == attempt_id)
            )
            return int(result.scalar_one())
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_DB] Ошибка подсчёта сообщений: attempt_id={attempt_id}, error={e}")
        raise
