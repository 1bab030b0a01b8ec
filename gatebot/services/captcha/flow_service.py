# gatebot/services/captcha/flow_service.py
"""
Основная логика капчи: выдача, проверка ответа, провал, обновление.

Ключевое правило: результат попытки применяет только тот, кто её
захватил (claim_attempt_by_id вернул True). Ответ пользователя и
фоновая очистка могут прийти одновременно, второй просто ничего не делает.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from aiogram.exceptions import TelegramAPIError
from redis.exceptions import RedisError

from gatebot.config import CAPTCHA_MAX_REFRESHES, CAPTCHA_REFRESH_COOLDOWN_SECONDS
from gatebot.database.models import CaptchaAttempt, StoredMessage, utcnow
from gatebot.services import redis_conn
from gatebot.services.captcha.actions import CaptchaActions, is_permanent_error
from gatebot.services.captcha.attempt_store import (
    attach_message,
    claim_attempt_by_id,
    create_attempt,
    get_active_attempt,
    get_attempt_by_id,
    increment_attempts,
    list_attempts_for_chat,
    refresh_challenge,
)
from gatebot.services.captcha.mute_scheduler import schedule_unmute
from gatebot.services.captcha.settings_service import (
    CaptchaSettingsData,
    FailureAction,
    get_captcha_settings,
    set_captcha_enabled,
)
from gatebot.services.captcha.stored_messages import (
    delete_messages_for_attempt,
    extract_message_payload,
    get_messages_for_attempt,
    store_message,
)


logger = logging.getLogger(__name__)

# Кулдаун кнопки "обновить капчу"
CAPTCHA_REFRESH_COOLDOWN_KEY = "captcha:refresh_cooldown:{chat_id}:{user_id}"


class AnswerStatus(str, Enum):
    NOT_FOUND = "not_found"   # попытки нет или её уже забрала очистка
    STALE = "stale"           # ответ на старое сообщение капчи
    SOLVED = "solved"
    WRONG = "wrong"
    FAILED = "failed"         # исчерпаны попытки, применено действие провала


@dataclass
class AnswerResult:
    status: AnswerStatus
    attempts: int = 0
    remaining: int = 0
    withheld_messages: List[StoredMessage] = field(default_factory=list)


@dataclass
class FailureResult:
    action: str
    deleted_messages: int = 0
    action_applied: bool = True
    unmute_scheduled: bool = False


class RefreshStatus(str, Enum):
    NOT_FOUND = "not_found"
    LIMIT_REACHED = "limit_reached"
    COOLDOWN = "cooldown"
    REFRESHED = "refreshed"


@dataclass
class RefreshResult:
    status: RefreshStatus
    attempt: Optional[CaptchaAttempt] = None


async def safe_delete_message(actions: CaptchaActions, chat_id: int, message_id: int) -> None:
    """Удаляет сообщение в группе. Ошибки Telegram только логируются."""
    if not message_id:
        return
    try:
        await actions.delete_message(chat_id, message_id)
    except TelegramAPIError as e:
        logger.warning(f"⚠️ [CAPTCHA_CLEANUP] Не удалось удалить сообщение: chat_id={chat_id}, msg_id={message_id}, {e}")


async def start_challenge(
    actions: CaptchaActions,
    user_id: int,
    chat_id: int,
    text: str,
    answer: str,
    reply_markup=None,
) -> Optional[CaptchaAttempt]:
    """
    Выдаёт капчу новому участнику.

    Создаёт попытку (старая попытка пары удаляется), отправляет
    сообщение и сохраняет его ID. Если отправить не удалось,
    попытка удаляется и ошибка пробрасывается дальше.

    Returns:
        Попытка или None, если капча в группе выключена
    """
    settings = await get_captcha_settings(chat_id)
    if not settings.enabled:
        return None

    attempt = await create_attempt(user_id, chat_id, answer, settings.timeout)
    try:
        message_id = await actions.send_challenge(chat_id, text, reply_markup)
    except TelegramAPIError as e:
        logger.error(f"❌ [CAPTCHA] Не удалось отправить капчу: user_id={user_id}, chat_id={chat_id}, {e}")
        await claim_attempt_by_id(attempt.id, user_id, chat_id)
        raise

    await attach_message(attempt.id, message_id)
    attempt.message_id = message_id
    logger.info(f"🧩 [CAPTCHA] Капча отправлена: user_id={user_id}, chat_id={chat_id}, attempt_id={attempt.id}")
    return attempt


async def finalize_failure(actions: CaptchaActions, attempt: CaptchaAttempt, action: str) -> FailureResult:
    """
    Применяет провал к уже захваченной попытке.

    Удаляет сообщение капчи и сохранённые сообщения, применяет действие,
    для mute планирует размут.
    """
    result = FailureResult(action=action)
    result.deleted_messages = await delete_messages_for_attempt(attempt.id)
    await safe_delete_message(actions, attempt.chat_id, attempt.message_id)

    try:
        await actions.apply_failure_action(action, attempt.user_id, attempt.chat_id)
    except TelegramAPIError as e:
        result.action_applied = False
        if is_permanent_error(e):
            logger.info(f"ℹ️ [CAPTCHA] Пользователь/чат недоступен: user_id={attempt.user_id}, chat_id={attempt.chat_id}, {e}")
        else:
            logger.error(
                f"❌ [CAPTCHA] Не удалось применить {action}: user_id={attempt.user_id}, "
                f"chat_id={attempt.chat_id}, {e}"
            )
        return result

    if action == FailureAction.MUTE.value:
        await schedule_unmute(attempt.user_id, attempt.chat_id)
        result.unmute_scheduled = True
    return result


async def resolve_failure(
    actions: CaptchaActions,
    attempt: CaptchaAttempt,
    settings: Optional[CaptchaSettingsData] = None,
) -> Optional[FailureResult]:
    """
    Провал попытки (таймаут или исчерпаны ответы).

    Returns:
        FailureResult или None, если попытку уже забрал другой обработчик
    """
    claimed = await claim_attempt_by_id(attempt.id, attempt.user_id, attempt.chat_id)
    if not claimed:
        logger.debug(f"🔍 [CAPTCHA] Попытка уже обработана: attempt_id={attempt.id}")
        return None

    if settings is None:
        settings = await get_captcha_settings(attempt.chat_id)
    return await finalize_failure(actions, attempt, settings.failure_action)


async def submit_answer(
    actions: CaptchaActions,
    attempt_id: int,
    user_id: int,
    chat_id: int,
    answer: str,
) -> AnswerResult:
    """
    Проверяет ответ пользователя.

    Args:
        actions: Действия в Telegram
        attempt_id: ID попытки, к которой относится кнопка/сообщение
        user_id: Кто ответил
        chat_id: ID группы
        answer: Ответ пользователя

    Returns:
        AnswerResult со статусом
    """
    attempt = await get_active_attempt(user_id, chat_id)
    if attempt is None:
        return AnswerResult(AnswerStatus.NOT_FOUND)
    if attempt.id != attempt_id:
        return AnswerResult(AnswerStatus.STALE)

    if answer.strip().lower() == attempt.answer.strip().lower():
        if not await claim_attempt_by_id(attempt.id, user_id, chat_id):
            return AnswerResult(AnswerStatus.NOT_FOUND)

        try:
            await actions.lift_restriction(user_id, chat_id)
        except TelegramAPIError as e:
            logger.error(f"❌ [CAPTCHA] Не удалось снять ограничения: user_id={user_id}, chat_id={chat_id}, {e}")

        withheld = await get_messages_for_attempt(attempt.id)
        if withheld:
            await delete_messages_for_attempt(attempt.id)
        await safe_delete_message(actions, chat_id, attempt.message_id)

        logger.info(f"✅ [CAPTCHA] Капча решена: user_id={user_id}, chat_id={chat_id}, задержано сообщений: {len(withheld)}")
        return AnswerResult(AnswerStatus.SOLVED, attempts=attempt.attempts, withheld_messages=withheld)

    updated = await increment_attempts(user_id, chat_id)
    if updated is None:
        return AnswerResult(AnswerStatus.NOT_FOUND)

    settings = await get_captcha_settings(chat_id)
    if updated.attempts >= settings.max_attempts:
        failure = await resolve_failure(actions, updated, settings)
        if failure is None:
            return AnswerResult(AnswerStatus.NOT_FOUND, attempts=updated.attempts)
        logger.info(f"❌ [CAPTCHA] Попытки исчерпаны: user_id={user_id}, chat_id={chat_id}, action={failure.action}")
        return AnswerResult(AnswerStatus.FAILED, attempts=updated.attempts)

    return AnswerResult(
        AnswerStatus.WRONG,
        attempts=updated.attempts,
        remaining=settings.max_attempts - updated.attempts,
    )


async def _acquire_refresh_cooldown(user_id: int, chat_id: int) -> bool:
    key = CAPTCHA_REFRESH_COOLDOWN_KEY.format(chat_id=chat_id, user_id=user_id)
    try:
        return bool(await redis_conn.redis.set(key, "1", nx=True, ex=CAPTCHA_REFRESH_COOLDOWN_SECONDS))
    except RedisError as e:
        logger.warning(f"⚠️ [CAPTCHA] Redis недоступен, кулдаун обновления пропущен: {e}")
        return True


async def refresh_challenge_message(
    actions: CaptchaActions,
    attempt_id: int,
    user_id: int,
    chat_id: int,
    text: str,
    answer: str,
    reply_markup=None,
) -> RefreshResult:
    """
    Заменяет капчу новой (кнопка "обновить").

    Сначала отправляется новое сообщение, потом обновляется попытка,
    потом удаляется старое сообщение. Не больше CAPTCHA_MAX_REFRESHES
    обновлений и не чаще раза в CAPTCHA_REFRESH_COOLDOWN_SECONDS.
    """
    attempt = await get_attempt_by_id(attempt_id)
    if attempt is None or attempt.user_id != user_id or attempt.chat_id != chat_id or attempt.expires_at <= utcnow():
        return RefreshResult(RefreshStatus.NOT_FOUND)

    if (attempt.refresh_count or 0) >= CAPTCHA_MAX_REFRESHES:
        return RefreshResult(RefreshStatus.LIMIT_REACHED, attempt)

    if not await _acquire_refresh_cooldown(user_id, chat_id):
        return RefreshResult(RefreshStatus.COOLDOWN, attempt)

    new_message_id = await actions.send_challenge(chat_id, text, reply_markup)
    updated = await refresh_challenge(attempt.id, answer, new_message_id)
    if updated is None:
        # Попытку забрали, пока отправляли новое сообщение
        await safe_delete_message(actions, chat_id, new_message_id)
        return RefreshResult(RefreshStatus.NOT_FOUND)

    await safe_delete_message(actions, chat_id, attempt.message_id)
    logger.info(f"🔄 [CAPTCHA] Капча обновлена: attempt_id={attempt.id}, refresh_count={updated.refresh_count}")
    return RefreshResult(RefreshStatus.REFRESHED, updated)


async def capture_pending_message(actions: CaptchaActions, message) -> bool:
    """
    Перехватывает сообщение пользователя, не прошедшего капчу.

    Returns:
        True если у пользователя есть активная попытка
        и сообщение сохранено (и удалено из группы)
    """
    if message.from_user is None:
        return False

    user_id = message.from_user.id
    chat_id = message.chat.id
    attempt = await get_active_attempt(user_id, chat_id)
    if attempt is None:
        return False

    payload = extract_message_payload(message)
    await store_message(
        user_id,
        chat_id,
        attempt.id,
        payload.message_type,
        content=payload.content,
        file_id=payload.file_id,
        caption=payload.caption,
    )
    await safe_delete_message(actions, chat_id, message.message_id)
    return True


async def disable_captcha(actions: CaptchaActions, chat_id: int) -> int:
    """
    Выключает капчу в группе и отпускает всех, кто её проходил.

    Каждая попытка захватывается, затем удаляются её сохранённые
    сообщения и сообщение с капчей, с пользователя снимаются ограничения.

    Returns:
        Сколько попыток снято этим вызовом
    """
    await set_captcha_enabled(chat_id, False)
    released = 0
    for attempt in await list_attempts_for_chat(chat_id):
        if not await claim_attempt_by_id(attempt.id, attempt.user_id, chat_id):
            continue
        released += 1
        await delete_messages_for_attempt(attempt.id)
        await safe_delete_message(actions, chat_id, attempt.message_id)
        try:
            await actions.lift_restriction(attempt.user_id, chat_id)
        except TelegramAPIError as e:
            logger.warning(
                f"⚠️ [CAPTCHA] Не удалось снять ограничения при выключении капчи: "
                f"user_id={attempt.user_id}, chat_id={chat_id}, {e}"
            )

    logger.info(f"🔕 [CAPTCHA] Капча выключена: chat_id={chat_id}, снято попыток: {released}")
    return released
