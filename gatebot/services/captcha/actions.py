# gatebot/services/captcha/actions.py
"""
Действия в Telegram, которые нужны капче.

CaptchaActions - интерфейс, через который сервисы капчи
обращаются к Telegram. TelegramCaptchaActions - реализация на aiogram Bot.
В тестах вместо неё передаётся AsyncMock.
"""

import logging
from typing import Optional, Protocol

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import ChatPermissions

from gatebot.config import CAPTCHA_CLEANUP_RETRIES
from gatebot.services.captcha.settings_service import FailureAction
from gatebot.utils.retry_utils import retry_on_network_error, with_retry


logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# КЛАССИФИКАЦИЯ ОШИБОК TELEGRAM
# Постоянные ошибки повторять бесполезно: сообщения/чата/пользователя уже нет
# ═══════════════════════════════════════════════════════════════════════════

PERMANENT_ERROR_MARKERS = (
    "message to delete not found",
    "message can't be deleted",
    "bot was kicked",
    "chat not found",
    "group chat was deactivated",
    "bot is not a member",
    "chat_not_found",
    "peer_id_invalid",
)

PERMANENT_UNMUTE_ERROR_MARKERS = PERMANENT_ERROR_MARKERS + (
    "user not found",
    "user_not_participant",
    "user is an administrator",
    "not enough rights",
)

# Права участника после решения капчи или окончания мута
MEMBER_PERMISSIONS = ChatPermissions(
    can_send_messages=True,
    can_send_audios=True,
    can_send_documents=True,
    can_send_photos=True,
    can_send_videos=True,
    can_send_video_notes=True,
    can_send_voice_notes=True,
    can_send_polls=True,
    can_send_other_messages=True,
    can_add_web_page_previews=True,
    can_invite_users=True,
)

# Мут: писать ничего нельзя
MUTED_PERMISSIONS = ChatPermissions(can_send_messages=False)


def _error_text(error: Exception) -> str:
    return (getattr(error, "message", None) or str(error)).lower()


def is_permanent_error(error: Exception) -> bool:
    """True если ошибка Telegram не исчезнет при повторе."""
    text = _error_text(error)
    return any(marker in text for marker in PERMANENT_ERROR_MARKERS)


def is_permanent_unmute_error(error: Exception) -> bool:
    """То же для размута: ещё и пользователь ушёл / стал админом / у бота нет прав."""
    text = _error_text(error)
    return any(marker in text for marker in PERMANENT_UNMUTE_ERROR_MARKERS)


class CaptchaActions(Protocol):
    async def send_challenge(self, chat_id: int, text: str, reply_markup=None) -> int: ...

    async def delete_message(self, chat_id: int, message_id: int) -> bool: ...

    async def apply_failure_action(self, action: str, user_id: int, chat_id: int) -> None: ...

    async def lift_restriction(self, user_id: int, chat_id: int) -> None: ...


class TelegramCaptchaActions:
    """Реализация CaptchaActions поверх aiogram Bot."""

    def __init__(self, bot: Bot, cleanup_retries: Optional[int] = None):
        self.bot = bot
        self.cleanup_retries = CAPTCHA_CLEANUP_RETRIES if cleanup_retries is None else cleanup_retries

    async def send_challenge(self, chat_id: int, text: str, reply_markup=None) -> int:
        message = await retry_on_network_error(
            lambda: self.bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup),
            max_retries=2,
        )
        return message.message_id

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        """
        Удаляет сообщение с повторами при сетевых ошибках.

        Returns:
            True если удалено, False если удалять нечего
            (message_id = 0 или сообщения уже нет)
        """
        if not message_id:
            return False
        try:
            await retry_on_network_error(
                lambda: self.bot.delete_message(chat_id=chat_id, message_id=message_id),
                max_retries=self.cleanup_retries,
            )
            return True
        except TelegramAPIError as e:
            if is_permanent_error(e):
                logger.debug(f"🔍 [CAPTCHA_CLEANUP] Сообщение уже удалено: chat_id={chat_id}, msg_id={message_id}, {e}")
                return False
            raise

    async def apply_failure_action(self, action: str, user_id: int, chat_id: int) -> None:
        action = FailureAction(action)
        if action == FailureAction.KICK:
            # Kick = бан + сразу разбан, пользователь сможет вернуться
            await self.bot.ban_chat_member(chat_id=chat_id, user_id=user_id)
            await self.bot.unban_chat_member(chat_id=chat_id, user_id=user_id, only_if_banned=True)
        elif action == FailureAction.BAN:
            await self.bot.ban_chat_member(chat_id=chat_id, user_id=user_id)
        else:
            await self.bot.restrict_chat_member(chat_id=chat_id, user_id=user_id, permissions=MUTED_PERMISSIONS)
        logger.info(f"⛔ [CAPTCHA] Применено действие {action.value}: user_id={user_id}, chat_id={chat_id}")

    @with_retry(max_retries=2)
    async def lift_restriction(self, user_id: int, chat_id: int) -> None:
        await self.bot.restrict_chat_member(chat_id=chat_id, user_id=user_id, permissions=MEMBER_PERMISSIONS)
        logger.info(f"🔊 [CAPTCHA] Ограничения сняты: user_id={user_id}, chat_id={chat_id}")
