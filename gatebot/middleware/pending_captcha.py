import logging

from aiogram.dispatcher.middlewares.base import BaseMiddleware
from aiogram.enums import ChatType
from aiogram.types import Message, TelegramObject
from typing import Callable, Awaitable, Dict, Any

from gatebot.services.captcha.actions import CaptchaActions
from gatebot.services.captcha.flow_service import capture_pending_message

logger = logging.getLogger(__name__)


class PendingCaptchaMiddleware(BaseMiddleware):
    """
    Перехватывает сообщения пользователей с активной капчей.

    Сообщение сохраняется и удаляется из группы, хендлеры его не видят.
    Регистрируется как outer middleware на dp.message.
    """

    def __init__(self, actions: CaptchaActions):
        super().__init__()
        self.actions = actions

    async def __call__(
            self,
            handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
            event: TelegramObject,
            data: Dict[str, Any],
    ) -> Any:
        if not isinstance(event, Message):
            return await handler(event, data)
        if event.chat.type not in (ChatType.GROUP, ChatType.SUPERGROUP):
            return await handler(event, data)

        if await capture_pending_message(self.actions, event):
            logger.info(
                f"📦 [CAPTCHA] Сообщение до прохождения капчи перехвачено: "
                f"user_id={event.from_user.id}, chat_id={event.chat.id}"
            )
            return None

        return await handler(event, data)
