"""
Unit тесты middleware перехвата сообщений до прохождения капчи.
"""
from unittest.mock import AsyncMock

import pytest

from gatebot.middleware.pending_captcha import PendingCaptchaMiddleware
from gatebot.services.captcha import attempt_store, stored_messages


pytestmark = pytest.mark.usefixtures("database")

USER_ID = 777
CHAT_ID = -100777


@pytest.mark.asyncio
async def test_message_from_gated_user_is_swallowed(actions, message_factory):
    """Тест: у пользователя есть капча -> хендлер не вызывается, сообщение сохранено."""
    attempt = await attempt_store.create_attempt(USER_ID, CHAT_ID, "42", timeout_minutes=2)
    middleware = PendingCaptchaMiddleware(actions)
    handler = AsyncMock(return_value="handled")

    result = await middleware(handler, message_factory(user_id=USER_ID, chat_id=CHAT_ID, text="ку"), {})

    assert result is None
    handler.assert_not_called()
    assert await stored_messages.count_messages_for_attempt(attempt.id) == 1


@pytest.mark.asyncio
async def test_regular_message_passes_through(actions, message_factory):
    middleware = PendingCaptchaMiddleware(actions)
    handler = AsyncMock(return_value="handled")

    result = await middleware(handler, message_factory(user_id=USER_ID, chat_id=CHAT_ID), {})

    assert result == "handled"
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_private_chat_is_not_checked(actions, message_factory):
    await attempt_store.create_attempt(USER_ID, USER_ID, "42", timeout_minutes=2)
    middleware = PendingCaptchaMiddleware(actions)
    handler = AsyncMock(return_value="handled")

    result = await middleware(handler, message_factory(user_id=USER_ID, chat_id=USER_ID, chat_type="private"), {})

    assert result == "handled"
    actions.delete_message.assert_not_called()
