"""
Unit тесты основной логики капчи: выдача, ответ, провал, обновление.
"""
import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from aiogram.exceptions import TelegramBadRequest, TelegramNetworkError
from sqlalchemy import select

from gatebot.database.models import CaptchaMutedUser, utcnow
from gatebot.database.record_store import transaction
from gatebot.services.captcha import attempt_store, flow_service, mute_scheduler, stored_messages
from gatebot.services.captcha.flow_service import AnswerStatus, RefreshStatus
from gatebot.services.captcha.settings_service import (
    get_captcha_settings,
    set_captcha_enabled,
    set_captcha_failure_action,
    set_captcha_max_attempts,
)
from gatebot.services.captcha.stored_messages import MessageType


pytestmark = pytest.mark.usefixtures("database")

USER_ID = 444
CHAT_ID = -100444


async def _enabled_chat(failure_action="kick", max_attempts=3):
    await set_captcha_enabled(CHAT_ID, True)
    await set_captcha_failure_action(CHAT_ID, failure_action)
    await set_captcha_max_attempts(CHAT_ID, max_attempts)


async def _started(actions, answer="42"):
    return await flow_service.start_challenge(actions, USER_ID, CHAT_ID, "Сколько будет 40 + 2?", answer)


@pytest.mark.asyncio
async def test_start_challenge_disabled_chat(actions):
    """Тест: капча выключена -> попытка не создаётся."""
    assert await _started(actions) is None

    actions.send_challenge.assert_not_called()
    assert await attempt_store.list_all_attempts() == []


@pytest.mark.asyncio
async def test_start_challenge_sends_and_attaches_message(actions):
    await _enabled_chat()

    attempt = await _started(actions)

    assert attempt.message_id == 777
    actions.send_challenge.assert_awaited_once_with(CHAT_ID, "Сколько будет 40 + 2?", None)
    stored = await attempt_store.get_attempt_by_id(attempt.id)
    assert stored.message_id == 777


@pytest.mark.asyncio
async def test_start_challenge_send_failure_removes_attempt(actions):
    """Тест: не удалось отправить капчу -> попытка удалена, ошибка проброшена."""
    await _enabled_chat()
    actions.send_challenge.side_effect = TelegramBadRequest(method=MagicMock(), message="Bad Request: chat not found")

    with pytest.raises(TelegramBadRequest):
        await _started(actions)

    assert await attempt_store.list_all_attempts() == []


@pytest.mark.asyncio
async def test_correct_answer_solves(actions):
    """Тест: верный ответ снимает ограничения и возвращает задержанные сообщения."""
    await _enabled_chat()
    attempt = await _started(actions)
    await stored_messages.store_message(USER_ID, CHAT_ID, attempt.id, MessageType.TEXT, content="hi")

    result = await flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, " 42 ")

    assert result.status == AnswerStatus.SOLVED
    assert [m.content for m in result.withheld_messages] == ["hi"]
    actions.lift_restriction.assert_awaited_once_with(USER_ID, CHAT_ID)
    actions.delete_message.assert_awaited_once_with(CHAT_ID, 777)
    actions.apply_failure_action.assert_not_called()
    assert await attempt_store.get_attempt_by_id(attempt.id) is None
    assert await stored_messages.count_messages_for_attempt(attempt.id) == 0


@pytest.mark.asyncio
async def test_answer_without_attempt(actions):
    result = await flow_service.submit_answer(actions, 1, USER_ID, CHAT_ID, "42")

    assert result.status == AnswerStatus.NOT_FOUND
    actions.lift_restriction.assert_not_called()


@pytest.mark.asyncio
async def test_answer_to_stale_challenge(actions):
    """Тест: кнопка старой капчи после пересоздания попытки не принимается."""
    await _enabled_chat()
    old = await _started(actions)
    await _started(actions)

    result = await flow_service.submit_answer(actions, old.id, USER_ID, CHAT_ID, "42")

    assert result.status == AnswerStatus.STALE
    actions.lift_restriction.assert_not_called()


@pytest.mark.asyncio
async def test_wrong_answer_counts_attempts(actions):
    await _enabled_chat(max_attempts=3)
    attempt = await _started(actions)

    result = await flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, "13")

    assert result.status == AnswerStatus.WRONG
    assert result.attempts == 1
    assert result.remaining == 2
    actions.apply_failure_action.assert_not_called()


@pytest.mark.asyncio
async def test_max_wrong_answers_fail_with_action(actions):
    """Тест: исчерпаны попытки -> действие провала, попытка и сообщения удалены."""
    await _enabled_chat(failure_action="ban", max_attempts=2)
    attempt = await _started(actions)
    await stored_messages.store_message(USER_ID, CHAT_ID, attempt.id, MessageType.TEXT, content="spam")

    await flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, "1")
    result = await flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, "2")

    assert result.status == AnswerStatus.FAILED
    assert result.attempts == 2
    actions.apply_failure_action.assert_awaited_once_with("ban", USER_ID, CHAT_ID)
    assert await attempt_store.get_attempt_by_id(attempt.id) is None
    assert await stored_messages.count_messages_for_attempt(attempt.id) == 0
    assert await mute_scheduler.get_users_to_unmute() == []


@pytest.mark.asyncio
async def test_mute_failure_schedules_unmute(actions):
    await _enabled_chat(failure_action="mute", max_attempts=1)
    attempt = await _started(actions)

    result = await flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, "0")

    assert result.status == AnswerStatus.FAILED
    actions.apply_failure_action.assert_awaited_once_with("mute", USER_ID, CHAT_ID)
    # unmute_at в будущем, к размуту пока никого
    assert await mute_scheduler.get_users_to_unmute() == []
    async with transaction() as session:
        records = (await session.execute(select(CaptchaMutedUser))).scalars().all()
    assert [(r.user_id, r.chat_id) for r in records] == [(USER_ID, CHAT_ID)]
    assert records[0].unmute_at > utcnow() + timedelta(hours=23)


@pytest.mark.asyncio
async def test_resolve_failure_returns_none_if_already_claimed(actions):
    await _enabled_chat()
    attempt = await _started(actions)
    assert await attempt_store.claim_attempt_by_id(attempt.id, USER_ID, CHAT_ID)

    assert await flow_service.resolve_failure(actions, attempt) is None
    actions.apply_failure_action.assert_not_called()


@pytest.mark.asyncio
async def test_failure_action_error_does_not_schedule_unmute(actions):
    """Тест: mute не применился -> размут не планируется."""
    await _enabled_chat(failure_action="mute")
    attempt = await _started(actions)
    actions.apply_failure_action.side_effect = TelegramBadRequest(
        method=MagicMock(), message="Bad Request: not enough rights to restrict/unrestrict chat member"
    )

    result = await flow_service.resolve_failure(actions, attempt)

    assert result.action_applied is False
    assert result.unmute_scheduled is False
    assert await attempt_store.get_attempt_by_id(attempt.id) is None


@pytest.mark.asyncio
async def test_success_and_timeout_race_single_outcome(actions):
    """Тест: верный ответ и провал одновременно -> применяется ровно один исход."""
    await _enabled_chat(failure_action="kick")
    attempt = await _started(actions)
    settings = await get_captcha_settings(CHAT_ID)

    answer_result, failure_result = await asyncio.gather(
        flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, "42"),
        flow_service.resolve_failure(actions, attempt, settings),
    )

    solved = answer_result.status == AnswerStatus.SOLVED
    failed = failure_result is not None
    assert solved != failed
    assert actions.lift_restriction.await_count == (1 if solved else 0)
    assert actions.apply_failure_action.await_count == (1 if failed else 0)


@pytest.mark.asyncio
async def test_lift_restriction_error_still_solves(actions):
    await _enabled_chat()
    attempt = await _started(actions)
    actions.lift_restriction.side_effect = TelegramNetworkError(method=MagicMock(), message="timeout")

    result = await flow_service.submit_answer(actions, attempt.id, USER_ID, CHAT_ID, "42")

    assert result.status == AnswerStatus.SOLVED
    assert await attempt_store.get_attempt_by_id(attempt.id) is None


@pytest.mark.asyncio
async def test_refresh_replaces_message(actions):
    """Тест: обновление - новое сообщение, новый ответ, старое удалено."""
    await _enabled_chat()
    attempt = await _started(actions)
    actions.send_challenge.return_value = 778

    result = await flow_service.refresh_challenge_message(actions, attempt.id, USER_ID, CHAT_ID, "5 + 5?", "10")

    assert result.status == RefreshStatus.REFRESHED
    assert result.attempt.message_id == 778
    assert result.attempt.answer == "10"
    assert result.attempt.refresh_count == 1
    actions.delete_message.assert_awaited_once_with(CHAT_ID, 777)


@pytest.mark.asyncio
async def test_refresh_cooldown(actions, fake_redis):
    await _enabled_chat()
    attempt = await _started(actions)

    first = await flow_service.refresh_challenge_message(actions, attempt.id, USER_ID, CHAT_ID, "q", "1")
    second = await flow_service.refresh_challenge_message(actions, attempt.id, USER_ID, CHAT_ID, "q", "2")

    assert first.status == RefreshStatus.REFRESHED
    assert second.status == RefreshStatus.COOLDOWN
    assert (await attempt_store.get_attempt_by_id(attempt.id)).answer == "1"


@pytest.mark.asyncio
async def test_refresh_limit(actions, fake_redis):
    """Тест: больше трёх обновлений нельзя."""
    await _enabled_chat()
    attempt = await _started(actions)

    for i in range(3):
        await fake_redis.flushall()
        result = await flow_service.refresh_challenge_message(actions, attempt.id, USER_ID, CHAT_ID, "q", str(i))
        assert result.status == RefreshStatus.REFRESHED

    await fake_redis.flushall()
    result = await flow_service.refresh_challenge_message(actions, attempt.id, USER_ID, CHAT_ID, "q", "x")

    assert result.status == RefreshStatus.LIMIT_REACHED


@pytest.mark.asyncio
async def test_refresh_someone_elses_attempt(actions):
    await _enabled_chat()
    attempt = await _started(actions)

    result = await flow_service.refresh_challenge_message(actions, attempt.id, USER_ID + 1, CHAT_ID, "q", "1")

    assert result.status == RefreshStatus.NOT_FOUND
    assert actions.send_challenge.await_count == 1


@pytest.mark.asyncio
async def test_capture_pending_message(actions, message_factory):
    """Тест: сообщение пользователя с активной капчей сохраняется и удаляется."""
    await _enabled_chat()
    attempt = await _started(actions)
    message = message_factory(message_id=55, user_id=USER_ID, chat_id=CHAT_ID, text="купите слона")

    assert await flow_service.capture_pending_message(actions, message) is True

    saved = await stored_messages.get_messages_for_attempt(attempt.id)
    assert [m.content for m in saved] == ["купите слона"]
    actions.delete_message.assert_awaited_with(CHAT_ID, 55)


@pytest.mark.asyncio
async def test_capture_ignores_users_without_attempt(actions, message_factory):
    message = message_factory(user_id=USER_ID, chat_id=CHAT_ID)

    assert await flow_service.capture_pending_message(actions, message) is False
    actions.delete_message.assert_not_called()


@pytest.mark.asyncio
async def test_disable_captcha_releases_pending_users(actions):
    """Тест: выключение капчи -> попытки, сохранённые сообщения и капча удалены, ограничения сняты."""
    await _enabled_chat()
    attempt = await _started(actions)
    await stored_messages.store_message(USER_ID, CHAT_ID, attempt.id, MessageType.TEXT, content="ку")

    assert await flow_service.disable_captcha(actions, CHAT_ID) == 1

    assert (await get_captcha_settings(CHAT_ID)).enabled is False
    assert await attempt_store.list_all_attempts() == []
    assert await stored_messages.count_messages_for_attempt(attempt.id) == 0
    assert await stored_messages.get_messages_for_user(USER_ID, CHAT_ID) == []
    actions.delete_message.assert_awaited_with(CHAT_ID, 777)
    actions.lift_restriction.assert_awaited_once_with(USER_ID, CHAT_ID)


@pytest.mark.asyncio
async def test_disable_captcha_lift_error_is_logged(actions):
    await _enabled_chat()
    await _started(actions)
    actions.lift_restriction.side_effect = TelegramBadRequest(method=MagicMock(), message="Bad Request: user not found")

    assert await flow_service.disable_captcha(actions, CHAT_ID) == 1
    assert await attempt_store.list_all_attempts() == []
