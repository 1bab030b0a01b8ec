# gatebot/services/captcha/sweepers.py
"""
Фоновые задачи капчи.

- sweep_expired_attempts: истёкшие попытки -> действие провала
- sweep_unmutes: истёкшие муты -> снятие ограничений
- recover_pending_attempts: разбор попыток, оставшихся после перезапуска

Каждая запись сначала захватывается (DELETE по ID) и только потом
обрабатывается. Несколько воркеров могут работать одновременно:
запись обработает ровно один из них.

Захват и обработка записи выполняются отдельной задачей под
asyncio.shield: таймаут или отмена прохода не оставляет захваченную
запись без обработки. Если обработка упала, запись возвращается
в таблицу и будет взята следующим проходом.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Set

from aiogram.exceptions import TelegramAPIError

from gatebot.config import (
    CAPTCHA_CLEANUP_INTERVAL_SECONDS,
    CAPTCHA_SWEEP_TIMEOUT_SECONDS,
    CAPTCHA_UNMUTE_INTERVAL_SECONDS,
    CAPTCHA_UNMUTE_RETRY_SECONDS,
)
from gatebot.database.models import CaptchaAttempt, CaptchaMutedUser, utcnow
from gatebot.services.captcha.actions import CaptchaActions, is_permanent_unmute_error
from gatebot.services.captcha.attempt_store import (
    claim_attempt_by_id,
    list_all_attempts,
    list_expired_attempts,
    restore_attempt,
)
from gatebot.services.captcha.flow_service import finalize_failure, safe_delete_message
from gatebot.services.captcha.mute_scheduler import (
    create_muted_user,
    delete_muted_user,
    get_users_to_unmute,
)
from gatebot.services.captcha.settings_service import get_captcha_settings
from gatebot.services.captcha.stored_messages import delete_messages_for_attempt


logger = logging.getLogger(__name__)

# Задачи, которые сейчас обрабатывают захваченные записи
_in_flight: Set[asyncio.Task] = set()


@dataclass
class SweepReport:
    """Итог одного прохода очистки."""
    scanned: int = 0
    # Обработаны этим воркером
    resolved: int = 0
    # Уже забраны кем-то другим
    skipped: int = 0
    # Запись возвращена для повтора (временная ошибка)
    rearmed: int = 0
    # Размут отброшен: пользователя/чата больше нет
    dropped: int = 0


async def _protected(unit: Awaitable[None]) -> None:
    """Выполняет захват и обработку записи так, что отмена прохода её не прерывает."""
    task = asyncio.ensure_future(unit)
    _in_flight.add(task)
    task.add_done_callback(_in_flight.discard)
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        logger.warning("⏳ [CAPTCHA_SWEEP] Проход прерван, захваченная запись обрабатывается до конца")
        raise


async def wait_in_flight(timeout: Optional[float] = None) -> None:
    """Ждёт обработку уже захваченных записей (при остановке воркера)."""
    if not _in_flight:
        return
    logger.info(f"⏳ [CAPTCHA_SWEEP] Ждём обработку захваченных записей: {len(_in_flight)}")
    done, pending = await asyncio.wait(set(_in_flight), timeout=timeout)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"❌ [CAPTCHA_SWEEP] Ошибка обработки записи: {task.exception()}")
    if pending:
        logger.error(f"❌ [CAPTCHA_SWEEP] Не дождались обработки записей: {len(pending)}")


async def _resolve_expired(actions: CaptchaActions, attempt: CaptchaAttempt, report: SweepReport) -> None:
    if not await claim_attempt_by_id(attempt.id, attempt.user_id, attempt.chat_id):
        report.skipped += 1
        return

    try:
        settings = await get_captcha_settings(attempt.chat_id)
        result = await finalize_failure(actions, attempt, settings.failure_action)
    except Exception:
        logger.exception(
            f"❌ [CAPTCHA_CLEANUP] Ошибка обработки провала: attempt_id={attempt.id}, "
            f"user_id={attempt.user_id}, chat_id={attempt.chat_id}"
        )
        if await restore_attempt(attempt):
            report.rearmed += 1
        return

    report.resolved += 1
    logger.info(
        f"⏰ [CAPTCHA_CLEANUP] Таймаут капчи: user_id={attempt.user_id}, chat_id={attempt.chat_id}, "
        f"action={result.action}, applied={result.action_applied}, "
        f"удалено сообщений: {result.deleted_messages}"
    )


async def _resolve_unmute(actions: CaptchaActions, entry: CaptchaMutedUser, report: SweepReport) -> None:
    if not await delete_muted_user(entry.id):
        report.skipped += 1
        return

    try:
        await actions.lift_restriction(entry.user_id, entry.chat_id)
        report.resolved += 1
        return
    except TelegramAPIError as e:
        if is_permanent_unmute_error(e):
            report.dropped += 1
            logger.info(
                f"ℹ️ [CAPTCHA_UNMUTE] Размут невозможен, запись удалена: "
                f"user_id={entry.user_id}, chat_id={entry.chat_id}, {e}"
            )
            return
        logger.warning(
            f"⚠️ [CAPTCHA_UNMUTE] Ошибка размута, повтор через {CAPTCHA_UNMUTE_RETRY_SECONDS}с: "
            f"user_id={entry.user_id}, chat_id={entry.chat_id}, {e}"
        )
    except Exception:
        logger.exception(
            f"❌ [CAPTCHA_UNMUTE] Ошибка размута, повтор через {CAPTCHA_UNMUTE_RETRY_SECONDS}с: "
            f"user_id={entry.user_id}, chat_id={entry.chat_id}"
        )

    report.rearmed += 1
    await create_muted_user(
        entry.user_id,
        entry.chat_id,
        utcnow() + timedelta(seconds=CAPTCHA_UNMUTE_RETRY_SECONDS),
    )


async def sweep_expired_attempts(actions: CaptchaActions) -> SweepReport:
    """Один проход очистки истёкших попыток."""
    report = SweepReport()
    expired = await list_expired_attempts()
    if not expired:
        return report

    logger.info(f"🧹 [CAPTCHA_CLEANUP] Найдено истёкших попыток: {len(expired)}")
    for attempt in expired:
        report.scanned += 1
        await _protected(_resolve_expired(actions, attempt, report))

    return report


async def sweep_unmutes(actions: CaptchaActions) -> SweepReport:
    """
    Один проход размута.

    Временная ошибка Telegram: обязательство создаётся заново
    через CAPTCHA_UNMUTE_RETRY_SECONDS. Постоянная (пользователь ушёл,
    бот не админ и т.п.): запись просто отбрасывается.
    """
    report = SweepReport()
    due = await get_users_to_unmute()
    if not due:
        return report

    logger.info(f"🔊 [CAPTCHA_UNMUTE] Пользователей к размуту: {len(due)}")
    for entry in due:
        report.scanned += 1
        await _protected(_resolve_unmute(actions, entry, report))

    return report


async def recover_pending_attempts(actions: CaptchaActions) -> SweepReport:
    """
    Разбор попыток после перезапуска.

    Истёкшие - провал с действием из настроек группы.
    Ещё активные - удаляются вместе с сообщением капчи, пользователь
    должен перезайти в группу, чтобы получить новую капчу.
    """
    report = SweepReport()
    pending = await list_all_attempts()
    if not pending:
        logger.info("✅ [CAPTCHA_RECOVERY] Незавершённых капч нет")
        return report

    logger.info(f"🔁 [CAPTCHA_RECOVERY] Незавершённых капч: {len(pending)}")
    now = utcnow()
    for attempt in pending:
        report.scanned += 1
        if attempt.expires_at <= now:
            await _resolve_expired(actions, attempt, report)
            continue

        if not await claim_attempt_by_id(attempt.id, attempt.user_id, attempt.chat_id):
            report.skipped += 1
            continue
        await delete_messages_for_attempt(attempt.id)
        await safe_delete_message(actions, attempt.chat_id, attempt.message_id)
        report.resolved += 1

    logger.info(f"✅ [CAPTCHA_RECOVERY] Обработано: {report.resolved}, пропущено: {report.skipped}")
    return report


async def run_periodic(
    name: str,
    interval: float,
    job: Callable[[], Awaitable[SweepReport]],
    timeout: float = CAPTCHA_SWEEP_TIMEOUT_SECONDS,
) -> None:
    """
    Запускает job каждые interval секунд до отмены задачи.

    Проход ограничен timeout секундами: по таймауту следующие записи
    не берутся, а уже захваченная дорабатывается. Ошибка прохода
    логируется, следующий проход выполняется по расписанию.
    """
    logger.info(f"🔄 [{name}] Фоновая задача запущена (интервал {interval}с)")
    while True:
        try:
            await asyncio.wait_for(job(), timeout=timeout)
        except asyncio.CancelledError:
            logger.info(f"🛑 [{name}] Фоновая задача остановлена")
            raise
        except asyncio.TimeoutError:
            logger.error(f"❌ [{name}] Проход не уложился в {timeout}с")
        except Exception:
            logger.exception(f"❌ [{name}] Ошибка прохода")

        await asyncio.sleep(interval)


def start_sweepers(actions: CaptchaActions) -> List[asyncio.Task]:
    """Создаёт задачи очистки попыток и размута."""
    return [
        asyncio.create_task(
            run_periodic(
                "CAPTCHA_CLEANUP",
                CAPTCHA_CLEANUP_INTERVAL_SECONDS,
                lambda: sweep_expired_attempts(actions),
            ),
            name="captcha_cleanup",
        ),
        asyncio.create_task(
            run_periodic(
                "CAPTCHA_UNMUTE",
                CAPTCHA_UNMUTE_INTERVAL_SECONDS,
                lambda: sweep_unmutes(actions),
            ),
            name="captcha_unmute",
        ),
    ]
