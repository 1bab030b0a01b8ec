# gatebot/services/captcha/settings_service.py
"""
Сервис настроек капчи - чтение с кэшем и запись с валидацией.

Отвечает за:
- Получение настроек группы (дефолты, если группа ещё не настраивалась)
- Проверку значений до записи в БД
- Создание строки настроек при первом изменении
- Сброс кэша Redis после каждой записи
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gatebot.config import CAPTCHA_SETTINGS_CACHE_TTL
from gatebot.database.models import CaptchaSettings, utcnow
from gatebot.database.record_store import get_record, transaction, update_where
from gatebot.services import settings_cache
from gatebot.services.captcha.errors import (
    InvalidCaptchaModeError,
    InvalidFailureActionError,
    InvalidMaxAttemptsError,
    InvalidTimeoutError,
)


# Логгер для отслеживания операций с настройками
logger = logging.getLogger(__name__)

# Ключ кэша настроек группы
CAPTCHA_SETTINGS_KEY = "gatebot:captcha_settings:{chat_id}"

# Допустимые диапазоны
MIN_TIMEOUT, MAX_TIMEOUT = 1, 10
MIN_ATTEMPTS, MAX_ATTEMPTS = 1, 10


class CaptchaMode(str, Enum):
    """
    Тип задания капчи.

    MATH - пример вида "3 + 4"
    TEXT - распознать текст на картинке
    """
    MATH = "math"
    TEXT = "text"


class FailureAction(str, Enum):
    """
    Что делать с пользователем, который не прошёл капчу.

    KICK - исключить (ban + unban, можно вернуться)
    BAN - заблокировать
    MUTE - запретить писать, снять ограничение через CAPTCHA_MUTE_DURATION_HOURS
    """
    KICK = "kick"
    BAN = "ban"
    MUTE = "mute"


@dataclass
class CaptchaSettingsData:
    """
    Настройки капчи группы.

    Строка в БД создаётся при первом изменении, до этого действуют дефолты.
    """
    chat_id: int
    enabled: bool = False
    captcha_mode: str = CaptchaMode.MATH.value
    # Минуты
    timeout: int = 2
    failure_action: str = FailureAction.KICK.value
    max_attempts: int = 3


def _defaults(chat_id: int) -> CaptchaSettingsData:
    return CaptchaSettingsData(chat_id=chat_id)


async def _load_settings(chat_id: int) -> dict:
    try:
        async with transaction() as session:
            row = await get_record(session, CaptchaSettings, CaptchaSettings.chat_id == chat_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_SETTINGS] Ошибка чтения настроек: chat_id={chat_id}, error={e}")
        raise

    if row is None:
        return asdict(_defaults(chat_id))

    return asdict(CaptchaSettingsData(
        chat_id=row.chat_id,
        enabled=bool(row.enabled),
        captcha_mode=row.captcha_mode,
        timeout=row.timeout,
        failure_action=row.failure_action,
        max_attempts=row.max_attempts,
    ))


async def get_captcha_settings(chat_id: int) -> CaptchaSettingsData:
    """
    Получает настройки капчи для группы.

    Сначала кэш Redis, при промахе БД. Если группа не настраивалась -
    дефолты (капча выключена, math, 2 минуты, kick, 3 попытки).

    Args:
        chat_id: ID группы

    Returns:
        CaptchaSettingsData
    """
    data = await settings_cache.get_or_load(
        CAPTCHA_SETTINGS_KEY.format(chat_id=chat_id),
        lambda: _load_settings(chat_id),
        CAPTCHA_SETTINGS_CACHE_TTL,
    )
    return CaptchaSettingsData(**data)


async def invalidate_captcha_settings(chat_id: int) -> None:
    await settings_cache.invalidate(CAPTCHA_SETTINGS_KEY.format(chat_id=chat_id))


async def _save_settings(chat_id: int, **values) -> None:
    """
    Записывает поля настроек, создавая строку при необходимости.

    Если строку параллельно создал другой запрос (нарушение UNIQUE),
    повторяем запись как UPDATE.
    """
    now = utcnow()
    try:
        try:
            async with transaction() as session:
                row = await get_record(session, CaptchaSettings, CaptchaSettings.chat_id == chat_id)
                if row is None:
                    defaults = asdict(_defaults(chat_id))
                    defaults.update(values)
                    session.add(CaptchaSettings(**defaults, created_at=now, updated_at=now))
                else:
                    for field, value in values.items():
                        setattr(row, field, value)
                    row.updated_at = now
        except IntegrityError:
            async with transaction() as session:
                await update_where(
                    session,
                    CaptchaSettings,
                    {**values, "updated_at": now},
                    CaptchaSettings.chat_id == chat_id,
                )
    except SQLAlchemyError as e:
        logger.error(f"❌ [CAPTCHA_SETTINGS] Ошибка сохранения настроек: chat_id={chat_id}, values={values}, error={e}")
        raise

    await invalidate_captcha_settings(chat_id)
    logger.info(f"⚙️ [CAPTCHA_SETTINGS] Настройки обновлены: chat_id={chat_id}, {values}")


async def set_captcha_enabled(chat_id: int, enabled: bool) -> None:
    await _save_settings(chat_id, enabled=bool(enabled))


async def set_captcha_mode(chat_id: int, mode: str) -> None:
    """Режим капчи: math или text."""
    try:
        mode = CaptchaMode(mode).value
    except ValueError:
        raise InvalidCaptchaModeError(mode) from None
    await _save_settings(chat_id, captcha_mode=mode)


async def set_captcha_timeout(chat_id: int, timeout: int) -> None:
    """Таймаут в минутах, от 1 до 10."""
    if isinstance(timeout, bool) or not isinstance(timeout, int) or not MIN_TIMEOUT <= timeout <= MAX_TIMEOUT:
        raise InvalidTimeoutError(timeout)
    await _save_settings(chat_id, timeout=timeout)


async def set_captcha_failure_action(chat_id: int, action: str) -> None:
    """Действие при провале: kick, ban или mute."""
    try:
        action = FailureAction(action).value
    except ValueError:
        raise InvalidFailureActionError(action) from None
    await _save_settings(chat_id, failure_action=action)


async def set_captcha_max_attempts(chat_id: int, max_attempts: int) -> None:
    """Количество попыток, от 1 до 10."""
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or not MIN_ATTEMPTS <= max_attempts <= MAX_ATTEMPTS:
        raise InvalidMaxAttemptsError(max_attempts)
    await _save_settings(chat_id, max_attempts=max_attempts)
