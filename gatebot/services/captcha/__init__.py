# gatebot/services/captcha/__init__.py
"""
Модуль капчи - ядро "ворот" для новых участников группы.

Структура модуля:
- settings_service.py - настройки группы (кэш Redis + валидация)
- attempt_store.py - попытки капчи, атомарный захват через DELETE
- stored_messages.py - сообщения, отправленные до прохождения капчи
- mute_scheduler.py - отложенный размут после провала с mute
- actions.py - вызовы Telegram API (kick/ban/mute/удаление сообщений)
- flow_service.py - выдача капчи, проверка ответа, провал, обновление
- sweepers.py - фоновая очистка, размут, восстановление после рестарта
"""

# ═══════════════════════════════════════════════════════════════════════════
# Экспорт из settings_service
# ═══════════════════════════════════════════════════════════════════════════
from gatebot.services.captcha.settings_service import (
    CaptchaMode,
    FailureAction,
    CaptchaSettingsData,
    get_captcha_settings,
    set_captcha_enabled,
    set_captcha_mode,
    set_captcha_timeout,
    set_captcha_failure_action,
    set_captcha_max_attempts,
)

# ═══════════════════════════════════════════════════════════════════════════
# Экспорт из flow_service
# ═══════════════════════════════════════════════════════════════════════════
from gatebot.services.captcha.flow_service import (
    AnswerStatus,
    AnswerResult,
    RefreshStatus,
    start_challenge,
    submit_answer,
    resolve_failure,
    refresh_challenge_message,
    capture_pending_message,
    disable_captcha,
)

# ═══════════════════════════════════════════════════════════════════════════
# Экспорт из sweepers
# ═══════════════════════════════════════════════════════════════════════════
from gatebot.services.captcha.sweepers import (
    SweepReport,
    sweep_expired_attempts,
    sweep_unmutes,
    recover_pending_attempts,
    start_sweepers,
    wait_in_flight,
)

from gatebot.services.captcha.actions import TelegramCaptchaActions
from gatebot.services.captcha.errors import CaptchaError, InvalidConfigurationError
