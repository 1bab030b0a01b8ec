# gatebot/services/captcha/errors.py
"""
Исключения модуля капчи.

Ошибки БД (sqlalchemy.exc.SQLAlchemyError) и Telegram API
(aiogram.exceptions.TelegramAPIError) не оборачиваются и
пробрасываются как есть.
"""


class CaptchaError(Exception):
    """Базовое исключение модуля капчи."""
    pass


class InvalidConfigurationError(CaptchaError):
    """
    Недопустимое значение настройки капчи.

    Выбрасывается до записи в БД, настройки группы не меняются.
    """

    def __init__(self, field: str, value, message: str):
        self.field = field
        self.value = value
        super().__init__(message)


class InvalidCaptchaModeError(InvalidConfigurationError):
    def __init__(self, value):
        super().__init__("captcha_mode", value, f"Недопустимый режим капчи: {value!r} (math или text)")


class InvalidTimeoutError(InvalidConfigurationError):
    def __init__(self, value):
        super().__init__("timeout", value, f"Таймаут капчи должен быть от 1 до 10 минут, получено: {value!r}")


class InvalidFailureActionError(InvalidConfigurationError):
    def __init__(self, value):
        super().__init__("failure_action", value, f"Недопустимое действие при провале: {value!r} (kick, ban или mute)")


class InvalidMaxAttemptsError(InvalidConfigurationError):
    def __init__(self, value):
        super().__init__("max_attempts", value, f"Количество попыток должно быть от 1 до 10, получено: {value!r}")
