from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Boolean, Index, Text
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ⚙️ Настройки капчи группы (создаются лениво при первом изменении админом)
class CaptchaSettings(Base):
    __tablename__ = "captcha_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(BigInteger, unique=True, nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    # math | text
    captcha_mode = Column(String(10), nullable=False, default="math")
    # Минуты, 1..10
    timeout = Column(Integer, nullable=False, default=2)
    # kick | ban | mute
    failure_action = Column(String(10), nullable=False, default="kick")
    max_attempts = Column(Integer, nullable=False, default=3)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# 🧩 Активная попытка прохождения капчи (не больше одной на пару user/chat)
class CaptchaAttempt(Base):
    __tablename__ = "captcha_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    chat_id = Column(BigInteger, nullable=False)
    answer = Column(String(255), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    # 0 пока сообщение с капчей не отправлено
    message_id = Column(BigInteger, nullable=False, default=0)
    # NULL в старых записях
    refresh_count = Column(Integer, nullable=True, default=0)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_captcha_user_chat", "user_id", "chat_id"),
        Index("idx_captcha_expires_at", "expires_at"),
        # SQLite: ID удалённых попыток не переиспользуются
        {"sqlite_autoincrement": True},
    )


# 📦 Сообщения, отправленные пользователем до прохождения капчи
class StoredMessage(Base):
    __tablename__ = "stored_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    chat_id = Column(BigInteger, nullable=False)
    message_type = Column(Integer, nullable=False)
    content = Column(Text, nullable=True)
    file_id = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    # Ссылка на CaptchaAttempt.id без внешнего ключа
    attempt_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_stored_user_chat", "user_id", "chat_id"),
        Index("idx_stored_attempt", "attempt_id"),
    )


# 🔇 Запланированный размут после проваленной капчи
class CaptchaMutedUser(Base):
    __tablename__ = "captcha_muted_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    chat_id = Column(BigInteger, nullable=False)
    unmute_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_captcha_muted_user_chat", "user_id", "chat_id"),
        Index("idx_captcha_unmute_at", "unmute_at"),
        {"sqlite_autoincrement": True},
    )
