import logging

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from contextlib import asynccontextmanager

from gatebot.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW
from gatebot.database.models import Base

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    # У SQLite (aiosqlite) нет настроек размера пула
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,  # Проверка соединения перед использованием
        "pool_recycle": 3600,   # Переподключение каждый час
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
    }


# создаем движок и фабрику сессий
engine = create_async_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))
async_session = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session():
    """Асинхронный контекстный менеджер для получения сессии БД"""
    session = async_session()
    try:
        yield session
    finally:
        await session.close()


async def init_db():
    """Инициализация базы данных"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ База данных инициализирована")
