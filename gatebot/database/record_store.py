# gatebot/database/record_store.py
"""
Тонкая обёртка над AsyncSession для хранилищ капчи.

Отвечает за:
- Транзакции (одна сессия = одно соединение из пула)
- Удаление/обновление по условию с возвратом количества строк
- Сериализацию операций над парой (user_id, chat_id)
"""

import hashlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatebot.database import session as db_session


logger = logging.getLogger(__name__)


@asynccontextmanager
async def transaction():
    """
    Открывает сессию и транзакцию.

    Коммит при нормальном выходе, откат при любом исключении.
    """
    async with db_session.get_session() as session:
        async with session.begin():
            yield session


async def delete_where(session: AsyncSession, model, *criteria) -> int:
    """Удаляет строки по условию и возвращает количество удалённых строк."""
    result = await session.execute(
        delete(model).where(*criteria).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def update_where(session: AsyncSession, model, values: Dict[str, Any], *criteria) -> int:
    """Обновляет строки по условию и возвращает количество изменённых строк."""
    result = await session.execute(
        update(model).where(*criteria).values(**values).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def get_record(session: AsyncSession, model, *criteria, order_by=None, for_update: bool = False) -> Optional[Any]:
    """Возвращает первую строку по условию или None."""
    stmt = select(model).where(*criteria)
    if order_by is not None:
        stmt = stmt.order_by(order_by)
    stmt = stmt.limit(1)
    if for_update:
        # SQLite игнорирует FOR UPDATE, там запись и так сериализована
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def pair_lock_key(user_id: int, chat_id: int) -> int:
    """Стабильный 64-битный ключ advisory lock для пары (user_id, chat_id)."""
    digest = hashlib.blake2b(f"{user_id}:{chat_id}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


async def lock_pair(session: AsyncSession, user_id: int, chat_id: int) -> None:
    """
    Блокирует пару (user_id, chat_id) до конца текущей транзакции.

    PostgreSQL: pg_advisory_xact_lock, снимается при COMMIT/ROLLBACK.
    SQLite: ничего не делает, пишущие транзакции там идут по одной.
    """
    if session.bind is None or session.bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(:key)"),
        {"key": pair_lock_key(user_id, chat_id)},
    )
