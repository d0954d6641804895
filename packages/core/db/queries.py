"""
Запросы к базе данных.

Функции принимают AsyncSession и НЕ делают commit: границы транзакции
определяет вызывающий сервис.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    ActivityLog,
    BotConfig,
    DailyStats,
    DAILY_COUNTERS,
    Ticket,
    TicketMessage,
)

logger = logging.getLogger(__name__)


# ==============================================================================
# ТИКЕТЫ
# ==============================================================================


async def get_ticket(session: AsyncSession, user_id: str, phone_number: str) -> Optional[Ticket]:
    """
    Получает тикет контакта.

    Args:
        session: Сессия БД
        user_id: ID пользователя дашборда
        phone_number: Номер телефона контакта (ID тикета)

    Returns:
        Ticket или None
    """
    return await session.get(Ticket, (user_id, phone_number))


# ==============================================================================
# ИСТОРИЯ СООБЩЕНИЙ
# ==============================================================================


async def add_ticket_message(
    session: AsyncSession,
    user_id: str,
    ticket_id: str,
    *,
    message_type: str,
    text: Optional[str],
    sender: str,
    timestamp: datetime,
    url: Optional[str] = None,
) -> TicketMessage:
    record = TicketMessage(
        user_id=user_id,
        ticket_id=ticket_id,
        type=message_type,
        text=text,
        url=url,
        sender=sender,
        timestamp=timestamp,
    )
    session.add(record)
    await session.flush()
    return record


async def trim_ticket_messages(session: AsyncSession, user_id: str, ticket_id: str, limit: int) -> int:
    """
    Удаляет самые старые сообщения тикета сверх лимита.

    Порядок: timestamp DESC, при равенстве - id DESC (последняя вставка новее).

    Returns:
        Количество удаленных записей
    """
    stmt = (
        select(TicketMessage.id)
        .where(TicketMessage.user_id == user_id, TicketMessage.ticket_id == ticket_id)
        .order_by(TicketMessage.timestamp.desc(), TicketMessage.id.desc())
        .offset(limit)
    )
    result = await session.execute(stmt)
    excess_ids = list(result.scalars().all())

    if excess_ids:
        await session.execute(delete(TicketMessage).where(TicketMessage.id.in_(excess_ids)))
        logger.info(f"[DB] 🧹 Удалено {len(excess_ids)} старых сообщений тикета {ticket_id}")

    return len(excess_ids)


async def get_latest_messages(
    session: AsyncSession,
    user_id: str,
    ticket_id: str,
    limit: int
) -> List[TicketMessage]:
    """
    Возвращает последние `limit` сообщений тикета в хронологическом порядке.

    Выборка идет по убыванию времени с лимитом, затем разворачивается.
    """
    stmt = (
        select(TicketMessage)
        .where(TicketMessage.user_id == user_id, TicketMessage.ticket_id == ticket_id)
        .order_by(TicketMessage.timestamp.desc(), TicketMessage.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    messages = list(result.scalars().all())
    messages.reverse()
    return messages


async def count_ticket_messages(session: AsyncSession, user_id: str, ticket_id: str) -> int:
    from sqlalchemy import func

    stmt = select(func.count(TicketMessage.id)).where(
        TicketMessage.user_id == user_id,
        TicketMessage.ticket_id == ticket_id,
    )
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


# ==============================================================================
# ЖУРНАЛ АКТИВНОСТИ
# ==============================================================================


async def add_activity(session: AsyncSession, user_id: str, message: str, timestamp: datetime) -> ActivityLog:
    entry = ActivityLog(user_id=user_id, message=message, timestamp=timestamp)
    session.add(entry)
    await session.flush()
    return entry


async def trim_activity(session: AsyncSession, user_id: str, limit: int) -> int:
    stmt = (
        select(ActivityLog.id)
        .where(ActivityLog.user_id == user_id)
        .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
        .offset(limit)
    )
    result = await session.execute(stmt)
    excess_ids = list(result.scalars().all())

    if excess_ids:
        await session.execute(delete(ActivityLog).where(ActivityLog.id.in_(excess_ids)))

    return len(excess_ids)


async def get_recent_activity(session: AsyncSession, user_id: str, limit: int = 5) -> List[ActivityLog]:
    stmt = (
        select(ActivityLog)
        .where(ActivityLog.user_id == user_id)
        .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ==============================================================================
# ДНЕВНЫЕ СЧЕТЧИКИ
# ==============================================================================


def _dialect_insert(session: AsyncSession):
    """Возвращает insert() с поддержкой ON CONFLICT для текущего диалекта или None."""
    dialect_name = session.get_bind().dialect.name

    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


async def increment_daily_counter(
    session: AsyncSession,
    user_id: str,
    day: str,
    stat: str,
    value: float = 1
) -> None:
    """
    Атомарно увеличивает дневной счетчик (upsert с инкрементом, без перезаписи).

    Args:
        session: Сессия БД
        user_id: ID пользователя
        day: День в формате YYYY-MM-DD
        stat: Имя счетчика (см. DAILY_COUNTERS)
        value: На сколько увеличить

    Raises:
        ValueError: Неизвестный счетчик
    """
    if stat not in DAILY_COUNTERS:
        raise ValueError(f"Unknown daily counter: {stat}")

    table = DailyStats.__table__
    insert = _dialect_insert(session)

    if insert is not None:
        stmt = insert(table).values(user_id=user_id, day=day, **{stat: value})
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.day],
            set_={stat: table.c[stat] + stmt.excluded[stat]},
        )
        await session.execute(stmt)
        return

    # Диалект без ON CONFLICT: читаем и обновляем в той же транзакции
    row = await get_daily_stats(session, user_id, day)
    if row is None:
        session.add(DailyStats(user_id=user_id, day=day, **{stat: value}))
        await session.flush()
    else:
        await session.execute(
            update(DailyStats)
            .where(DailyStats.id == row.id)
            .values({stat: table.c[stat] + value})
        )


async def get_daily_stats(session: AsyncSession, user_id: str, day: str) -> Optional[DailyStats]:
    stmt = select(DailyStats).where(DailyStats.user_id == user_id, DailyStats.day == day)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ==============================================================================
# НАСТРОЙКИ БОТА
# ==============================================================================


async def get_bot_config(session: AsyncSession, user_id: str) -> Optional[BotConfig]:
    return await session.get(BotConfig, user_id)


async def upsert_bot_config(session: AsyncSession, user_id: str, values: Dict[str, Any]) -> BotConfig:
    """
    Сохраняет настройки слиянием: меняются только переданные поля.

    Args:
        session: Сессия БД
        user_id: ID пользователя
        values: Поля модели BotConfig для обновления

    Returns:
        Актуальная строка BotConfig
    """
    row = await session.get(BotConfig, user_id)
    if row is None:
        row = BotConfig(user_id=user_id, use_ai=False, use_custom_responses=False)
        session.add(row)

    for key, value in values.items():
        setattr(row, key, value)

    await session.flush()
    return row
