"""
Журнал активности, история тикетов и дневные счетчики.

Ошибки хранилища логируются и не пробрасываются: потеря одной записи
метрик не должна прерывать обработку сообщения.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db import queries
from ..memory import ExpiringCache
from ..utils.clock import utcnow, day_key

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Запись метрик и журналов пользователя.

    Attributes:
        session_factory: Фабрика сессий БД
        history_cache: Кэш истории сообщений (инвалидируется при каждой записи)
        messages_limit: Максимум сообщений в истории тикета
        activity_limit: Максимум записей журнала активности
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        history_cache: ExpiringCache,
        messages_limit: int = 100,
        activity_limit: int = 50,
    ):
        self.session_factory = session_factory
        self.history_cache = history_cache
        self.messages_limit = messages_limit
        self.activity_limit = activity_limit

    async def log_activity(self, user_id: str, message: str) -> None:
        """
        Добавляет запись в журнал активности и обрезает его до activity_limit.

        Args:
            user_id: ID пользователя
            message: Текст записи (уже локализованный)
        """
        if not user_id or not message:
            return

        try:
            async with self.session_factory() as session:
                await queries.add_activity(session, user_id, message, utcnow())
                await queries.trim_activity(session, user_id, self.activity_limit)
                await session.commit()
        except Exception as e:
            logger.error(f"[ACTIVITY] ❌ Ошибка записи журнала для {user_id}: {e}", exc_info=True)

    async def update_daily_stats(self, user_id: str, stat: str, value: float = 1) -> None:
        """
        Увеличивает дневной счетчик за сегодня (UTC).

        Args:
            user_id: ID пользователя
            stat: Имя счетчика (messages_sent, messages_failed, ...)
            value: Приращение
        """
        if not user_id or not stat:
            return

        try:
            async with self.session_factory() as session:
                await queries.increment_daily_counter(session, user_id, day_key(), stat, value)
                await session.commit()
        except Exception as e:
            logger.error(f"[STATS] ❌ Ошибка обновления '{stat}' для {user_id}: {e}", exc_info=True)

    async def log_message_to_ticket(
        self,
        user_id: str,
        ticket_id: str,
        message_type: str,
        text: Optional[str],
        sender: str,
        url: Optional[str] = None,
    ) -> None:
        """
        Сохраняет сообщение в историю тикета.

        Кэш истории инвалидируется, сообщения сверх messages_limit
        (самые старые) удаляются в той же транзакции.
        """
        try:
            async with self.session_factory() as session:
                await queries.add_ticket_message(
                    session,
                    user_id,
                    ticket_id,
                    message_type=message_type,
                    text=text,
                    sender=sender,
                    timestamp=utcnow(),
                    url=url,
                )
                self.history_cache.invalidate((user_id, ticket_id))
                await queries.trim_ticket_messages(session, user_id, ticket_id, self.messages_limit)
                await session.commit()
        except Exception as e:
            logger.error(f"[TICKET] ❌ Ошибка сохранения сообщения в тикет {ticket_id}: {e}", exc_info=True)

    async def calculate_response_time(self, user_id: str, ticket_id: str) -> Optional[float]:
        """
        Фиксирует время ответа по метке последнего входящего сообщения.

        Метка очищается, поэтому один входящий вызывает не больше одного замера.

        Returns:
            Время ответа в миллисекундах или None, если метки не было
        """
        try:
            async with self.session_factory() as session:
                ticket = await queries.get_ticket(session, user_id, ticket_id)
                if ticket is None or ticket.last_contact_message_at is None:
                    return None

                response_ms = (utcnow() - ticket.last_contact_message_at).total_seconds() * 1000
                response_ms = max(response_ms, 0.0)
                ticket.last_contact_message_at = None

                today = day_key()
                await queries.increment_daily_counter(session, user_id, today, "total_response_time", response_ms)
                await queries.increment_daily_counter(session, user_id, today, "response_count", 1)
                await session.commit()

            logger.debug(f"[STATS] ⏱️  Время ответа {ticket_id}: {response_ms:.0f} мс")
            return response_ms
        except Exception as e:
            logger.error(f"[STATS] ❌ Ошибка расчета времени ответа для {ticket_id}: {e}", exc_info=True)
            return None

    async def get_recent_activity(self, user_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        try:
            async with self.session_factory() as session:
                entries = await queries.get_recent_activity(session, user_id, limit)
                return [entry.to_dict() for entry in entries]
        except Exception as e:
            logger.error(f"[ACTIVITY] ❌ Ошибка чтения журнала для {user_id}: {e}", exc_info=True)
            return []

    async def get_today_stats(self, user_id: str) -> Tuple[Dict[str, float], bool]:
        """
        Читает сегодняшние счетчики.

        Returns:
            (счетчики, успех чтения). Отсутствующая строка дает пустой словарь.
        """
        try:
            async with self.session_factory() as session:
                row = await queries.get_daily_stats(session, user_id, day_key())
        except Exception as e:
            logger.error(f"[STATS] ❌ Ошибка чтения счетчиков для {user_id}: {e}", exc_info=True)
            return {}, False

        if row is None:
            return {}, True

        return {
            "messages_sent": row.messages_sent or 0,
            "messages_failed": row.messages_failed or 0,
            "messages_pending": row.messages_pending or 0,
            "total_response_time": row.total_response_time or 0.0,
            "response_count": row.response_count or 0,
            "total_uptime": row.total_uptime or 0.0,
        }, True
