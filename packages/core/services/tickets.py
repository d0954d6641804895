"""
Kanban-тикеты: создание, обновление, пауза бота и история сообщений.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database.models import Ticket, TicketStatus
from ..db import queries
from ..memory import ExpiringCache
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class TicketOutcome:
    """Результат create_or_update_ticket()."""

    CREATED = "created"
    REOPENED = "reopened"
    UPDATED = "updated"


class TicketService:
    """
    Работа с тикетами одного процесса.

    Attributes:
        session_factory: Фабрика сессий БД
        history_cache: Кэш последних сообщений, ключ (user_id, ticket_id)
        history_limit: Сколько последних сообщений отдавать в контекст AI
    """

    def __init__(self, session_factory: async_sessionmaker, history_cache: ExpiringCache, history_limit: int = 10):
        self.session_factory = session_factory
        self.history_cache = history_cache
        self.history_limit = history_limit

    async def create_or_update_ticket(
        self,
        user_id: str,
        phone_number: str,
        contact_name: Optional[str],
        message_preview: str,
        is_contact_message: bool = False,
    ) -> Tuple[Optional[Ticket], Optional[str]]:
        """
        Создает тикет или обновляет превью и метки времени существующего.

        Закрытый тикет при входящем сообщении переоткрывается:
        status=pending, bot_paused=False.

        Args:
            user_id: ID пользователя
            phone_number: Номер контакта (ID тикета)
            contact_name: Имя контакта (используется только при создании)
            message_preview: Превью последнего сообщения
            is_contact_message: True для входящих сообщений

        Returns:
            (тикет, TicketOutcome) или (None, None) при ошибке хранилища
        """
        now = utcnow()
        try:
            async with self.session_factory() as session:
                ticket = await queries.get_ticket(session, user_id, phone_number)

                if ticket is None:
                    ticket = Ticket(
                        user_id=user_id,
                        phone_number=phone_number,
                        contact_name=contact_name,
                        status=TicketStatus.PENDING,
                        bot_paused=False,
                        message_preview=message_preview,
                        created_at=now,
                        last_message_at=now,
                        last_contact_message_at=now if is_contact_message else None,
                    )
                    session.add(ticket)
                    outcome = TicketOutcome.CREATED
                else:
                    ticket.message_preview = message_preview
                    ticket.last_message_at = now
                    if is_contact_message:
                        ticket.last_contact_message_at = now

                    outcome = TicketOutcome.UPDATED
                    if ticket.status == TicketStatus.COMPLETED and is_contact_message:
                        ticket.status = TicketStatus.PENDING
                        ticket.bot_paused = False
                        outcome = TicketOutcome.REOPENED

                await session.commit()

            logger.info(f"[TICKET] 🎫 {phone_number} ({user_id}): {outcome}")
            return ticket, outcome
        except Exception as e:
            logger.error(f"[TICKET] ❌ Ошибка тикета {phone_number} для {user_id}: {e}", exc_info=True)
            return None, None

    async def get_ticket(self, user_id: str, phone_number: str) -> Optional[Ticket]:
        try:
            async with self.session_factory() as session:
                return await queries.get_ticket(session, user_id, phone_number)
        except Exception as e:
            logger.error(f"[TICKET] ❌ Ошибка чтения тикета {phone_number}: {e}", exc_info=True)
            return None

    async def set_bot_paused(self, user_id: str, phone_number: str, paused: bool = True) -> bool:
        """
        Ставит или снимает паузу бота на тикете.

        Returns:
            True, если тикет найден и обновлен
        """
        try:
            async with self.session_factory() as session:
                ticket = await queries.get_ticket(session, user_id, phone_number)
                if ticket is None:
                    return False
                ticket.bot_paused = paused
                await session.commit()
            return True
        except Exception as e:
            logger.error(f"[TICKET] ❌ Ошибка паузы бота для {phone_number}: {e}", exc_info=True)
            return False

    async def get_message_history(self, user_id: str, ticket_id: str) -> List[Dict[str, Any]]:
        """
        Последние history_limit сообщений тикета в хронологическом порядке.

        Результат кэшируется на TTL кэша истории. При ошибке - пустой список.
        """
        cache_key = (user_id, ticket_id)
        cached = self.history_cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            async with self.session_factory() as session:
                messages = await queries.get_latest_messages(session, user_id, ticket_id, self.history_limit)
        except Exception as e:
            logger.error(f"[HISTORY] ❌ Ошибка чтения истории {ticket_id}: {e}", exc_info=True)
            return []

        history = [message.to_dict() for message in messages]
        self.history_cache.set(cache_key, history)
        return history
