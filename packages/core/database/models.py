"""
SQLAlchemy модели мульти-пользовательского WhatsApp-дашборда.

Все данные изолированы по user_id (идентификатор пользователя дашборда,
выданный identity provider). Временные метки хранятся в наивном UTC.

Ключевые особенности:
- Тикет на каждую пару (user_id, номер контакта)
- История сообщений тикета ограничена (старые записи удаляются при вставке)
- Дневные счетчики только увеличиваются (upsert с инкрементом)
"""

from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Integer, String, Text, Boolean, Float, DateTime, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Базовый класс для всех моделей."""
    pass


class TicketStatus:
    """Возможные статусы тикета (колонки kanban-доски)."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class MessageSender:
    """Отправитель сообщения: оператор/бот или контакт."""

    USER = "user"
    CONTACT = "contact"


class MessageType:
    """Типы записей в истории тикета."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"


# ============================================================================
# KANBAN - тикеты и история сообщений
# ============================================================================

class Ticket(Base):
    """
    Тикет поддержки для одного контакта.

    Создается при первом входящем или исходящем сообщении на номер.
    Закрытый тикет (completed) при новом входящем сообщении
    переоткрывается в pending со снятой паузой бота.
    """
    __tablename__ = "tickets"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(32), primary_key=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(String(20), default=TicketStatus.PENDING, nullable=False)
    bot_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    message_preview: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_message_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # Метка последнего входящего сообщения; очищается после замера времени ответа
    last_contact_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index('idx_tickets_user_status', 'user_id', 'status'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.phone_number,
            "phoneNumber": self.phone_number,
            "contactName": self.contact_name,
            "status": self.status,
            "botPaused": self.bot_paused,
            "messagePreview": self.message_preview,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastMessageTimestamp": self.last_message_at.isoformat() if self.last_message_at else None,
        }

    def __repr__(self) -> str:
        return f"<Ticket(user_id='{self.user_id}', phone='{self.phone_number}', status='{self.status}')>"


class TicketMessage(Base):
    """
    Сообщение в истории тикета.

    Внешнего ключа на tickets нет: входящее сообщение сохраняется
    раньше, чем создается тикет.
    """
    __tablename__ = "ticket_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(32), nullable=False)

    type: Mapped[str] = mapped_column(String(20), default=MessageType.TEXT, nullable=False)
    text: Mapped[Optional[str]] = mapped_column(Text)
    url: Mapped[Optional[str]] = mapped_column(String(500))
    sender: Mapped[str] = mapped_column(String(10), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_ticket_messages_ticket_ts', 'user_id', 'ticket_id', 'timestamp'),
    )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "text": self.text,
            "sender": self.sender,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.url:
            data["url"] = self.url
        return data

    def __repr__(self) -> str:
        return f"<TicketMessage(id={self.id}, ticket='{self.ticket_id}', sender='{self.sender}', type='{self.type}')>"


# ============================================================================
# НАСТРОЙКИ БОТА
# ============================================================================

class BotConfig(Base):
    """
    Настройки автоответчика пользователя.

    FAQ хранится отдельным файлом (user_data/<user_id>/faq.txt)
    и подмешивается при чтении только если включен AI-режим.
    """
    __tablename__ = "bot_configs"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    use_ai: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ai_api_key: Mapped[Optional[str]] = mapped_column(String(255))
    system_prompt: Mapped[Optional[str]] = mapped_column(Text)

    use_custom_responses: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # {"oi": [{"text": "Olá!", "delay": 100}], "menu": [...]}
    custom_responses: Mapped[Optional[Dict[str, List[Dict[str, Any]]]]] = mapped_column(JSON)

    pause_bot_keyword: Mapped[Optional[str]] = mapped_column(String(100))

    def __repr__(self) -> str:
        return f"<BotConfig(user_id='{self.user_id}', ai={self.use_ai}, custom={self.use_custom_responses})>"


# ============================================================================
# МЕТРИКИ И ЖУРНАЛ АКТИВНОСТИ
# ============================================================================

class ActivityLog(Base):
    """Запись журнала активности (хранятся только последние N записей)."""
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_activity_log_user_ts', 'user_id', 'timestamp'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "timestamp": self.timestamp.isoformat()}


class DailyStats(Base):
    """
    Дневные счетчики пользователя.

    Одна строка на (user_id, день в UTC). Значения только увеличиваются.
    """
    __tablename__ = "daily_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    day: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD

    messages_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_pending: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_response_time: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # мс
    response_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_uptime: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # секунды

    __table_args__ = (
        UniqueConstraint('user_id', 'day', name='uq_daily_stats_user_day'),
    )

    def __repr__(self) -> str:
        return f"<DailyStats(user_id='{self.user_id}', day='{self.day}', sent={self.messages_sent})>"


# Счетчики, которые можно инкрементировать через update_daily_stats()
DAILY_COUNTERS = (
    "messages_sent",
    "messages_failed",
    "messages_pending",
    "total_response_time",
    "response_count",
    "total_uptime",
)
