"""
State Manager для WhatsApp Gateway.

Хранит состояние процесса в памяти: живые сессии, ожидающие QR/коды,
метки подключения, таймеры переподключения и блокировки тикетов.
Все структуры принадлежат одному GatewayContext, модульных глобалов нет.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from packages.core.ai import AIResponder
from packages.core.config import Config
from packages.core.i18n import I18n
from packages.core.memory import ExpiringCache
from packages.core.services import BotConfigService, MetricsRecorder, TicketService

from .auth_state import AuthState
from .waha_client import create_waha_socket

logger = logging.getLogger(__name__)


class WhatsAppSocket(Protocol):
    """Интерфейс сокета, с которым работают менеджер сессий и роутер."""

    user: Optional[Dict[str, Any]]
    ev: Any

    async def connect(self) -> None: ...
    async def logout(self) -> None: ...
    async def close(self) -> None: ...
    async def request_pairing_code(self, phone_number: str) -> str: ...
    async def send_message(self, jid: str, content: Dict[str, Any]) -> Any: ...
    async def download_media(self, message: Any) -> bytes: ...


SocketFactory = Callable[[Config, AuthState], WhatsAppSocket]


@dataclass
class TicketLock:
    """Блокировка тикета и число корутин, которые ее держат или ждут."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass
class SessionRegistry:
    """
    Реестр сессий процесса.

    Инвариант: на одного пользователя не больше одного сокета в sessions,
    и qr_codes[user] не сосуществует с подключенным сокетом.
    """

    sessions: Dict[str, WhatsAppSocket] = field(default_factory=dict)
    qr_codes: Dict[str, str] = field(default_factory=dict)
    connection_timestamps: Dict[str, datetime] = field(default_factory=dict)
    reconnect_tasks: Dict[str, asyncio.Task] = field(default_factory=dict)
    ticket_locks: Dict[Tuple[str, str], TicketLock] = field(default_factory=dict)

    def get_socket(self, user_id: str) -> Optional[WhatsAppSocket]:
        return self.sessions.get(user_id)

    def is_current(self, user_id: str, sock: WhatsAppSocket) -> bool:
        """True, если sock - актуальный сокет пользователя."""
        return self.sessions.get(user_id) is sock

    def is_online(self, user_id: str) -> bool:
        sock = self.sessions.get(user_id)
        return bool(sock is not None and sock.user)

    @asynccontextmanager
    async def ticket_lock(self, user_id: str, ticket_id: str) -> AsyncIterator[None]:
        """
        Последовательная обработка одного тикета.

        Запись удаляется, когда блокировку никто не держит и не ждет.
        """
        key = (user_id, ticket_id)
        entry = self.ticket_locks.get(key)
        if entry is None:
            entry = TicketLock()
            self.ticket_locks[key] = entry

        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self.ticket_locks.get(key) is entry:
                del self.ticket_locks[key]

    def cancel_reconnect(self, user_id: str) -> None:
        """Отменяет ожидающее переподключение (кроме текущей задачи)."""
        task = self.reconnect_tasks.pop(user_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            logger.info(f"[SESSION] ⏹️  Переподключение {user_id} отменено")


@dataclass
class GatewayContext:
    """
    Контейнер зависимостей шлюза.

    Создается один раз на процесс (в lifespan) или в тестах с подменами.
    """

    config: Config
    i18n: I18n
    session_factory: async_sessionmaker
    socket_factory: SocketFactory = create_waha_socket
    ai_responder: Optional[AIResponder] = None
    registry: SessionRegistry = field(default_factory=SessionRegistry)
    connections: Any = None
    config_cache: Optional[ExpiringCache] = None
    history_cache: Optional[ExpiringCache] = None
    recorder: Optional[MetricsRecorder] = None
    tickets: Optional[TicketService] = None
    bot_configs: Optional[BotConfigService] = None
    dashboard: Any = None
    router: Any = None
    session_manager: Any = None

    def __post_init__(self):
        bot = self.config.bot

        if self.config_cache is None:
            self.config_cache = ExpiringCache(ttl=bot.cache_ttl, name="config")
        if self.history_cache is None:
            self.history_cache = ExpiringCache(ttl=bot.cache_ttl, name="history")
        if self.ai_responder is None:
            self.ai_responder = AIResponder(self.i18n, model=bot.openai_model)
        if self.connections is None:
            from .sockets import ConnectionManager
            self.connections = ConnectionManager()

        if self.recorder is None:
            self.recorder = MetricsRecorder(
                self.session_factory,
                self.history_cache,
                messages_limit=bot.messages_limit,
                activity_limit=bot.activity_limit,
            )
        if self.tickets is None:
            self.tickets = TicketService(self.session_factory, self.history_cache, history_limit=bot.history_limit)
        if self.bot_configs is None:
            self.bot_configs = BotConfigService(
                self.session_factory, self.config_cache, self.config.storage.user_data_dir
            )

        from .dashboard import DashboardEmitter
        from .message_router import MessageRouter
        from .session_manager import SessionManager

        if self.dashboard is None:
            self.dashboard = DashboardEmitter(self)
        if self.router is None:
            self.router = MessageRouter(self)
        if self.session_manager is None:
            self.session_manager = SessionManager(self)
