"""
Жизненный цикл WhatsApp-сессий пользователей.

absent -> connecting -> (awaiting_code | open) -> closed
closed(не logout) -> connecting через reconnect_delay секунд, без лимита попыток.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from packages.core.utils.clock import utcnow

from .auth_state import remove_auth_folder, use_multi_file_auth_state
from .waha_client import DisconnectReason

logger = logging.getLogger(__name__)


def disconnect_reason_label(reason: Any) -> str:
    """Читаемое имя причины отключения (connection_replaced, logged_out...)."""
    try:
        return DisconnectReason(int(reason)).name.lower()
    except (TypeError, ValueError):
        return "unknown"


class SessionManager:
    """
    Создание, замена, переподключение и завершение сессий.

    Все изменения реестра выполняются в одном event loop, поэтому
    операции внутри одного обработчика не перемешиваются.
    """

    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def registry(self):
        return self.ctx.registry

    def credentials_folder(self, user_id: str) -> Path:
        return self.ctx.config.storage.sessions_dir / user_id

    async def _notify(self, user_id: str, event: str, data: Any = None) -> None:
        await self.ctx.connections.emit_to_user(user_id, event, data)

    async def _book_uptime(self, user_id: str) -> None:
        connected_at = self.registry.connection_timestamps.pop(user_id, None)
        if connected_at is None:
            return
        seconds = max((utcnow() - connected_at).total_seconds(), 0.0)
        await self.ctx.recorder.update_daily_stats(user_id, "total_uptime", seconds)
        logger.info(f"[SESSION] ⏱️  {user_id}: +{seconds:.0f}s uptime")

    async def _close_quietly(self, sock) -> None:
        try:
            await sock.close()
        except Exception as e:
            logger.warning(f"[SESSION] ⚠️  Ошибка закрытия сокета: {e}")

    # ========================================================================
    # START / STOP
    # ========================================================================

    async def start_session(self, user_id: str, pairing_phone_number: Optional[str] = None) -> None:
        """
        Запускает (или перезапускает) сессию пользователя.

        Существующая сессия удаляется из реестра и разлогинивается
        (ошибки выхода только логируются). Ошибки загрузки учетных данных
        и подключения пробрасываются вызывающему.

        Args:
            user_id: ID пользователя дашборда
            pairing_phone_number: Номер для входа по коду привязки вместо QR
        """
        registry = self.registry
        registry.cancel_reconnect(user_id)

        old_sock = registry.sessions.pop(user_id, None)
        registry.qr_codes.pop(user_id, None)
        if old_sock is not None:
            logger.info(f"[SESSION] 🔁 Замена существующей сессии {user_id}")
            await self._book_uptime(user_id)
            try:
                await old_sock.logout()
            except Exception as e:
                logger.warning(f"[SESSION] ⚠️  Ошибка выхода из старой сессии {user_id}: {e}")
            await self._close_quietly(old_sock)

        folder = self.credentials_folder(user_id)
        if pairing_phone_number:
            remove_auth_folder(folder)

        auth_state = await use_multi_file_auth_state(folder, user_id)
        sock = self.ctx.socket_factory(self.ctx.config, auth_state)
        registry.sessions[user_id] = sock

        async def on_creds_update(update: Dict[str, Any]) -> None:
            if not registry.is_current(user_id, sock):
                return
            try:
                await auth_state.save_creds(update)
            except Exception as e:
                logger.error(f"[SESSION] ❌ Ошибка сохранения учетных данных {user_id}: {e}", exc_info=True)

        async def on_connection_update(update: Dict[str, Any]) -> None:
            await self.handle_connection_update(user_id, sock, update, pairing_phone_number)

        async def on_messages_upsert(upsert: Dict[str, Any]) -> None:
            await self.ctx.router.handle_messages_upsert(user_id, sock, upsert)

        sock.ev.on("creds.update", on_creds_update)
        sock.ev.on("connection.update", on_connection_update)
        sock.ev.on("messages.upsert", on_messages_upsert)

        logger.info(f"[SESSION] 🚀 Старт сессии {user_id} (pairing: {bool(pairing_phone_number)})")
        try:
            await sock.connect()
        except Exception:
            if registry.is_current(user_id, sock):
                registry.sessions.pop(user_id, None)
            await self._close_quietly(sock)
            raise

    async def logout(self, user_id: str) -> bool:
        """
        Выход из WhatsApp и удаление учетных данных с диска.

        Returns:
            True, если у пользователя была живая сессия
        """
        self.registry.cancel_reconnect(user_id)
        sock = self.registry.sessions.get(user_id)

        if sock is not None:
            try:
                await sock.logout()
            except Exception as e:
                logger.warning(f"[SESSION] ⚠️  Ошибка выхода {user_id}: {e}")
            if self.registry.is_current(user_id, sock):
                self.registry.sessions.pop(user_id, None)
                self.registry.qr_codes.pop(user_id, None)
                await self._close_quietly(sock)

        remove_auth_folder(self.credentials_folder(user_id))
        return sock is not None

    async def shutdown(self) -> None:
        """Останавливает таймеры и закрывает сокеты без выхода из аккаунтов."""
        for user_id in list(self.registry.reconnect_tasks):
            self.registry.cancel_reconnect(user_id)

        for user_id, sock in list(self.registry.sessions.items()):
            await self._book_uptime(user_id)
            await self._close_quietly(sock)

        self.registry.sessions.clear()
        self.registry.qr_codes.clear()
        logger.info("[SESSION] 🛑 Все сессии закрыты")

    # ========================================================================
    # CONNECTION UPDATES
    # ========================================================================

    async def handle_connection_update(
        self,
        user_id: str,
        sock,
        update: Dict[str, Any],
        pairing_phone_number: Optional[str] = None,
    ) -> None:
        """
        Реагирует на изменение состояния соединения.

        События от замененного сокета игнорируются.
        """
        registry = self.registry
        if not registry.is_current(user_id, sock):
            logger.debug(f"[SESSION] Событие устаревшего сокета {user_id} пропущено: {update}")
            return

        qr = update.get("qr")
        connection = update.get("connection")

        if qr:
            if pairing_phone_number:
                try:
                    code = await sock.request_pairing_code(pairing_phone_number)
                    await self._notify(user_id, "pairing_code", code)
                    logger.info(f"[SESSION] 🔑 Код привязки выдан для {user_id}")
                except Exception as e:
                    logger.error(f"[SESSION] ❌ Не удалось получить код привязки {user_id}: {e}")
                    await self._notify(user_id, "error", self.ctx.i18n.get("notices.pairing_failed"))
            else:
                registry.qr_codes[user_id] = qr
                await self._notify(user_id, "qr", qr)
                logger.info(f"[SESSION] 📷 QR обновлен для {user_id}")

        if connection == "open":
            registry.connection_timestamps[user_id] = utcnow()
            registry.qr_codes.pop(user_id, None)
            await self.ctx.recorder.log_activity(user_id, self.ctx.i18n.get("activity.connected"))
            await self._notify(user_id, "ready")
            logger.info(f"[SESSION] ✅ {user_id} подключен")
        elif connection == "close":
            await self._handle_close(user_id, sock, update.get("last_disconnect") or {})

        await self.ctx.dashboard.emit_dashboard_update(user_id)

    async def _handle_close(self, user_id: str, sock, last_disconnect: Dict[str, Any]) -> None:
        registry = self.registry
        i18n = self.ctx.i18n

        await self._book_uptime(user_id)

        reason = last_disconnect.get("reason")
        reason_label = disconnect_reason_label(reason)
        await self.ctx.recorder.log_activity(user_id, i18n.get("activity.connection_lost", reason=reason_label))

        registry.sessions.pop(user_id, None)
        registry.qr_codes.pop(user_id, None)

        if reason == DisconnectReason.LOGGED_OUT:
            remove_auth_folder(self.credentials_folder(user_id))
            await self.ctx.recorder.log_activity(user_id, i18n.get("activity.session_ended"))
            await self._notify(user_id, "disconnected", i18n.get("notices.session_ended"))
            logger.info(f"[SESSION] 👋 {user_id}: сессия завершена (logout)")
        else:
            self._schedule_reconnect(user_id)
            await self._notify(user_id, "disconnected", i18n.get("notices.reconnecting"))
            logger.warning(f"[SESSION] 🔌 {user_id}: соединение потеряно ({reason_label}), переподключение")

        await self._close_quietly(sock)

    def _schedule_reconnect(self, user_id: str) -> None:
        self.registry.cancel_reconnect(user_id)
        delay = self.ctx.config.bot.reconnect_delay

        async def reconnect() -> None:
            await asyncio.sleep(delay)
            if user_id in self.registry.sessions:
                logger.info(f"[SESSION] Переподключение {user_id} не нужно: сессия уже создана")
                self.registry.reconnect_tasks.pop(user_id, None)
                return
            try:
                await self.start_session(user_id)
            except Exception as e:
                logger.error(f"[SESSION] ❌ Ошибка автоматического переподключения {user_id}: {e}", exc_info=True)
                self._schedule_reconnect(user_id)

        self.registry.reconnect_tasks[user_id] = asyncio.create_task(reconnect())
        logger.info(f"[SESSION] ⏳ Переподключение {user_id} через {delay}s")
