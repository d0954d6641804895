"""
Канал реального времени дашборда (WebSocket /ws).

Кадры - JSON объекты {"event": str, "data": any, "id": optional}.
На запрос клиента с "id" отправляется ровно один ответ
{"event": "ack", "id": <id>, "data": {"success": bool, ...}}.
"""

import json
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from packages.core.services.bot_config import FAQ_FILENAME

from .auth import InvalidTokenError, verify_token

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Подписки WebSocket-клиентов на события пользователя."""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = defaultdict(set)

    def subscribe(self, user_id: str, websocket: WebSocket) -> None:
        self.active_connections[user_id].add(websocket)
        logger.info(f"[WS] 🔌 {user_id}: подключений {len(self.active_connections[user_id])}")

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        connections = self.active_connections.get(user_id)
        if not connections:
            return
        connections.discard(websocket)
        if not connections:
            del self.active_connections[user_id]
        logger.info(f"[WS] {user_id}: клиент отключен")

    def has_subscribers(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    async def emit_to_user(self, user_id: str, event: str, data: Any = None) -> None:
        """Отправляет событие всем вкладкам пользователя."""
        frame = {"event": event, "data": data}
        for websocket in list(self.active_connections.get(user_id, ())):
            try:
                await websocket.send_json(frame)
            except Exception as e:
                logger.warning(f"[WS] ⚠️  Не удалось отправить {event} для {user_id}: {e}")
                self.disconnect(user_id, websocket)


async def send_event(websocket: WebSocket, event: str, data: Any = None) -> None:
    await websocket.send_json({"event": event, "data": data})


async def send_ack(websocket: WebSocket, request_id: Any, data: Dict[str, Any]) -> None:
    if request_id is None:
        return
    await websocket.send_json({"event": "ack", "id": request_id, "data": data})


class DashboardSocket:
    """
    Обработчик одного WebSocket-подключения.

    До события authenticate все запросы отклоняются.
    """

    def __init__(self, ctx, websocket: WebSocket):
        self.ctx = ctx
        self.websocket = websocket
        self.user_id: Optional[str] = None

    @property
    def i18n(self):
        return self.ctx.i18n

    def _not_authenticated(self) -> Dict[str, Any]:
        return {"success": False, "message": self.i18n.get("notices.not_authenticated")}

    async def run(self) -> None:
        await self.websocket.accept()
        try:
            while True:
                raw = await self.websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("[WS] ⚠️  Получен не-JSON кадр")
                    continue
                if not isinstance(frame, dict):
                    continue

                keep_open = await self.dispatch(frame.get("event"), frame.get("data"), frame.get("id"))
                if not keep_open:
                    break
        except WebSocketDisconnect:
            pass
        finally:
            if self.user_id:
                self.ctx.connections.disconnect(self.user_id, self.websocket)

    async def dispatch(self, event: Optional[str], data: Any, request_id: Any) -> bool:
        """
        Обрабатывает событие клиента.

        Returns:
            False, если соединение нужно закрыть
        """
        if event == "authenticate":
            return await self.on_authenticate(data, request_id)

        if event == "get_bot_config":
            await send_ack(self.websocket, request_id, await self.on_get_bot_config())
        elif event == "save_bot_config":
            await send_ack(self.websocket, request_id, await self.on_save_bot_config(data))
        elif event == "send-message":
            await send_ack(self.websocket, request_id, await self.on_send_message(data))
        else:
            logger.warning(f"[WS] ⚠️  Неизвестное событие: {event!r}")
            await send_ack(self.websocket, request_id, {"success": False, "message": f"Unknown event: {event}"})
        return True

    async def on_authenticate(self, data: Any, request_id: Any) -> bool:
        token = data.get("token") if isinstance(data, dict) else data
        try:
            user_id = verify_token(token, self.ctx.config.auth)
        except InvalidTokenError as e:
            logger.warning(f"[WS] ⛔ Аутентификация отклонена: {e}")
            await send_event(self.websocket, "auth_failed", self.i18n.get("notices.invalid_token"))
            await send_ack(self.websocket, request_id, {"success": False, "message": self.i18n.get("notices.invalid_token")})
            await self.websocket.close(code=4401)
            return False

        if self.user_id and self.user_id != user_id:
            self.ctx.connections.disconnect(self.user_id, self.websocket)

        self.user_id = user_id
        self.ctx.connections.subscribe(user_id, self.websocket)
        await send_event(self.websocket, "auth_success")
        await send_ack(self.websocket, request_id, {"success": True})
        await self.ctx.dashboard.emit_dashboard_update(user_id)
        return True

    async def on_get_bot_config(self) -> Dict[str, Any]:
        if not self.user_id:
            return self._not_authenticated()

        try:
            config = await self.ctx.bot_configs.get_bot_config(self.user_id)
            data = dict(config) if config else {}
            if self.ctx.bot_configs.has_faq(self.user_id):
                data["faqFilename"] = FAQ_FILENAME
        except Exception as e:
            logger.error(f"[WS] ❌ Ошибка чтения настроек {self.user_id}: {e}", exc_info=True)
            return {"success": False, "message": self.i18n.get("notices.config_load_failed")}

        return {"success": True, "data": data}

    async def on_save_bot_config(self, data: Any) -> Dict[str, Any]:
        if not self.user_id:
            return self._not_authenticated()
        if not isinstance(data, dict):
            return {"success": False, "message": self.i18n.get("notices.config_save_failed")}

        try:
            await self.ctx.bot_configs.save_bot_config(self.user_id, data)
        except Exception as e:
            logger.error(f"[WS] ❌ Ошибка сохранения настроек {self.user_id}: {e}", exc_info=True)
            return {"success": False, "message": self.i18n.get("notices.config_save_failed")}

        await self.ctx.recorder.log_activity(self.user_id, self.i18n.get("activity.config_saved"))
        await self.ctx.dashboard.emit_dashboard_update(self.user_id)
        return {"success": True, "message": self.i18n.get("notices.config_saved")}

    async def on_send_message(self, data: Any) -> Dict[str, Any]:
        if not self.user_id:
            return self._not_authenticated()

        data = data if isinstance(data, dict) else {}
        return await self.ctx.router.send_manual_message(
            self.user_id,
            data.get("to"),
            data.get("text"),
            data.get("media"),
        )


async def websocket_endpoint(websocket: WebSocket) -> None:
    """Точка входа WebSocket /ws."""
    await DashboardSocket(websocket.app.state.ctx, websocket).run()
