"""
Клиент WAHA (WhatsApp HTTP API) - мост к протоколу WhatsApp Web.

WahaSocket представляет одну WhatsApp-сессию пользователя дашборда.
Команды (старт сессии, QR, код привязки, отправка) идут через REST API WAHA,
события (статус сессии, входящие сообщения) приходят вебхуком и
преобразуются в события сокета:

- "connection.update": {"connection": "connecting" | "open" | "close",
  "qr": str, "last_disconnect": {"reason": DisconnectReason, "message": str}}
- "creds.update": изменения учетных данных для сохранения на диск
- "messages.upsert": {"messages": [IncomingMessage, ...], "type": "notify"}
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import mimetypes
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiofiles
import httpx

from packages.core.config import Config, WahaConfig

from .auth_state import AuthState

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]

WEBHOOK_EVENTS = ["session.status", "message"]


class DisconnectReason(IntEnum):
    """Причины закрытия соединения."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515


class WhatsAppClientError(Exception):
    """Ошибка запроса к WAHA."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ============================================================================
# ВХОДЯЩИЕ СООБЩЕНИЯ
# ============================================================================

@dataclass
class TextContent:
    text: str


@dataclass
class MediaContent:
    """Медиа-вложение: kind - image, audio, video."""

    kind: str
    caption: Optional[str] = None
    mimetype: Optional[str] = None
    url: Optional[str] = None


MessageContent = Union[TextContent, MediaContent]


@dataclass
class IncomingMessage:
    """
    Нормализованное сообщение из вебхука WAHA.

    content = None, если у сообщения нет ни текста, ни поддерживаемого медиа.
    """

    id: str
    remote_jid: str
    from_me: bool
    push_name: Optional[str] = None
    content: Optional[MessageContent] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def media_kind(mimetype: Optional[str]) -> Optional[str]:
    if not mimetype:
        return None
    for kind in ("image", "audio", "video"):
        if mimetype.startswith(f"{kind}/"):
            return kind
    return None


def parse_waha_message(payload: Dict[str, Any]) -> IncomingMessage:
    """
    Преобразует payload события "message" в IncomingMessage.

    Документы не считаются медиа: если у документа есть подпись,
    она обрабатывается как текст.
    """
    from_me = bool(payload.get("fromMe"))
    remote_jid = str((payload.get("to") if from_me else payload.get("from")) or "")

    data = payload.get("_data") or {}
    push_name = data.get("notifyName") or data.get("pushName") or payload.get("notifyName")

    body = payload.get("body")
    media = payload.get("media") or {}
    content: Optional[MessageContent] = None

    if payload.get("hasMedia"):
        kind = media_kind(media.get("mimetype"))
        if kind:
            content = MediaContent(
                kind=kind,
                caption=body or None,
                mimetype=media.get("mimetype"),
                url=media.get("url"),
            )
        elif body:
            content = TextContent(text=body)
    elif body:
        content = TextContent(text=body)

    return IncomingMessage(
        id=str(payload.get("id") or ""),
        remote_jid=remote_jid,
        from_me=from_me,
        push_name=push_name,
        content=content,
        raw=payload,
    )


def to_jid(phone_number: str) -> str:
    """Номер телефона -> chatId WAHA (79001234567@c.us)."""
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    return f"{digits}@c.us"


def jid_to_phone(jid: str) -> str:
    return jid.split("@", 1)[0]


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@g.us")


def verify_webhook_signature(body: bytes, signature: Optional[str], key: str) -> bool:
    """
    Проверяет подпись вебхука WAHA (заголовок X-Webhook-Hmac).

    WAHA подписывает сырое тело запроса HMAC-SHA512 и передает hex-дайджест.
    """
    if not signature:
        return False
    expected = hmac.new(key.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


# ============================================================================
# СОБЫТИЯ
# ============================================================================

class EventEmitter:
    """Подписка на события сокета. Обработчики вызываются по очереди."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    async def emit(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(data)
            except Exception as e:
                logger.error(f"[WAHA] ❌ Ошибка обработчика события {event}: {e}", exc_info=True)


# ============================================================================
# СОКЕТ
# ============================================================================

class WahaSocket:
    """
    Одна WhatsApp-сессия на стороне WAHA.

    Attributes:
        session_name: Имя сессии WAHA
        ev: Подписки на события сокета
        user: Профиль аккаунта после входа (None, пока не авторизован)
    """

    def __init__(
        self,
        config: WahaConfig,
        auth_state: AuthState,
        connect_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.auth_state = auth_state
        self.session_name: str = auth_state.creds["session"]
        self.connect_timeout = connect_timeout
        self.ev = EventEmitter()
        self.user: Optional[Dict[str, Any]] = None

        headers = {"Accept": "application/json"}
        if config.api_key:
            headers["X-Api-Key"] = config.api_key

        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )
        self._logged_out = False
        self._closed = False
        self._code_issued = False
        self._watchdog: Optional[asyncio.Task] = None
        self._qr_poll: Optional[asyncio.Task] = None
        self._last_qr: Optional[str] = None

    # ------------------------------------------------------------------ HTTP

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WhatsAppClientError(
                f"WAHA {method} {path} -> {e.response.status_code}: {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise WhatsAppClientError(f"WAHA {method} {path} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # ------------------------------------------------------------ lifecycle

    async def connect(self) -> None:
        """
        Запускает сессию на стороне WAHA.

        При чистых учетных данных старая сессия удаляется, чтобы начался
        новый вход. Ошибки WAHA пробрасываются.
        """
        if self.auth_state.is_fresh:
            await self._delete_session()

        body: Dict[str, Any] = {"name": self.session_name, "start": True}
        if self.config.webhook_url:
            webhook: Dict[str, Any] = {"url": self.config.webhook_url, "events": WEBHOOK_EVENTS}
            if self.config.webhook_hmac_key:
                webhook["hmac"] = {"key": self.config.webhook_hmac_key}
            body["config"] = {"webhooks": [webhook]}

        try:
            await self._request("POST", "/api/sessions", json=body)
            logger.info(f"[WAHA] 🆕 Сессия {self.session_name} создана")
        except WhatsAppClientError as e:
            if e.status_code not in (409, 422):
                raise
            await self._start_existing()

        if self.auth_state.is_fresh:
            await self.ev.emit("creds.update", {"session": self.session_name, "registered": False})

        self._watchdog = asyncio.create_task(self._connect_watchdog())

        info = await self._request("GET", f"/api/sessions/{self.session_name}")
        status = (info or {}).get("status") if isinstance(info, dict) else None
        if status:
            await self.handle_status(status)

    async def _start_existing(self) -> None:
        try:
            await self._request("POST", f"/api/sessions/{self.session_name}/start")
            logger.info(f"[WAHA] ▶️  Сессия {self.session_name} запущена")
        except WhatsAppClientError as e:
            if e.status_code != 422:
                raise
            logger.info(f"[WAHA] ▶️  Сессия {self.session_name} уже работает")

    async def _delete_session(self) -> None:
        try:
            await self._request("DELETE", f"/api/sessions/{self.session_name}")
            logger.info(f"[WAHA] 🗑️  Старая сессия {self.session_name} удалена")
        except WhatsAppClientError as e:
            if e.status_code != 404:
                raise

    async def _connect_watchdog(self) -> None:
        await asyncio.sleep(self.connect_timeout)
        if self.user is None and not self._code_issued:
            logger.warning(f"[WAHA] ⏱️  Сессия {self.session_name} не подключилась за {self.connect_timeout}s")
            await self._emit_close(DisconnectReason.CONNECTION_LOST, "timed out")

    def _cancel_watchdog(self) -> None:
        if self._watchdog and not self._watchdog.done() and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()
        self._watchdog = None

    async def _poll_qr(self) -> None:
        """
        Перечитывает QR, пока сессия ждет сканирования.

        WAHA обновляет QR без вебхука, поэтому новый код забирается опросом.
        """
        while not self._closed and self.user is None:
            await asyncio.sleep(self.config.qr_poll_interval)
            if self._closed or self.user is not None:
                return
            try:
                await self._refresh_qr()
            except WhatsAppClientError as e:
                logger.warning(f"[WAHA] ⚠️  Не удалось обновить QR {self.session_name}: {e}")

    async def _refresh_qr(self) -> None:
        qr = await self.get_qr()
        if qr == self._last_qr:
            return
        self._last_qr = qr
        self._code_issued = True
        await self.ev.emit("connection.update", {"qr": qr})

    def _cancel_qr_poll(self) -> None:
        if self._qr_poll and not self._qr_poll.done() and self._qr_poll is not asyncio.current_task():
            self._qr_poll.cancel()
        self._qr_poll = None

    async def _emit_close(self, reason: DisconnectReason, message: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_watchdog()
        self._cancel_qr_poll()
        self.user = None
        await self.ev.emit("connection.update", {
            "connection": "close",
            "last_disconnect": {"reason": reason, "message": message},
        })

    async def logout(self) -> None:
        """
        Выходит из аккаунта WhatsApp.

        Событие close с причиной LOGGED_OUT генерируется даже при ошибке WAHA.
        """
        self._logged_out = True
        try:
            await self._request("POST", f"/api/sessions/{self.session_name}/logout")
            logger.info(f"[WAHA] 👋 Выход из сессии {self.session_name}")
        finally:
            await self._emit_close(DisconnectReason.LOGGED_OUT, "logged out")

    async def close(self) -> None:
        """Закрывает HTTP клиент. Сессия на стороне WAHA не останавливается."""
        self._closed = True
        self._cancel_watchdog()
        self._cancel_qr_poll()
        await self._client.aclose()

    # ---------------------------------------------------------------- events

    async def handle_webhook(self, body: Dict[str, Any]) -> None:
        """Обрабатывает тело вебхука WAHA для этой сессии."""
        event = body.get("event")
        payload = body.get("payload") or {}

        if event == "session.status":
            await self.handle_status(payload.get("status"))
        elif event == "message":
            message = parse_waha_message(payload)
            await self.ev.emit("messages.upsert", {"messages": [message], "type": "notify"})
        else:
            logger.debug(f"[WAHA] Событие {event} для {self.session_name} пропущено")

    async def handle_status(self, status: Optional[str]) -> None:
        if self._closed or not status:
            return

        logger.info(f"[WAHA] 📶 {self.session_name}: {status}")

        if status == "STARTING":
            await self.ev.emit("connection.update", {"connection": "connecting"})
        elif status == "SCAN_QR_CODE":
            await self._refresh_qr()
            if self._qr_poll is None or self._qr_poll.done():
                self._qr_poll = asyncio.create_task(self._poll_qr())
        elif status == "WORKING":
            if self.user is not None:
                return
            me = await self._request("GET", f"/api/sessions/{self.session_name}/me")
            self.user = me or {}
            self._cancel_watchdog()
            self._cancel_qr_poll()
            await self.ev.emit("creds.update", {"registered": True, "me": me})
            await self.ev.emit("connection.update", {"connection": "open"})
        elif status == "FAILED":
            await self._emit_close(DisconnectReason.CONNECTION_LOST, "session failed")
        elif status == "STOPPED":
            if self._logged_out:
                await self._emit_close(DisconnectReason.LOGGED_OUT, "logged out")
            else:
                await self._emit_close(DisconnectReason.CONNECTION_CLOSED, "session stopped")

    # --------------------------------------------------------------- auth

    async def get_qr(self) -> str:
        data = await self._request("GET", f"/api/{self.session_name}/auth/qr", params={"format": "raw"})
        return data["value"]

    async def request_pairing_code(self, phone_number: str) -> str:
        """
        Запрашивает 8-символьный код привязки вместо QR.

        Args:
            phone_number: Номер телефона аккаунта (только цифры)

        Returns:
            Код привязки
        """
        digits = "".join(ch for ch in phone_number if ch.isdigit())
        data = await self._request(
            "POST",
            f"/api/{self.session_name}/auth/request-code",
            json={"phoneNumber": digits},
        )
        self._code_issued = True
        return data["code"]

    # ------------------------------------------------------------ messages

    async def send_message(self, jid: str, content: Dict[str, Any]) -> Any:
        """
        Отправляет сообщение.

        Args:
            jid: chatId получателя
            content: {"text": ...} | {"image": path, "caption": ...}
                | {"document": path, "fileName": ..., "mimetype": ...}

        Returns:
            Ответ WAHA
        """
        body: Dict[str, Any] = {"session": self.session_name, "chatId": jid}

        if "image" in content:
            body["file"] = await self._file_payload(Path(content["image"]), content.get("mimetype"))
            if content.get("caption"):
                body["caption"] = content["caption"]
            endpoint = "/api/sendImage"
        elif "document" in content:
            body["file"] = await self._file_payload(
                Path(content["document"]), content.get("mimetype"), content.get("fileName")
            )
            endpoint = "/api/sendFile"
        else:
            body["text"] = content.get("text") or ""
            endpoint = "/api/sendText"

        result = await self._request("POST", endpoint, json=body)
        logger.info(f"[WAHA] ✅ Сообщение отправлено в {jid} ({endpoint})")
        return result

    async def _file_payload(self, path: Path, mimetype: Optional[str], filename: Optional[str] = None) -> Dict[str, str]:
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        return {
            "mimetype": mimetype or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
            "filename": filename or path.name,
            "data": base64.b64encode(data).decode("ascii"),
        }

    async def download_media(self, message: IncomingMessage) -> bytes:
        """Скачивает медиа входящего сообщения."""
        content = message.content
        if not isinstance(content, MediaContent) or not content.url:
            raise WhatsAppClientError(f"Message {message.id} has no downloadable media")

        try:
            response = await self._client.get(content.url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WhatsAppClientError(
                f"Media download failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise WhatsAppClientError(f"Media download failed: {e}") from e

        return response.content


def create_waha_socket(config: Config, auth_state: AuthState) -> WahaSocket:
    """Фабрика сокетов по умолчанию."""
    return WahaSocket(config.waha, auth_state, connect_timeout=config.bot.connect_timeout)
