"""
Общие фикстуры тестов.

БД - SQLite файл во временной папке (таблицы создаются синхронным engine),
WhatsApp-сокет и AI-ответчик подменены in-memory заглушками.
"""

import hashlib
import hmac
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import sqlalchemy as sa
from jose import jwt
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from apps.whatsapp_gateway.auth_state import AuthState, session_name_for
from apps.whatsapp_gateway.state_manager import GatewayContext
from apps.whatsapp_gateway.waha_client import (
    DisconnectReason,
    EventEmitter,
    IncomingMessage,
    MediaContent,
    TextContent,
    WhatsAppClientError,
)
from packages.core.config import (
    AuthConfig,
    BotRuntimeConfig,
    Config,
    DatabaseConfig,
    StorageConfig,
    WahaConfig,
)
from packages.core.database.models import Base
from packages.core.db import create_session_factory
from packages.core.i18n import I18n

USER_ID = "user-1"
CONTACT_PHONE = "5511988887777"
CONTACT_JID = f"{CONTACT_PHONE}@c.us"
JWT_KEY = "test-secret"
WEBHOOK_KEY = "webhook-secret"


def make_token(user_id: str = USER_ID, key: str = JWT_KEY) -> str:
    return jwt.encode({"sub": user_id}, key, algorithm="HS256")


def sign_webhook(body: Dict[str, Any], key: str = WEBHOOK_KEY) -> tuple:
    """Тело вебхука и заголовки с подписью HMAC-SHA512, как их шлет WAHA."""
    raw = json.dumps(body).encode("utf-8")
    signature = hmac.new(key.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return raw, {"Content-Type": "application/json", "X-Webhook-Hmac": signature, "X-Webhook-Hmac-Algorithm": "sha512"}


def incoming_text(text: str, phone: str = CONTACT_PHONE, name: Optional[str] = "Maria", **kwargs) -> IncomingMessage:
    return IncomingMessage(
        id=kwargs.pop("id", "msg-1"),
        remote_jid=kwargs.pop("remote_jid", f"{phone}@c.us"),
        from_me=kwargs.pop("from_me", False),
        push_name=name,
        content=TextContent(text=text),
    )


def incoming_media(kind: str, caption: Optional[str] = None, phone: str = CONTACT_PHONE,
                   name: Optional[str] = "Maria") -> IncomingMessage:
    return IncomingMessage(
        id="msg-media",
        remote_jid=f"{phone}@c.us",
        from_me=False,
        push_name=name,
        content=MediaContent(kind=kind, caption=caption, mimetype=f"{kind}/test", url="http://waha.test/file"),
    )


class FakeSocket:
    """Сокет без сети: события генерируются тестом вручную."""

    def __init__(self, config: Config, auth_state: AuthState):
        self.config = config
        self.auth_state = auth_state
        self.session_name = auth_state.creds["session"]
        self.ev = EventEmitter()
        self.user: Optional[Dict[str, Any]] = None

        self.sent: List[tuple] = []
        self.webhooks: List[Dict[str, Any]] = []
        self.connect_calls = 0
        self.closed = False
        self.logged_out = False

        self.fail_connect = False
        self.fail_send = False
        self.fail_pairing = False
        self.pairing_code = "ABCD1234"
        self.media_bytes = b"\xff\xd8media"

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise WhatsAppClientError("bridge down", status_code=503)

    async def open(self) -> None:
        self.user = {"id": "5511900000000@c.us"}
        await self.ev.emit("connection.update", {"connection": "open"})

    async def show_qr(self, qr: str = "qr-payload") -> None:
        await self.ev.emit("connection.update", {"qr": qr})

    async def drop(self, reason: DisconnectReason = DisconnectReason.CONNECTION_LOST) -> None:
        self.user = None
        await self.ev.emit("connection.update", {
            "connection": "close",
            "last_disconnect": {"reason": reason, "message": "test"},
        })

    async def logout(self) -> None:
        self.logged_out = True
        await self.drop(DisconnectReason.LOGGED_OUT)

    async def close(self) -> None:
        self.closed = True

    async def request_pairing_code(self, phone_number: str) -> str:
        if self.fail_pairing:
            raise WhatsAppClientError("pairing rejected", status_code=400)
        return self.pairing_code

    async def send_message(self, jid: str, content: Dict[str, Any]) -> Any:
        if self.fail_send:
            raise WhatsAppClientError("send failed", status_code=500)
        self.sent.append((jid, content))
        return {"id": f"out-{len(self.sent)}"}

    async def download_media(self, message: IncomingMessage) -> bytes:
        return self.media_bytes

    async def handle_webhook(self, body: Dict[str, Any]) -> None:
        self.webhooks.append(body)


class FakeSocketFactory:
    """Фабрика сокетов, запоминающая созданные экземпляры."""

    def __init__(self):
        self.created: List[FakeSocket] = []
        self.fail_connect = False

    def __call__(self, config: Config, auth_state: AuthState) -> FakeSocket:
        sock = FakeSocket(config, auth_state)
        sock.fail_connect = self.fail_connect
        self.created.append(sock)
        return sock

    @property
    def last(self) -> FakeSocket:
        return self.created[-1]


class FakeAIResponder:
    def __init__(self, reply: str = "AI answer"):
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    async def generate_reply(self, api_key, system_prompt, faq_text, history, current_message) -> str:
        self.calls.append({
            "api_key": api_key,
            "system_prompt": system_prompt,
            "faq_text": faq_text,
            "history": list(history),
            "current_message": current_message,
        })
        return self.reply


class RecordingWebSocket:
    """Подписчик дашборда, запоминающий отправленные кадры."""

    def __init__(self):
        self.frames: List[Dict[str, Any]] = []

    async def send_json(self, data: Dict[str, Any]) -> None:
        self.frames.append(data)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [frame for frame in self.frames if name is None or frame["event"] == name]

    def event_names(self) -> List[str]:
        return [frame["event"] for frame in self.frames]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    path = tmp_path / "dashboard.db"
    sync_engine = sa.create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def session_factory(database_url: str):
    engine = create_async_engine(database_url, poolclass=NullPool)
    return create_session_factory(engine)


@pytest.fixture
def config(tmp_path: Path, database_url: str) -> Config:
    storage = StorageConfig(
        sessions_dir=tmp_path / "sessions",
        media_dir=tmp_path / "media",
        user_data_dir=tmp_path / "user_data",
        public_base_url="http://testserver",
    )
    storage.ensure_dirs()

    return Config(
        database=DatabaseConfig(url=database_url),
        waha=WahaConfig(base_url="http://waha.test", api_key="waha-key", webhook_hmac_key=WEBHOOK_KEY),
        auth=AuthConfig(jwt_key=JWT_KEY),
        storage=storage,
        bot=BotRuntimeConfig(
            reconnect_delay=0.01,
            connect_timeout=5.0,
            default_reply_delay_ms=0,
        ),
    )


@pytest.fixture
def i18n() -> I18n:
    return I18n("en")


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def ai_responder() -> FakeAIResponder:
    return FakeAIResponder()


@pytest.fixture
async def ctx(config, i18n, session_factory, socket_factory, ai_responder):
    context = GatewayContext(
        config=config,
        i18n=i18n,
        session_factory=session_factory,
        socket_factory=socket_factory,
        ai_responder=ai_responder,
    )
    yield context
    await context.session_manager.shutdown()


@pytest.fixture
def dashboard_ws(ctx) -> RecordingWebSocket:
    websocket = RecordingWebSocket()
    ctx.connections.subscribe(USER_ID, websocket)
    return websocket


@pytest.fixture
def online_socket(ctx, config) -> FakeSocket:
    """Подключенный сокет пользователя, зарегистрированный в реестре."""
    auth_state = AuthState(
        folder=config.storage.sessions_dir / USER_ID,
        creds={"session": session_name_for(USER_ID)},
        is_fresh=False,
    )
    sock = FakeSocket(config, auth_state)
    sock.user = {"id": "5511900000000@c.us"}
    ctx.registry.sessions[USER_ID] = sock
    return sock
