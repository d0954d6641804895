"""
WhatsApp Gateway - FastAPI сервер мульти-пользовательского WhatsApp-дашборда.

HTTP API дашборда, WebSocket канал реального времени и прием вебхуков
от WAHA. Общее ядро (конфигурация, локализация, база данных, сервисы)
берется из packages.core.
"""

import json
import logging
import random
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from fastapi import BackgroundTasks, Body, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from packages.core.config import create_config
from packages.core.db import close_db, init_db
from packages.core.i18n import load_i18n

from .auth import require_user
from .sockets import websocket_endpoint
from .state_manager import GatewayContext
from .waha_client import WhatsAppClientError, verify_webhook_signature

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================================================
# LIFESPAN MANAGER
# ============================================================================

async def build_context() -> GatewayContext:
    """Создает контекст процесса из переменных окружения."""
    config = create_config()
    config.storage.ensure_dirs()

    session_factory = await init_db(config.database)
    i18n = load_i18n(config.bot.language)

    return GatewayContext(config=config, i18n=i18n, session_factory=session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Менеджер жизненного цикла приложения.
    Инициализирует ресурсы при старте и освобождает при остановке.
    """
    logger.info("🚀 Starting WhatsApp Gateway...")

    owns_context = getattr(app.state, "ctx", None) is None
    if owns_context:
        app.state.ctx = await build_context()

    logger.info("✅ WhatsApp Gateway is ready!")

    try:
        yield
    finally:
        logger.info("🛑 Shutting down WhatsApp Gateway...")
        await app.state.ctx.session_manager.shutdown()
        if owns_context:
            await close_db()


def get_ctx(request: Request) -> GatewayContext:
    return request.app.state.ctx


# ============================================================================
# WHATSAPP API
# ============================================================================

async def connect(
    user_id: str = Depends(require_user),
    ctx: GatewayContext = Depends(get_ctx),
):
    """Запускает или перезапускает сессию пользователя (QR-вход)."""
    try:
        await ctx.session_manager.start_session(user_id)
    except WhatsAppClientError as e:
        logger.error(f"❌ Ошибка запуска сессии {user_id}: {e}")
        raise HTTPException(status_code=502, detail="WhatsApp bridge is unavailable")
    except Exception as e:
        logger.error(f"❌ Ошибка запуска сессии {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to start session")

    return {"message": "Connecting..."}


async def request_pairing_code(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    user_id: str = Depends(require_user),
    ctx: GatewayContext = Depends(get_ctx),
):
    """Запускает сессию с входом по коду привязки."""
    phone_number = (payload or {}).get("phoneNumber")
    if not phone_number:
        return JSONResponse({"message": "Phone number is required."}, status_code=400)

    try:
        await ctx.session_manager.start_session(user_id, pairing_phone_number=str(phone_number))
    except WhatsAppClientError as e:
        logger.error(f"❌ Ошибка запуска сессии с кодом привязки {user_id}: {e}")
        raise HTTPException(status_code=502, detail="WhatsApp bridge is unavailable")
    except Exception as e:
        logger.error(f"❌ Ошибка запуска сессии с кодом привязки {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to start session")

    return {"message": "Pairing code requested..."}


async def upload_media(
    mediaFile: Optional[UploadFile] = File(default=None),
    user_id: str = Depends(require_user),
    ctx: GatewayContext = Depends(get_ctx),
):
    """
    Сохраняет файл оператора для последующей отправки.

    Returns:
        {success, message, filePath ("<user>/<file>"), mimetype, originalName}
    """
    if mediaFile is None or not mediaFile.filename:
        return JSONResponse({"success": False, "message": "No file uploaded."}, status_code=400)

    user_dir = ctx.config.storage.media_dir / user_id
    user_dir.mkdir(parents=True, exist_ok=True)

    unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    file_name = f"{unique_suffix}{Path(mediaFile.filename).suffix}"

    content = await mediaFile.read()
    async with aiofiles.open(user_dir / file_name, "wb") as f:
        await f.write(content)

    logger.info(f"📎 Файл {mediaFile.filename} загружен для {user_id} как {file_name}")
    return {
        "success": True,
        "message": "Upload successful!",
        "filePath": f"{user_id}/{file_name}",
        "mimetype": mediaFile.content_type,
        "originalName": mediaFile.filename,
    }


async def logout(
    user_id: str = Depends(require_user),
    ctx: GatewayContext = Depends(get_ctx),
):
    """Выход из WhatsApp и удаление учетных данных."""
    await ctx.session_manager.logout(user_id)
    return {"message": "Session ended successfully."}


# ============================================================================
# WEBHOOK HANDLERS
# ============================================================================

async def webhook_handler(request: Request, background_tasks: BackgroundTasks):
    """
    Endpoint для приема вебхуков от WAHA.

    Событие передается сокету сессии в фоне, чтобы долгие автоответы
    не держали HTTP запрос WAHA. Если задан WAHA_WEBHOOK_HMAC_KEY,
    запросы без верной подписи X-Webhook-Hmac отклоняются.
    """
    ctx: GatewayContext = request.app.state.ctx
    raw_body = await request.body()

    hmac_key = ctx.config.waha.webhook_hmac_key
    if hmac_key and not verify_webhook_signature(raw_body, request.headers.get("X-Webhook-Hmac"), hmac_key):
        logger.warning("⚠️  Webhook rejected: invalid HMAC signature")
        return JSONResponse({"status": "error", "message": "Invalid signature"}, status_code=401)

    try:
        body = json.loads(raw_body)
    except ValueError:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)

    if not isinstance(body, dict):
        return JSONResponse({"status": "error", "message": "Invalid body"}, status_code=400)

    session_name = body.get("session")
    logger.info(f"📨 Received webhook: {body.get('event')} ({session_name})")

    sock = next(
        (s for s in ctx.registry.sessions.values() if getattr(s, "session_name", None) == session_name),
        None,
    )
    if sock is None:
        logger.warning(f"⚠️  Unknown session: {session_name}")
        return JSONResponse({"status": "error", "message": "Unknown session"}, status_code=400)

    background_tasks.add_task(sock.handle_webhook, body)
    return {"status": "ok"}


# ============================================================================
# MEDIA + HEALTH
# ============================================================================

async def get_media(user_id: str, file_name: str, request: Request):
    """Отдает сохраненный медиа-файл."""
    media_dir = Path(request.app.state.ctx.config.storage.media_dir).resolve()
    path = (media_dir / user_id / file_name).resolve()

    if media_dir not in path.parents or not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(path)


async def root(request: Request):
    """Health check endpoint."""
    ctx = request.app.state.ctx
    return {
        "status": "ok",
        "service": "WhatsApp Gateway",
        "version": "1.0.0",
        "active_sessions": len(ctx.registry.sessions) if ctx else 0,
    }


def create_app(context: Optional[GatewayContext] = None) -> FastAPI:
    """
    Создает FastAPI приложение.

    Args:
        context: Готовый контекст (тесты); без него контекст строится в lifespan

    Returns:
        FastAPI
    """
    app = FastAPI(
        title="WhatsApp Gateway",
        description="Multi-user WhatsApp automation dashboard using WAHA",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.ctx = context

    app.add_api_route("/", root, methods=["GET"])
    app.add_api_route("/api/whatsapp/connect", connect, methods=["POST"])
    app.add_api_route("/api/whatsapp/upload-media", upload_media, methods=["POST"])
    app.add_api_route("/api/whatsapp/request-pairing-code", request_pairing_code, methods=["POST"])
    app.add_api_route("/api/whatsapp/logout", logout, methods=["POST"])
    app.add_api_route("/api/whatsapp/webhook", webhook_handler, methods=["POST"])
    app.add_api_route("/media/{user_id}/{file_name}", get_media, methods=["GET"])
    app.add_api_websocket_route("/ws", websocket_endpoint)

    return app


# Создаем FastAPI приложение с lifespan
app = create_app()
