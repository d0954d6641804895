"""
Маршрутизация сообщений WhatsApp.

Входящее сообщение: журнал активности -> история тикета -> тикет ->
автоответ (пауза бота / готовые ответы / AI).
Исходящее сообщение оператора: отправка -> история тикета -> счетчики.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from packages.core.database.models import MessageSender, MessageType
from packages.core.services.tickets import TicketOutcome

from .waha_client import IncomingMessage, MediaContent, is_group_jid, jid_to_phone, to_jid

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = {
    "image": "jpg",
    "audio": "ogg",
    "video": "mp4",
}


def media_file_extension(kind: str) -> str:
    return MEDIA_EXTENSIONS.get(kind, "dat")


def digits_only(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def reply_delay_seconds(delay: Any, default_ms: int) -> float:
    """Пауза после готового ответа: delay в мс (число или строка), иначе default_ms."""
    if not delay:
        return default_ms / 1000
    try:
        value = float(delay)
    except (TypeError, ValueError):
        logger.warning(f"[ROUTER] ⚠️  Некорректная задержка {delay!r}, используем {default_ms} мс")
        return default_ms / 1000
    return max(value, 0.0) / 1000


class MessageRouter:
    """Обработка входящих сообщений и ручная отправка оператором."""

    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def i18n(self):
        return self.ctx.i18n

    def media_url(self, relative_path: str) -> str:
        return f"{self.ctx.config.storage.public_base_url}/media/{relative_path}"

    # ========================================================================
    # ВХОДЯЩИЕ
    # ========================================================================

    async def handle_messages_upsert(self, user_id: str, sock, upsert: Dict[str, Any]) -> None:
        """
        Обрабатывает пакет сообщений из сокета.

        Обрабатывается только первое сообщение пакета.
        """
        messages = upsert.get("messages") or []
        if not messages:
            return
        if len(messages) > 1:
            logger.warning(f"[ROUTER] ⚠️  {user_id}: пакет из {len(messages)} сообщений, обрабатывается только первое")

        try:
            await self.handle_message(user_id, sock, messages[0])
        except Exception as e:
            logger.error(f"[ROUTER] ❌ Ошибка обработки сообщения для {user_id}: {e}", exc_info=True)

    async def handle_message(self, user_id: str, sock, msg: IncomingMessage) -> None:
        registry = self.ctx.registry
        if not registry.is_current(user_id, sock):
            logger.debug(f"[ROUTER] Сообщение от устаревшего сокета {user_id} пропущено")
            return
        if msg.from_me or msg.content is None:
            return
        if is_group_jid(msg.remote_jid):
            return

        phone_number = jid_to_phone(msg.remote_jid)
        contact_name = msg.push_name or phone_number

        # Один тикет обрабатывается последовательно
        async with registry.ticket_lock(user_id, phone_number):
            await self._process_incoming(user_id, sock, msg, phone_number, contact_name)

    async def _process_incoming(
        self,
        user_id: str,
        sock,
        msg: IncomingMessage,
        phone_number: str,
        contact_name: str,
    ) -> None:
        recorder = self.ctx.recorder

        await recorder.log_activity(user_id, self.i18n.get("activity.message_received", name=contact_name))
        logger.info(f"[ROUTER] 💬 {user_id}: сообщение от {contact_name} ({phone_number})")

        content = msg.content
        if isinstance(content, MediaContent):
            message_text = content.caption or f"[{content.kind}]"
            try:
                data = await sock.download_media(msg)
                url = await self._save_media(user_id, content.kind, data)
                await recorder.log_message_to_ticket(
                    user_id, phone_number, content.kind, message_text, MessageSender.CONTACT, url=url
                )
            except Exception as e:
                logger.error(f"[ROUTER] ❌ Не удалось скачать медиа от {phone_number}: {e}")
        else:
            message_text = content.text.strip()
            if not message_text:
                return
            await recorder.log_message_to_ticket(
                user_id, phone_number, MessageType.TEXT, message_text, MessageSender.CONTACT
            )

        ticket, outcome = await self.ctx.tickets.create_or_update_ticket(
            user_id, phone_number, contact_name, message_text, is_contact_message=True
        )
        if outcome == TicketOutcome.CREATED:
            await recorder.log_activity(user_id, self.i18n.get("activity.ticket_created", name=contact_name))
        elif outcome == TicketOutcome.REOPENED:
            await recorder.log_activity(user_id, self.i18n.get("activity.ticket_reopened", name=contact_name))
        await self.ctx.dashboard.emit_dashboard_update(user_id)

        await self._auto_reply(user_id, sock, msg.remote_jid, phone_number, contact_name, message_text, ticket)

    async def _save_media(self, user_id: str, kind: str, data: bytes) -> str:
        user_dir = Path(self.ctx.config.storage.media_dir) / user_id
        user_dir.mkdir(parents=True, exist_ok=True)

        file_name = f"{uuid.uuid4()}.{media_file_extension(kind)}"
        async with aiofiles.open(user_dir / file_name, "wb") as f:
            await f.write(data)

        return self.media_url(f"{user_id}/{file_name}")

    # ========================================================================
    # АВТООТВЕТ
    # ========================================================================

    async def _reply(self, user_id: str, sock, jid: str, phone_number: str, text: str) -> None:
        await sock.send_message(jid, {"text": text})
        await self.ctx.recorder.log_message_to_ticket(
            user_id, phone_number, MessageType.TEXT, text, MessageSender.USER
        )

    async def _auto_reply(
        self,
        user_id: str,
        sock,
        jid: str,
        phone_number: str,
        contact_name: str,
        message_text: str,
        ticket,
    ) -> None:
        ctx = self.ctx
        config = await ctx.bot_configs.get_bot_config(user_id)
        if not config or not (config.get("useAI") or config.get("useCustomResponses")):
            return

        if ticket is None:
            ticket = await ctx.tickets.get_ticket(user_id, phone_number)
        if ticket is not None and ticket.bot_paused:
            logger.info(f"[ROUTER] ⏸️  Бот на паузе для {phone_number}")
            return

        normalized = message_text.strip().lower()

        pause_keyword = (config.get("pauseBotKeyword") or "").strip().lower()
        if pause_keyword and normalized == pause_keyword:
            await ctx.tickets.set_bot_paused(user_id, phone_number, True)
            await self._reply(user_id, sock, jid, phone_number, self.i18n.get("handoff_message"))
            await ctx.recorder.calculate_response_time(user_id, phone_number)
            await ctx.recorder.log_activity(user_id, self.i18n.get("activity.bot_paused", name=contact_name))
            await ctx.dashboard.emit_dashboard_update(user_id)
            logger.info(f"[ROUTER] 🙋 {phone_number}: передан оператору")
            return

        response_sent = False
        custom_responses = config.get("customResponses") or {}
        if config.get("useCustomResponses") and custom_responses:
            entries = custom_responses.get(normalized) or custom_responses.get("menu")
            if entries:
                default_delay = ctx.config.bot.default_reply_delay_ms
                for entry in entries:
                    text = (entry or {}).get("text")
                    if not text:
                        logger.warning(f"[ROUTER] ⚠️  Пустой готовый ответ для ключа {normalized!r} пропущен")
                        continue
                    await self._reply(user_id, sock, jid, phone_number, text)
                    await asyncio.sleep(reply_delay_seconds(entry.get("delay"), default_delay))
                response_sent = True
                await ctx.recorder.calculate_response_time(user_id, phone_number)
                logger.info(f"[ROUTER] 📋 {phone_number}: отправлено готовых ответов: {len(entries)}")

        if not response_sent and config.get("useAI") and config.get("aiApiKey"):
            history = await ctx.tickets.get_message_history(user_id, phone_number)
            reply = await ctx.ai_responder.generate_reply(
                config["aiApiKey"],
                config.get("systemPrompt"),
                config.get("faqText"),
                history,
                message_text,
            )
            if reply:
                await self._reply(user_id, sock, jid, phone_number, reply)
                await ctx.recorder.calculate_response_time(user_id, phone_number)
                logger.info(f"[ROUTER] 🤖 {phone_number}: AI ответ отправлен")

    # ========================================================================
    # РУЧНАЯ ОТПРАВКА
    # ========================================================================

    def _resolve_upload(self, user_id: str, file_path: str) -> Path:
        """Путь загруженного файла внутри каталога медиа пользователя."""
        user_dir = (Path(self.ctx.config.storage.media_dir) / user_id).resolve()
        path = (Path(self.ctx.config.storage.media_dir) / file_path).resolve()
        if user_dir not in path.parents or not path.is_file():
            raise ValueError(f"Media file not found: {file_path}")
        return path

    async def send_manual_message(
        self,
        user_id: str,
        to: Optional[str],
        text: Optional[str],
        media: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Отправляет сообщение оператора контакту.

        Args:
            user_id: ID пользователя дашборда
            to: Номер получателя (любой формат, берутся только цифры)
            text: Текст или подпись к медиа
            media: Загруженный файл {filePath, mimetype, originalName}

        Returns:
            {"success": bool, "message": str}
        """
        ctx = self.ctx
        i18n = self.i18n

        sock = ctx.registry.get_socket(user_id)
        if sock is None or not sock.user:
            return {"success": False, "message": i18n.get("notices.not_connected")}

        phone_number = digits_only(to or "")
        if not phone_number:
            return {"success": False, "message": i18n.get("notices.missing_recipient")}

        text = text or ""
        has_media = bool(media and media.get("filePath"))
        if not text.strip() and not has_media:
            return {"success": False, "message": i18n.get("notices.missing_body")}

        jid = to_jid(phone_number)
        try:
            async with ctx.registry.ticket_lock(user_id, phone_number):
                if has_media:
                    path = self._resolve_upload(user_id, media["filePath"])
                    mimetype = media.get("mimetype") or ""
                    original_name = media.get("originalName") or path.name
                    url = self.media_url(media["filePath"])

                    if mimetype.startswith("image/"):
                        payload = {"image": str(path), "caption": text, "mimetype": mimetype}
                        record = (MessageType.IMAGE, text, url)
                    else:
                        payload = {"document": str(path), "fileName": original_name, "mimetype": mimetype}
                        record = (MessageType.DOCUMENT, original_name, url)
                    preview = text or f"[{record[0]}]"
                else:
                    payload = {"text": text}
                    record = (MessageType.TEXT, text, None)
                    preview = text

                _, outcome = await ctx.tickets.create_or_update_ticket(
                    user_id, phone_number, phone_number, preview, is_contact_message=False
                )
                if outcome == TicketOutcome.CREATED:
                    await ctx.recorder.log_activity(user_id, i18n.get("activity.ticket_created", name=phone_number))

                await sock.send_message(jid, payload)

                message_type, record_text, record_url = record
                await ctx.recorder.update_daily_stats(user_id, "messages_sent", 1)
                await ctx.recorder.log_message_to_ticket(
                    user_id, phone_number, message_type, record_text, MessageSender.USER, url=record_url
                )
                await ctx.recorder.log_activity(user_id, i18n.get("activity.manual_message_sent", phone=phone_number))
        except Exception as e:
            logger.error(f"[ROUTER] ❌ Ручная отправка {user_id} -> {phone_number} не удалась: {e}", exc_info=True)
            await ctx.recorder.update_daily_stats(user_id, "messages_failed", 1)
            await ctx.dashboard.emit_dashboard_update(user_id)
            return {"success": False, "message": i18n.get("notices.send_failed")}

        await ctx.dashboard.emit_dashboard_update(user_id)
        logger.info(f"[ROUTER] 📤 {user_id} -> {phone_number}: отправлено")
        return {"success": True, "message": i18n.get("notices.message_sent")}
