"""
Снимок дашборда пользователя: статус бота, дневные счетчики, активность.
"""

import logging
from typing import Any, Dict, List, Optional

from packages.core.utils.clock import utcnow, seconds_since_midnight

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_QR_READY = "qr_ready"
STATUS_OFFLINE = "offline"


def compute_dashboard_payload(
    status: str,
    daily: Dict[str, float],
    recent_activity: List[Dict[str, Any]],
    live_uptime_seconds: float,
    seconds_today: float,
) -> Dict[str, Any]:
    """
    Собирает payload события dashboard_update.

    Args:
        status: online / qr_ready / offline
        daily: Сегодняшние счетчики (пустой словарь, если строки нет)
        recent_activity: Последние записи журнала активности
        live_uptime_seconds: Время текущего подключения в секундах
        seconds_today: Секунд с полуночи UTC

    Returns:
        Словарь в формате клиента дашборда
    """
    messages_sent = daily.get("messages_sent", 0)
    messages_failed = daily.get("messages_failed", 0)
    attempts = messages_sent + messages_failed
    delivery_rate = (messages_sent / attempts) * 100 if attempts > 0 else 100

    response_count = daily.get("response_count", 0)
    total_response_time = daily.get("total_response_time", 0)
    avg_response_time = (total_response_time / response_count / 1000) if response_count > 0 else 0

    total_uptime = daily.get("total_uptime", 0) + live_uptime_seconds
    uptime_percentage = min((total_uptime / seconds_today) * 100, 100) if seconds_today > 0 else 100

    return {
        "messagesSent": messages_sent,
        "messagesPending": daily.get("messages_pending", 0),
        "messagesFailed": messages_failed,
        "connections": 1 if status == STATUS_ONLINE else 0,
        "botStatus": status,
        "recentActivity": recent_activity,
        "deliveryRate": delivery_rate,
        "avgResponseTime": avg_response_time,
        "uptimePercentage": uptime_percentage,
    }


class DashboardEmitter:
    """Пересчитывает и отправляет снимок дашборда подписчикам пользователя."""

    def __init__(self, ctx):
        self.ctx = ctx

    def bot_status(self, user_id: str) -> str:
        registry = self.ctx.registry
        if registry.is_online(user_id):
            return STATUS_ONLINE
        if user_id in registry.qr_codes:
            return STATUS_QR_READY
        return STATUS_OFFLINE

    async def build_snapshot(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Строит снимок дашборда.

        Returns:
            Payload или None, если не удалось прочитать счетчики
        """
        daily, ok = await self.ctx.recorder.get_today_stats(user_id)
        if not ok:
            return None

        recent_activity = await self.ctx.recorder.get_recent_activity(user_id, limit=5)

        now = utcnow()
        live_uptime = 0.0
        connected_at = self.ctx.registry.connection_timestamps.get(user_id)
        if connected_at is not None:
            live_uptime = max((now - connected_at).total_seconds(), 0.0)

        return compute_dashboard_payload(
            self.bot_status(user_id),
            daily,
            recent_activity,
            live_uptime,
            seconds_since_midnight(now),
        )

    async def emit_dashboard_update(self, user_id: str) -> None:
        """Отправляет dashboard_update, если у пользователя есть подписчики."""
        if not self.ctx.connections.has_subscribers(user_id):
            return

        payload = await self.build_snapshot(user_id)
        if payload is None:
            logger.warning(f"[DASHBOARD] ⚠️  Снимок для {user_id} не построен")
            return

        await self.ctx.connections.emit_to_user(user_id, "dashboard_update", payload)
        logger.debug(f"[DASHBOARD] 📊 {user_id}: {payload['botStatus']}")
