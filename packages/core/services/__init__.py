"""
Сервисы ядра: метрики и журналы, тикеты, настройки бота.
"""

from .recorder import MetricsRecorder
from .tickets import TicketService, TicketOutcome
from .bot_config import BotConfigService

__all__ = [
    "MetricsRecorder",
    "TicketService",
    "TicketOutcome",
    "BotConfigService",
]
