"""
Утилиты времени.

Все метки в БД - наивный UTC, дневные счетчики ключуются днем в UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Текущее время в наивном UTC (одинаково хранится в PostgreSQL и SQLite)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def day_key(moment: Optional[datetime] = None) -> str:
    """Ключ календарного дня в формате YYYY-MM-DD."""
    return (moment or utcnow()).strftime("%Y-%m-%d")


def seconds_since_midnight(moment: Optional[datetime] = None) -> float:
    moment = moment or utcnow()
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return (moment - midnight).total_seconds()
