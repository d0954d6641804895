"""
In-memory кэши процесса.

ExpiringCache хранит значения с временем жизни: срок проверяется при чтении,
таймеры не создаются, поэтому ранняя инвалидация ничего не "подвешивает".
Записи, которые больше не читают, вычищаются при записи не чаще раза за ttl.
Используется для кэша конфигурации бота (ключ user_id) и кэша истории
сообщений тикета (ключ (user_id, ticket_id)).
"""

import logging
import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class ExpiringCache(Generic[V]):
    """
    Key-value кэш с истечением по времени и явной инвалидацией.

    Attributes:
        ttl: Время жизни записи в секундах
        name: Имя кэша для логов
    """

    def __init__(self, ttl: float = 300.0, name: str = "cache",
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl: Время жизни записи в секундах (по умолчанию 5 минут)
            name: Имя кэша для логов
            clock: Источник монотонного времени (подменяется в тестах)
        """
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._storage: Dict[Hashable, Tuple[float, V]] = {}
        self._next_sweep = self._clock() + ttl

    def get(self, key: Hashable) -> Optional[V]:
        """
        Возвращает значение или None, если записи нет или она устарела.

        Устаревшая запись удаляется при чтении.
        """
        entry = self._storage.get(key)
        if entry is None:
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._storage[key]
            logger.debug(f"⏱️  [{self.name}] Запись {key!r} устарела")
            return None

        return value

    def set(self, key: Hashable, value: V) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._next_sweep = now + self.ttl
            removed = self.cleanup_expired()
            if removed:
                logger.debug(f"🧹 [{self.name}] Удалено устаревших записей: {removed}")
        self._storage[key] = (now + self.ttl, value)

    def invalidate(self, key: Hashable) -> None:
        """Удаляет запись (нет записи - не ошибка)."""
        if self._storage.pop(key, None) is not None:
            logger.debug(f"🗑️  [{self.name}] Инвалидирована запись {key!r}")

    def cleanup_expired(self) -> int:
        """
        Очищает все устаревшие записи.

        Returns:
            Количество удаленных записей
        """
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._storage.items() if now >= expires_at]
        for key in expired:
            del self._storage[key]
        return len(expired)

    def clear(self) -> None:
        self._storage.clear()

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._storage)
