"""
Настройки автоответчика пользователя.

Настройки живут в таблице bot_configs, текст FAQ - в файле
<user_data_dir>/<user_id>/faq.txt. Клиент дашборда работает с camelCase
ключами, модель - с snake_case; преобразование делается здесь.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database.models import BotConfig
from ..db import queries
from ..memory import ExpiringCache

logger = logging.getLogger(__name__)

FAQ_FILENAME = "faq.txt"

# camelCase ключ клиента -> поле модели BotConfig
WIRE_FIELDS = {
    "useAI": "use_ai",
    "aiApiKey": "ai_api_key",
    "systemPrompt": "system_prompt",
    "useCustomResponses": "use_custom_responses",
    "customResponses": "custom_responses",
    "pauseBotKeyword": "pause_bot_keyword",
}

BOOL_FIELDS = ("use_ai", "use_custom_responses")


def config_to_wire(row: BotConfig) -> Dict[str, Any]:
    """Преобразует строку BotConfig в словарь для клиента."""
    return {wire_key: getattr(row, field_name) for wire_key, field_name in WIRE_FIELDS.items()}


def wire_to_values(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Отбирает из данных клиента известные поля модели.

    faqText и неизвестные ключи не попадают в результат.
    """
    values = {}
    for wire_key, field_name in WIRE_FIELDS.items():
        if wire_key not in data:
            continue
        value = data[wire_key]
        if field_name in BOOL_FIELDS:
            value = bool(value)
        values[field_name] = value

    unknown = set(data) - set(WIRE_FIELDS) - {"faqText", "faqFilename"}
    if unknown:
        logger.warning(f"[CONFIG] ⚠️  Игнорируем неизвестные ключи настроек: {sorted(unknown)}")

    return values


class BotConfigService:
    """
    Чтение и сохранение настроек бота с кэшированием.

    Attributes:
        session_factory: Фабрика сессий БД
        config_cache: Кэш настроек по user_id
        user_data_dir: Каталог пользовательских файлов (FAQ)
    """

    def __init__(self, session_factory: async_sessionmaker, config_cache: ExpiringCache, user_data_dir: Path):
        self.session_factory = session_factory
        self.config_cache = config_cache
        self.user_data_dir = Path(user_data_dir)

    def faq_path(self, user_id: str) -> Path:
        return self.user_data_dir / user_id / FAQ_FILENAME

    def has_faq(self, user_id: str) -> bool:
        return self.faq_path(user_id).exists()

    async def read_faq(self, user_id: str) -> str:
        path = self.faq_path(user_id)
        if not path.exists():
            return ""
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def write_faq(self, user_id: str, text: str) -> None:
        path = self.faq_path(user_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(text)
        logger.info(f"[CONFIG] 📄 FAQ сохранен для {user_id} ({len(text)} символов)")

    async def get_bot_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Возвращает настройки бота (camelCase) или None.

        Если включен AI, в результат подмешивается faqText из файла
        (пустая строка, если файла нет). Результат кэшируется.

        Args:
            user_id: ID пользователя

        Returns:
            Словарь настроек или None, если настроек нет или чтение не удалось
        """
        cached = self.config_cache.get(user_id)
        if cached is not None:
            return cached

        try:
            async with self.session_factory() as session:
                row = await queries.get_bot_config(session, user_id)
            if row is None:
                return None

            config = config_to_wire(row)
            if config["useAI"]:
                config["faqText"] = await self.read_faq(user_id)
        except Exception as e:
            logger.error(f"[CONFIG] ❌ Ошибка чтения настроек для {user_id}: {e}", exc_info=True)
            return None

        self.config_cache.set(user_id, config)
        return config

    async def save_bot_config(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Сохраняет настройки слиянием и сбрасывает кэш.

        faqText в БД не пишется: если это строка, она сохраняется в файл FAQ.
        Ошибки пробрасываются вызывающему (ответ клиенту формирует он).

        Args:
            user_id: ID пользователя
            data: Настройки в формате клиента

        Returns:
            Сохраненные настройки (camelCase, без faqText)
        """
        values = wire_to_values(data)

        async with self.session_factory() as session:
            row = await queries.upsert_bot_config(session, user_id, values)
            saved = config_to_wire(row)
            await session.commit()

        faq_text = data.get("faqText")
        if isinstance(faq_text, str):
            await self.write_faq(user_id, faq_text)

        self.config_cache.invalidate(user_id)
        logger.info(f"[CONFIG] 💾 Настройки сохранены для {user_id}: {sorted(values)}")
        return saved
