"""
Модуль интернационализации (i18n).

Тексты, которые видит пользователь (журнал активности, сообщение о передаче
оператору, уведомления об отключении, подписи в промпте AI), хранятся в
JSON файлах locales/<language>.json.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

LOCALES_DIR = Path(__file__).parent / "locales"
DEFAULT_LANGUAGE = "en"


class I18n:
    """
    Изолированный экземпляр системы локализации.

    Каждый экземпляр загружает тексты одного языка и не влияет на другие.
    """

    def __init__(self, language: str = DEFAULT_LANGUAGE):
        """
        Args:
            language: Код языка (en, pt)
        """
        self.language = language
        self._texts: Dict[str, Any] = {}
        self._load_texts()

    def _load_texts(self):
        """Загружает тексты из JSON файла."""
        locale_file = LOCALES_DIR / f"{self.language}.json"

        if not locale_file.exists():
            raise FileNotFoundError(
                f"Locale file not found: {locale_file}\n"
                f"Please create locales/{self.language}.json"
            )

        with open(locale_file, 'r', encoding='utf-8') as f:
            self._texts = json.load(f)

    def get(self, key: str, **kwargs) -> str:
        """
        Получает текст по ключу с поддержкой вложенных ключей.

        Args:
            key: Ключ текста (может быть вложенным, например "activity.connected")
            **kwargs: Параметры для форматирования строки

        Returns:
            Локализованный текст

        Examples:
            >>> i18n.get("handoff_message")
            >>> i18n.get("activity.message_received", name="Maria")
        """
        keys = key.split('.')
        value = self._texts

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                break

        if value is None:
            return f"[Missing translation: {key}]"

        if kwargs and isinstance(value, str):
            try:
                return value.format(**kwargs)
            except KeyError as e:
                return f"[Format error in {key}: {e}]"

        return value

    @property
    def current_language(self) -> str:
        """Возвращает текущий язык."""
        return self.language


def load_i18n(language: str) -> I18n:
    """
    Создает I18n для указанного языка, откатываясь на язык по умолчанию.

    Args:
        language: Код языка из конфигурации

    Returns:
        I18n: Экземпляр локализации
    """
    try:
        return I18n(language=language)
    except FileNotFoundError:
        logger.warning(f"⚠️  Localization file not found for '{language}', using '{DEFAULT_LANGUAGE}'")
        return I18n(language=DEFAULT_LANGUAGE)
