"""
Генеративный AI-ответчик на базе OpenAI Chat Completions.

Каждый пользователь дашборда указывает собственный API ключ, поэтому
клиент OpenAI создается на вызов и закрывается вместе с его пулом соединений. Ответ строится ОДНИМ запросом:
системный промпт + FAQ + последние сообщения тикета + новое сообщение.
"""

import logging
from typing import Any, Dict, List, Optional

import openai

from ..i18n import I18n
from .response_parser import clean_text_for_whatsapp

logger = logging.getLogger(__name__)


def format_history(history: List[Dict[str, Any]], i18n: I18n) -> str:
    """
    Форматирует историю тикета строками "Client: ..." / "You: ...".

    Args:
        history: Сообщения тикета в хронологическом порядке (dict с sender/text)
        i18n: Локализация подписей

    Returns:
        История одной строкой
    """
    client_label = i18n.get("ai.client_label")
    you_label = i18n.get("ai.you_label")

    lines = []
    for item in history:
        label = client_label if item.get("sender") == "contact" else you_label
        lines.append(f"{label}: {item.get('text') or ''}")
    return "\n".join(lines)


def build_prompt(
    i18n: I18n,
    system_prompt: Optional[str],
    faq_text: Optional[str],
    history: List[Dict[str, Any]],
    current_message: str,
) -> str:
    """Собирает единый промпт для модели."""
    sections = [
        system_prompt or "",
        "---",
        i18n.get("ai.knowledge_base"),
        faq_text or i18n.get("ai.no_faq"),
        "---",
        i18n.get("ai.history"),
        format_history(history, i18n),
        "---",
        i18n.get("ai.new_message"),
        current_message,
        i18n.get("ai.your_answer"),
    ]
    return "\n".join(sections)


class AIResponder:
    """
    Генерация ответа контакту.

    Attributes:
        i18n: Локализация промпта и fallback-ответа
        model: Имя модели OpenAI
        timeout: Таймаут запроса в секундах
    """

    def __init__(self, i18n: I18n, model: str = "gpt-4o-mini", timeout: float = 30.0):
        self.i18n = i18n
        self.model = model
        self.timeout = timeout

        logger.info(f"✅ AIResponder инициализирован (model: {self.model})")

    def _create_client(self, api_key: str) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(api_key=api_key, timeout=self.timeout)

    async def generate_reply(
        self,
        api_key: str,
        system_prompt: Optional[str],
        faq_text: Optional[str],
        history: List[Dict[str, Any]],
        current_message: str,
    ) -> str:
        """
        Получает ответ модели на новое сообщение контакта.

        Ошибки API не пробрасываются: вместо ответа возвращается
        локализованный fallback-текст.

        Args:
            api_key: OpenAI API ключ пользователя
            system_prompt: Системный промпт из настроек бота
            faq_text: Текст FAQ (может быть пустым)
            history: Последние сообщения тикета
            current_message: Новое сообщение контакта

        Returns:
            Текст ответа в разметке WhatsApp (может быть пустым)
        """
        prompt = build_prompt(self.i18n, system_prompt, faq_text, history, current_message)
        logger.info(f"💬 [AI] Запрос к {self.model} ({len(prompt)} символов, история: {len(history)})")

        try:
            async with self._create_client(api_key) as client:
                completion = await client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                )
            response_text = completion.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"❌ [AI] Ошибка генерации ответа: {type(e).__name__}: {e}")
            return self.i18n.get("ai.fallback")

        logger.info(f"💬 [AI] Получен ответ ({len(response_text)} символов)")
        return clean_text_for_whatsapp(response_text)
