"""
Подготовка ответов модели к отправке в WhatsApp.

WhatsApp понимает собственную разметку:
- *text* для жирного текста
- _text_ для курсива
- ~text~ для зачеркнутого
- ```text``` для моноширинного

Модели часто отвечают в HTML или в Markdown, поэтому ответ
переводится в разметку WhatsApp перед отправкой.
"""

import re
import logging

logger = logging.getLogger(__name__)

_HTML_ENTITIES = (
    ('&nbsp;', ' '),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&#39;', "'"),
    ('&amp;', '&'),
)


def _replace_entities(text: str) -> str:
    for entity, char in _HTML_ENTITIES:
        text = text.replace(entity, char)
    return text


def clean_html_tags(text: str) -> str:
    """
    Удаляет HTML-теги без конвертации разметки.

    Args:
        text: Текст с возможными HTML-тегами

    Returns:
        Очищенный текст
    """
    cleaned = re.sub(r'<[^>]+>', '', text)
    return _replace_entities(cleaned).strip()


def clean_text_for_whatsapp(text: str) -> str:
    """
    Конвертирует HTML и Markdown ответа модели в разметку WhatsApp.

    Args:
        text: Ответ модели

    Returns:
        Текст с разметкой WhatsApp
    """
    flags = re.IGNORECASE | re.DOTALL

    # <br> → перевод строки
    text = re.sub(r'<br\s*/?>', '\n', text, flags=re.IGNORECASE)

    # <b>, <strong> → *bold*
    text = re.sub(r'<(b|strong)>(.*?)</\1>', r'*\2*', text, flags=flags)

    # <i>, <em> → _italic_
    text = re.sub(r'<(i|em)>(.*?)</\1>', r'_\2_', text, flags=flags)

    # <s>, <strike>, <del> → ~strikethrough~
    text = re.sub(r'<(s|strike|del)>(.*?)</\1>', r'~\2~', text, flags=flags)

    # <code>, <pre> → ```monospace```
    text = re.sub(r'<(code|pre)>(.*?)</\1>', r'```\2```', text, flags=flags)

    # Markdown: **bold** / __bold__ → *bold*
    text = re.sub(r'\*\*(.+?)\*\*', r'*\1*', text, flags=re.DOTALL)
    text = re.sub(r'__(.+?)__', r'*\1*', text, flags=re.DOTALL)

    # Markdown заголовки: "## Title" → "*Title*"
    text = re.sub(r'^#{1,6}\s+(.+?)\s*$', r'*\1*', text, flags=re.MULTILINE)

    # Оставшиеся HTML-теги
    text = re.sub(r'<[^>]+>', '', text)

    return _replace_entities(text).strip()
