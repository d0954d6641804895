"""
AI-модуль для автоответов контактам.
Использует OpenAI Chat Completions с ключом пользователя.
"""

from .assistant import AIResponder, build_prompt, format_history
from .response_parser import clean_html_tags, clean_text_for_whatsapp

__all__ = [
    'AIResponder',
    'build_prompt',
    'format_history',
    'clean_html_tags',
    'clean_text_for_whatsapp',
]
