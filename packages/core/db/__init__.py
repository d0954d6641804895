"""
Модуль для работы с базой данных.
"""

from .connection import init_db, close_db, create_engine, create_session_factory
from . import queries

__all__ = [
    "init_db",
    "close_db",
    "create_engine",
    "create_session_factory",
    "queries",
]
