"""
Управление подключением к базе данных.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
)
from sqlalchemy import text

from ..database.models import Base
from ..config import DatabaseConfig

logger = logging.getLogger(__name__)

# Глобальные переменные для engine и session factory
engine: Optional[AsyncEngine] = None
async_session_factory: Optional[async_sessionmaker] = None


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Создает async engine по конфигурации.

    Параметры пула передаются только для PostgreSQL: SQLite (тесты)
    использует собственный пул.
    """
    kwargs = {"echo": config.echo}
    if config.is_postgres:
        kwargs.update(
            pool_pre_ping=True,  # Проверять соединение перед использованием
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
        )
    return create_async_engine(config.async_url, **kwargs)


def create_session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_db(config: DatabaseConfig) -> async_sessionmaker:
    """
    Инициализирует подключение к базе данных.

    Без работающей БД система не может функционировать, поэтому
    ошибка подключения пробрасывается и останавливает старт процесса.

    Args:
        config: Настройки БД

    Returns:
        Фабрика асинхронных сессий
    """
    global engine, async_session_factory

    engine = create_engine(config)
    async_session_factory = create_session_factory(engine)

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if config.create_tables:
                # Только для локальной разработки! В production - Alembic миграции
                await conn.run_sync(Base.metadata.create_all)
                logger.info("🧱 Таблицы созданы (DB_CREATE_TABLES=true)")
        logger.info("✅ База данных инициализирована")
    except Exception as e:
        logger.error(f"❌ Ошибка подключения к БД: {e}")
        raise

    return async_session_factory


async def close_db() -> None:
    """
    Закрывает подключение к базе данных.
    """
    global engine, async_session_factory

    if engine:
        await engine.dispose()
        logger.info("✅ База данных закрыта")
    engine = None
    async_session_factory = None

