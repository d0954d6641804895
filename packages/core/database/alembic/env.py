"""
Alembic environment configuration.

Этот модуль настраивает Alembic для работы с нашей базой данных.
Поддерживает как online (async подключение через asyncpg), так и offline
(SQL скрипт) миграции. URL берется из той же конфигурации, что и у приложения.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from packages.core.config import build_database_url, DatabaseConfig
from packages.core.database.models import Base

from dotenv import load_dotenv

# Загружаем переменные окружения из .env файла
load_dotenv()

# Alembic Config object
config = context.config

# Устанавливаем sqlalchemy.url из нашей конфигурации
config.set_main_option("sqlalchemy.url", DatabaseConfig(url=build_database_url()).async_url)

# Интерпретация конфигурационного файла для логирования
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Метаданные для автогенерации миграций
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """
    Run migrations in 'offline' mode.

    Генерирует SQL скрипт без подключения к БД.
    Полезно для ревью миграций или применения на production вручную.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,              # Сравнивать типы колонок
        include_schemas=False,          # Не включать другие схемы
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """
    Run migrations in 'online' mode.

    Подключается к БД через async engine и применяет миграции.
    """
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
