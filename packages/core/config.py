"""
Конфигурация WhatsApp-дашборда.

Все параметры читаются из переменных окружения (и .env файла).
Каждый вызов create_config() создает НОВЫЙ независимый экземпляр,
поэтому тесты и приложение не делят состояние через модуль.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List
from urllib.parse import quote_plus

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    try:
        return int(value) if value is not None else default
    except ValueError:
        logger.warning(f"⚠️  {name}={value!r} не является числом, используем {default}")
        return default


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    try:
        return float(value) if value is not None else default
    except ValueError:
        logger.warning(f"⚠️  {name}={value!r} не является числом, используем {default}")
        return default


@dataclass
class DatabaseConfig:
    """Конфигурация базы данных (PostgreSQL в production, SQLite в тестах)."""

    url: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    create_tables: bool = False

    @property
    def async_url(self) -> str:
        """URL для асинхронного подключения (asyncpg)."""
        if self.url.startswith("postgresql://"):
            return self.url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if self.url.startswith("postgres://"):
            return self.url.replace("postgres://", "postgresql+asyncpg://", 1)
        return self.url

    @property
    def is_postgres(self) -> bool:
        return self.async_url.startswith("postgresql")


@dataclass
class WahaConfig:
    """Подключение к WAHA (WhatsApp HTTP API) - мост к протоколу WhatsApp Web."""

    base_url: str = "http://localhost:3000"
    api_key: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_hmac_key: Optional[str] = None
    qr_poll_interval: float = 10.0
    timeout: float = 30.0


@dataclass
class AuthConfig:
    """Проверка bearer-токенов, выпущенных внешним identity provider."""

    jwt_key: str = ""
    algorithms: List[str] = field(default_factory=lambda: ["HS256"])
    audience: Optional[str] = None
    issuer: Optional[str] = None


@dataclass
class StorageConfig:
    """Каталоги на диске: credentials сессий, медиа и FAQ файлы."""

    sessions_dir: Path
    media_dir: Path
    user_data_dir: Path
    public_base_url: str = ""

    def ensure_dirs(self) -> None:
        for directory in (self.sessions_dir, self.media_dir, self.user_data_dir):
            directory.mkdir(parents=True, exist_ok=True)


@dataclass
class BotRuntimeConfig:
    """Поведение бота: тайминги, лимиты, язык и модель AI."""

    language: str = "en"
    openai_model: str = "gpt-4o-mini"
    reconnect_delay: float = 15.0
    connect_timeout: float = 60.0
    cache_ttl: float = 300.0
    messages_limit: int = 100
    activity_limit: int = 50
    history_limit: int = 10
    default_reply_delay_ms: int = 500


@dataclass
class Config:
    """Полная конфигурация процесса."""

    database: DatabaseConfig
    waha: WahaConfig
    auth: AuthConfig
    storage: StorageConfig
    bot: BotRuntimeConfig = field(default_factory=BotRuntimeConfig)
    debug: bool = False


def build_database_url() -> str:
    """
    Собирает URL подключения к БД.

    Приоритет у DATABASE_URL; иначе URL собирается из DB_* переменных.

    Raises:
        ValueError: Если не задан ни DATABASE_URL, ни DB_NAME
    """
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    db_name = os.getenv("DB_NAME")
    if not db_name:
        raise ValueError(
            "DATABASE_URL не установлен в переменных окружения! "
            "Установите DATABASE_URL или DB_HOST/DB_PORT/DB_NAME/DB_USER/DB_PASSWORD."
        )

    host = os.getenv("DB_HOST", "localhost")
    port = int(os.getenv("DB_PORT", "5432"))
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")

    if password:
        return f"postgresql://{user}:{quote_plus(password)}@{host}:{port}/{db_name}"
    # Без пароля (локальные подключения с peer authentication)
    return f"postgresql://{user}@{host}:{port}/{db_name}"


def create_config(env_path: Optional[Path] = None) -> Config:
    """
    Создает ИЗОЛИРОВАННЫЙ экземпляр конфигурации из окружения.

    Args:
        env_path: Путь к .env файлу (если None, используется текущая директория)

    Returns:
        Config: Объект конфигурации

    Raises:
        ValueError: Если не настроено подключение к БД
    """
    if env_path:
        load_dotenv(dotenv_path=env_path)
    else:
        load_dotenv()

    database = DatabaseConfig(
        url=build_database_url(),
        echo=_get_bool("DB_ECHO", False),
        pool_size=_get_int("DB_POOL_SIZE", 5),
        max_overflow=_get_int("DB_MAX_OVERFLOW", 10),
        create_tables=_get_bool("DB_CREATE_TABLES", False),
    )

    waha = WahaConfig(
        base_url=os.getenv("WAHA_BASE_URL", "http://localhost:3000").rstrip("/"),
        api_key=os.getenv("WAHA_API_KEY") or None,
        webhook_url=os.getenv("WAHA_WEBHOOK_URL") or None,
        webhook_hmac_key=os.getenv("WAHA_WEBHOOK_HMAC_KEY") or None,
        qr_poll_interval=_get_float("WAHA_QR_POLL_INTERVAL", 10.0),
        timeout=_get_float("WAHA_TIMEOUT", 30.0),
    )

    algorithms_str = os.getenv("AUTH_JWT_ALGORITHMS", "HS256")
    auth = AuthConfig(
        jwt_key=os.getenv("AUTH_JWT_KEY", ""),
        algorithms=[alg.strip() for alg in algorithms_str.split(",") if alg.strip()],
        audience=os.getenv("AUTH_JWT_AUDIENCE") or None,
        issuer=os.getenv("AUTH_JWT_ISSUER") or None,
    )
    if not auth.jwt_key:
        logger.warning("⚠️  AUTH_JWT_KEY не установлен - все токены будут отклонены")
    if not waha.webhook_hmac_key:
        logger.warning("⚠️  WAHA_WEBHOOK_HMAC_KEY не установлен - подпись вебхуков не проверяется")

    storage = StorageConfig(
        sessions_dir=Path(os.getenv("SESSIONS_DIR", str(BASE_DIR / "sessions"))).resolve(),
        media_dir=Path(os.getenv("MEDIA_DIR", str(BASE_DIR / "public" / "media"))).resolve(),
        user_data_dir=Path(os.getenv("USER_DATA_DIR", str(BASE_DIR / "user_data"))).resolve(),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
    )

    bot = BotRuntimeConfig(
        language=os.getenv("BOT_LANGUAGE", "en"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        reconnect_delay=_get_float("RECONNECT_DELAY_SECONDS", 15.0),
        connect_timeout=_get_float("CONNECT_TIMEOUT_SECONDS", 60.0),
        cache_ttl=_get_float("CACHE_TTL_SECONDS", 300.0),
        messages_limit=_get_int("MESSAGES_LIMIT", 100),
        activity_limit=_get_int("ACTIVITY_LIMIT", 50),
        history_limit=_get_int("HISTORY_LIMIT", 10),
        default_reply_delay_ms=_get_int("DEFAULT_REPLY_DELAY_MS", 500),
    )

    config = Config(
        database=database,
        waha=waha,
        auth=auth,
        storage=storage,
        bot=bot,
        debug=_get_bool("DEBUG", False),
    )

    logger.info(f"[create_config] waha={waha.base_url} webhook={waha.webhook_url!r}")
    logger.info(f"[create_config] language={bot.language} openai_model={bot.openai_model}")
    logger.info(f"[create_config] media_dir={storage.media_dir}")

    return config
