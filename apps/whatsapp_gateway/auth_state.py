"""
Хранение учетных данных WhatsApp-сессии на диске.

Каждый пользователь дашборда получает свою папку <sessions_dir>/<user_id>/
с файлом creds.json. Отсутствие файла означает "чистые" учетные данные:
сессия на стороне WAHA будет пересоздана и начнется новый вход (QR / код).
"""

import hashlib
import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import aiofiles

logger = logging.getLogger(__name__)

CREDS_FILENAME = "creds.json"


def session_name_for(user_id: str) -> str:
    """
    Детерминированное имя сессии WAHA для пользователя.

    WAHA допускает в имени только латиницу, цифры, "_" и "-", поэтому
    к очищенному id добавляется хэш исходного: разные id не совпадают.
    """
    sanitized = re.sub(r"[^A-Za-z0-9_-]", "_", user_id)
    digest = hashlib.sha1(user_id.encode("utf-8")).hexdigest()[:10]
    return f"u_{sanitized}_{digest}"


@dataclass
class AuthState:
    """
    Учетные данные одной сессии.

    Attributes:
        folder: Папка с учетными данными
        creds: Содержимое creds.json (session, registered, me)
        is_fresh: True, если файл отсутствовал при загрузке
    """

    folder: Path
    creds: Dict[str, Any] = field(default_factory=dict)
    is_fresh: bool = True

    @property
    def creds_path(self) -> Path:
        return self.folder / CREDS_FILENAME

    async def save_creds(self, update: Dict[str, Any]) -> None:
        """Сливает обновление в creds и записывает файл."""
        self.creds.update(update)
        self.folder.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.creds_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(self.creds, ensure_ascii=False, indent=2))
        self.is_fresh = False
        logger.debug(f"[AUTH] 💾 creds сохранены: {self.creds_path}")


async def use_multi_file_auth_state(folder: Path, user_id: str) -> AuthState:
    """
    Загружает учетные данные пользователя из папки.

    Ошибки чтения (битый JSON, нет доступа) пробрасываются вызывающему.

    Args:
        folder: Папка учетных данных пользователя
        user_id: ID пользователя дашборда

    Returns:
        AuthState
    """
    folder = Path(folder)
    creds_path = folder / CREDS_FILENAME

    if not creds_path.exists():
        logger.info(f"[AUTH] 🆕 Нет сохраненных учетных данных для {user_id}")
        return AuthState(
            folder=folder,
            creds={"session": session_name_for(user_id), "registered": False, "me": None},
            is_fresh=True,
        )

    async with aiofiles.open(creds_path, "r", encoding="utf-8") as f:
        creds = json.loads(await f.read())

    creds.setdefault("session", session_name_for(user_id))
    logger.info(f"[AUTH] 📂 Загружены учетные данные {user_id} (session: {creds['session']})")
    return AuthState(folder=folder, creds=creds, is_fresh=False)


def remove_auth_folder(folder: Path) -> bool:
    """
    Удаляет папку учетных данных.

    Returns:
        True, если папка существовала
    """
    folder = Path(folder)
    if not folder.exists():
        return False
    shutil.rmtree(folder, ignore_errors=True)
    logger.info(f"[AUTH] 🗑️  Учетные данные удалены: {folder}")
    return True
