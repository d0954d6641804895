"""
Проверка bearer-токенов identity provider.

Токены выпускаются внешним сервисом; шлюз только проверяет подпись
и извлекает ID пользователя (claim user_id, иначе sub).
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from packages.core.config import AuthConfig

logger = logging.getLogger(__name__)


class InvalidTokenError(Exception):
    """Токен не прошел проверку."""


def verify_token(token: Optional[str], config: AuthConfig) -> str:
    """
    Проверяет токен и возвращает ID пользователя.

    Args:
        token: JWT из заголовка Authorization или события authenticate
        config: Параметры проверки

    Returns:
        user_id

    Raises:
        InvalidTokenError: Токен пустой, подпись неверна, истек или без ID
    """
    if not token or not config.jwt_key:
        raise InvalidTokenError("Token or verification key is missing")

    options = {"verify_aud": config.audience is not None}
    try:
        claims = jwt.decode(
            token,
            config.jwt_key,
            algorithms=config.algorithms,
            audience=config.audience,
            issuer=config.issuer,
            options=options,
        )
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e

    user_id = str(claims.get("user_id") or claims.get("sub") or "").strip()
    if not user_id:
        raise InvalidTokenError("Token has no user id")
    return user_id


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


async def require_user(request: Request) -> str:
    """
    FastAPI dependency: ID пользователя из Bearer токена.

    401 - токена нет, 403 - токен недействителен.
    """
    token = extract_bearer_token(request)
    if token is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    ctx = request.app.state.ctx
    try:
        return verify_token(token, ctx.config.auth)
    except InvalidTokenError as e:
        logger.warning(f"[AUTH] ⛔ Токен отклонен: {e}")
        raise HTTPException(status_code=403, detail="Forbidden")
