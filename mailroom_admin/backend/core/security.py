"""Session tokens for the admin backend.

Access tokens are HMAC-signed JWTs issued by the auth service. The backend
only needs two facts from them: who the caller is (``sub``) and their role.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from mailroom_admin.backend.core.config import get_web_settings

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, role: str) -> str:
    """
    Create JWT access token.

    Args:
        user_id: Token subject (the user's id)
        role: User role ("admin", "owner", "user", ...)

    Returns:
        Encoded JWT token
    """
    settings = get_web_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.jwt_expire_minutes)

    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
        "type": "access",
    }

    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate JWT token.

    Returns:
        Token payload if valid, None otherwise
    """
    settings = get_web_settings()

    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.debug("Token decode error: %s", e)
        return None
