"""JWT helpers for authenticating API callers."""

from datetime import (
    datetime,
    timedelta,
    timezone,
)
from typing import Optional

import jwt

from app.core.config import settings
from app.core.logging import logger


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed access token for a user.

    Args:
        user_id: The user the token identifies.
        expires_delta: Token lifetime. Defaults to ``JWT_ACCESS_TOKEN_EXPIRE_MINUTES``.

    Returns:
        str: The encoded JWT.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": user_id, "iat": now, "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[str]:
    """Verify a token and return the user id it carries.

    Returns:
        Optional[str]: The user id, or None if the token is invalid or expired.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.warning("token_verification_failed", error=str(e))
        return None

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        logger.warning("token_missing_subject")
        return None
    return user_id
