from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from jose import JWTError, jwt

from src.core.config import settings
from src.core.exceptions import AuthenticationError


def create_access_token(
    user_id: int,
    organization_id: int,
    permissions: Iterable[str] = (),
    expires_minutes: int | None = None,
) -> str:
    """
    Create JWT access token.

    Tokens are normally issued by the identity service; this helper signs the
    same claims for operators and tests.
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    payload = {
        "sub": str(user_id),
        "org": organization_id,
        "perms": [str(p) for p in permissions],
        "type": "access",
        "exp": expire,
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, token_type: str = "access") -> dict[str, Any]:
    """
    Decode and validate JWT token.

    Args:
        token: JWT token string
        token_type: Expected token type

    Returns:
        Decoded token payload

    Raises:
        AuthenticationError: If token is invalid, expired or missing claims
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {str(e)}")

    if payload.get("type") != token_type:
        raise AuthenticationError(f"Invalid token type, expected {token_type}")
    if "sub" not in payload or "org" not in payload:
        raise AuthenticationError("Token is missing identity claims")

    return payload
