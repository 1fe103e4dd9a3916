"""Bearer token issuing and verification (python-jose).

Billing endpoints only consume access tokens; refresh tokens are issued
alongside them for the session layer.
"""

from datetime import datetime, timedelta, timezone
from typing import Literal

from jose import jwt

from paybridge.config import settings

TokenType = Literal["access", "refresh"]


def _encode(subject: str, token_type: TokenType, lifetime: timedelta, extra: dict | None = None) -> str:
    now = datetime.now(timezone.utc)
    claims = dict(extra or {})
    claims.update({"sub": subject, "type": token_type, "iat": now, "exp": now + lifetime})
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: str, expires_delta: timedelta | None = None, **claims) -> str:
    """Create a short-lived access token for ``user_id``.

    Defaults to ``settings.jwt_access_token_expire_minutes``.
    """
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    return _encode(user_id, "access", lifetime, claims)


def create_refresh_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    lifetime = expires_delta or timedelta(days=settings.jwt_refresh_token_expire_days)
    return _encode(user_id, "refresh", lifetime)


def decode_token(token: str) -> dict:
    """Decode and verify a token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def create_token_pair(user_id: str) -> dict[str, str]:
    return {
        "access_token": create_access_token(user_id),
        "refresh_token": create_refresh_token(user_id),
        "token_type": "bearer",
    }
