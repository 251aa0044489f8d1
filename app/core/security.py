"""
JWT utilities for the realtime layer.
Tokens are issued by the platform's auth service; this module only needs to
verify them (and mint them for local development and tests).
Uses python-jose for JWT encoding and validation.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import jwt, JWTError, ExpiredSignatureError
from core.config import settings


class TokenError(Exception):
    """Raised when a bearer token cannot be accepted."""


class TokenExpiredError(TokenError):
    """Raised when a bearer token is past its expiry."""


def create_access_token(user_id: int, role: str = "CLIENT", expires_minutes: Optional[int] = None) -> str:
    """
    Create a signed JWT access token.

    Args:
        user_id: User ID to encode in the token
        role: Role claim carried alongside the subject
        expires_minutes: Override for the configured lifetime (negative values mint expired tokens)

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    lifetime = settings.access_token_expire_minutes if expires_minutes is None else expires_minutes
    expires_at = now + timedelta(minutes=lifetime)

    payload = {
        "user_id": user_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access"
    }

    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload

    Raises:
        TokenExpiredError: if the signature is valid but the token has expired
        TokenError: if the token is malformed, badly signed, or not an access token
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as e:
        raise TokenExpiredError("Token has expired") from e
    except JWTError as e:
        raise TokenError("Token verification failed") from e

    if payload.get("type") != "access":
        raise TokenError("Invalid token type")

    user_id = payload.get("user_id")
    if not isinstance(user_id, int):
        raise TokenError("Invalid token payload")

    return payload
