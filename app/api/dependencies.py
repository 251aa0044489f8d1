"""
Dependency injection functions for FastAPI.
Provides database sessions, credential extraction and the identity checks
shared by REST routes and the WebSocket handshake.
"""
import logging
from typing import Generator, Mapping, Optional
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from api.websocket_manager import ConnectionManager
from core.config import settings
from core.security import TokenError, decode_access_token
from db.database import SessionLocal
from db.models import User
from db.repository import Repository

logger = logging.getLogger(__name__)


class HandshakeError(Exception):
    """Identity could not be resolved; `reason` is the client-facing rejection reason."""

    def __init__(self, reason: str, suspended: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.suspended = suspended


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def extract_token(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    query_params: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Pull the bearer credential from a request or handshake.

    Sources, first match wins: `Authorization: Bearer` header, the access
    token cookie, then the `token` query parameter (browsers cannot set
    headers on WebSocket upgrades).
    """
    authorization = headers.get("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()

    cookie_token = cookies.get(settings.access_token_cookie_name)
    if cookie_token:
        return cookie_token

    if query_params is not None:
        query_token = query_params.get("token")
        if query_token:
            return query_token

    return None


def resolve_identity(token: Optional[str], db: Session) -> User:
    """
    Turn a bearer credential into an active user.

    Raises:
        HandshakeError: "no token", "invalid token" (malformed, badly signed
            or expired) or "unauthorized" (unknown or suspended user)
    """
    if not token:
        raise HandshakeError("no token")

    try:
        payload = decode_access_token(token)
    except TokenError as e:
        logger.debug(f"Token rejected: {e}")
        raise HandshakeError("invalid token")

    user = Repository(db).get_user_by_id(payload["user_id"])
    if user is None:
        raise HandshakeError("unauthorized")
    if user.is_suspended:
        raise HandshakeError("unauthorized", suspended=True)

    return user


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    JWT authentication dependency for REST routes.

    Raises:
        HTTPException: 401 for a missing/invalid token or unknown user,
            403 for a suspended account
    """
    token = extract_token(request.headers, request.cookies)
    try:
        return resolve_identity(token, db)
    except HandshakeError as e:
        if e.suspended:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account suspended")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token" if e.reason != "no token" else "Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )


def get_connection_manager(request: Request) -> ConnectionManager:
    """The process-wide ConnectionManager created by the application lifespan."""
    return request.app.state.connection_manager
