"""FastAPI dependencies."""

from __future__ import annotations

from typing import Generator, Optional

import requests
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.config import get_settings
from src.core.auth.security import decode_access_token
from src.core.brokers.repository import UserRepository
from src.db.database import get_db as db_context
from src.db.models import User

settings = get_settings()

# HTTP Bearer for JWT tokens
http_bearer = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session."""
    with db_context() as db:
        yield db


def get_http() -> requests.Session:
    """HTTP session used by broker adapters."""
    return requests.Session()


def _get_user_from_jwt(token: str, db: Session) -> Optional[User]:
    """Decode JWT token and return user."""
    payload = decode_access_token(token)
    if not payload:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if user and user.is_active:
        return user
    return None


def get_current_user(
    db: Session = Depends(get_db),
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    x_api_key: Optional[str] = Header(None),
) -> User:
    """Get the current authenticated user.

    Supports:
    1. JWT Bearer token (Authorization: Bearer <token>)
    2. Global API key (X-API-Key header) mapped to the default user
    3. Fallback to default user if no global API key is configured

    Returns:
        Authenticated User model
    """
    if bearer:
        user = _get_user_from_jwt(bearer.credentials, db)
        if user:
            return user

    if not settings.api_key or x_api_key == settings.api_key:
        return UserRepository(db).get_or_create_default()

    # No valid authentication
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_optional_user(
    db: Session = Depends(get_db),
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    x_api_key: Optional[str] = Header(None),
) -> Optional[User]:
    """Get current user if authenticated, None otherwise.

    Broker callbacks use this so a missing login becomes a redirect, not a 401.
    """
    try:
        return get_current_user(db, bearer, x_api_key)
    except HTTPException:
        return None


def get_current_user_email(user: User = Depends(get_current_user)) -> str:
    """Email of the authenticated user."""
    return user.email
