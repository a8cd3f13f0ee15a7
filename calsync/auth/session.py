"""Session management using JWT tokens."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from calsync.config import get_session_secret, get_settings
from calsync.database import get_database
from calsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"


class SessionData(BaseModel):
    """Session data stored in JWT."""
    user_id: str
    is_admin: bool = False
    exp: datetime


class User(BaseModel):
    """User model for authenticated requests."""
    id: str
    user_name: str
    time_zone: Optional[str] = None
    is_admin: bool = False


def create_session_token(user_id: str, is_admin: bool = False) -> str:
    """Create a JWT session token."""
    settings = get_settings()
    expire = utcnow() + timedelta(days=settings.session_expire_days)
    data = {
        "user_id": user_id,
        "is_admin": is_admin,
        "exp": expire,
    }
    return jwt.encode(data, get_session_secret(), algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[SessionData]:
    """Verify and decode a session token."""
    try:
        payload = jwt.decode(token, get_session_secret(), algorithms=[ALGORITHM])
        return SessionData(**payload)
    except JWTError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


async def get_user_by_id(user_id: str) -> Optional[User]:
    """Get an active user from database by ID."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM users WHERE id = ? AND deleted = FALSE AND is_active = TRUE",
        (user_id,),
    )
    row = await cursor.fetchone()

    if row:
        return User(
            id=row["id"],
            user_name=row["user_name"],
            time_zone=row["time_zone"],
            is_admin=bool(row["is_admin"]),
        )
    return None


def _token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


async def get_current_user(request: Request) -> User:
    """Get current user from session, raises 401 if not authenticated."""
    token = _token_from_request(request)
    session = verify_session_token(token) if token else None
    user = await get_user_by_id(session.user_id) if session else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Require admin privileges."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user
