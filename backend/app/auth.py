"""Authentication utilities for the todosync backend."""

from datetime import datetime, timedelta, timezone
from typing import Annotated

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings
from .database import get_db
from .stores.base import TaskStore

# Bearer token scheme; missing credentials are reported as 401, not 403
security = HTTPBearer(auto_error=False)

BCRYPT_ROUNDS = 12


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        return False


def create_access_token(
    user_id: int,
    settings: Settings,
    email: str | None = None,
    name: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token for a user."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {
        "sub": str(user_id),
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if email:
        to_encode["email"] = email
    if name:
        to_encode["name"] = name
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise _unauthorized("Invalid or expired token")


class AuthContext:
    """The authenticated user behind a request."""

    def __init__(self, user_id: int, email: str, name: str):
        self.user_id = user_id
        self.email = email
        self.name = name


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[TaskStore, Depends(get_db)],
) -> AuthContext:
    """Resolve the bearer token to an existing user."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated - provide an Authorization: Bearer header")

    payload = decode_token(credentials.credentials, settings)
    subject = payload.get("sub")
    if payload.get("type") != "access" or subject is None:
        raise _unauthorized("Invalid token payload")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise _unauthorized("Invalid token payload")

    user = store.get_user(user_id)
    if user is None:
        raise _unauthorized("User no longer exists")
    return AuthContext(user_id=user.id, email=user.email, name=user.name)


# Type alias for dependency injection
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
