"""Authentication routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..auth import CurrentUser, create_access_token, hash_password, verify_password
from ..config import Settings, get_settings
from ..database import Database
from ..errors import DuplicateEmailError
from ..logging_config import get_logger, log_auth_event
from ..models import AuthResponse, UserInfo, UserLogin, UserRegister, VerifyResponse
from ..rate_limit import AUTH_RATE_LIMIT, limiter

logger = get_logger("todosync.auth")
router = APIRouter(prefix="/auth", tags=["auth"])


def _auth_response(message: str, user, settings: Settings) -> AuthResponse:
    token = create_access_token(user.id, settings, email=user.email, name=user.name)
    return AuthResponse(
        message=message,
        user=UserInfo(id=user.id, email=user.email, name=user.name),
        token=token,
        expires_in=settings.jwt_expire_minutes * 60,
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(AUTH_RATE_LIMIT)
async def register(
    request: Request,
    register_request: UserRegister,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    Register a new user.

    Returns the user and an access token.
    """
    if db.get_user_by_email(register_request.email):
        log_auth_event("register", register_request.email, False, "email exists")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists",
        )
    try:
        user = db.create_user(
            register_request.email,
            register_request.name,
            hash_password(register_request.password),
        )
    except DuplicateEmailError:
        # Lost a race with a concurrent registration
        log_auth_event("register", register_request.email, False, "email exists")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists",
        )

    log_auth_event("register", f"{user.id}/{user.email}", True)
    return _auth_response("User registered successfully", user, settings)


@router.post("/login", response_model=AuthResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def login(
    request: Request,
    login_request: UserLogin,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Exchange email and password for an access token."""
    user = db.get_user_by_email(login_request.email)
    if not user or not verify_password(login_request.password, user.password_hash):
        log_auth_event("login", login_request.email, False, "invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    log_auth_event("login", f"{user.id}/{user.email}", True)
    return _auth_response("Login successful", user, settings)


@router.get("/verify", response_model=VerifyResponse)
async def verify(auth: CurrentUser):
    """Check that the bearer token is valid."""
    return VerifyResponse(
        valid=True,
        user=UserInfo(id=auth.user_id, email=auth.email, name=auth.name),
    )


@router.get("/me", response_model=UserInfo)
async def get_current_user_info(auth: CurrentUser):
    """Get current user info."""
    return UserInfo(id=auth.user_id, email=auth.email, name=auth.name)
