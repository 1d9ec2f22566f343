"""
services/auth/router.py
Administrator authentication.
First-run setup → Login → JWT issue → Logout (deny-list) → Me
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import SchedulerCache, get_redis
from config.settings import settings
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import User, UserRole
from shared.schemas.schemas import (
    LoginRequest,
    MessageResponse,
    SetupRequest,
    SetupStatusResponse,
    TokenResponse,
    UserResponse,
)
from shared.utils.errors import AuthenticationError, AuthorizationError, ConflictError
from shared.utils.security import (
    create_access_token,
    get_token_remaining_ttl,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

LOGIN_ATTEMPTS_PER_MINUTE = 10


# ── Helper ────────────────────────────────────────────────────

def _issue_token(user: User) -> TokenResponse:
    role = getattr(user.role, "value", user.role)
    token, _ = create_access_token(user.id, role, user.username)
    return TokenResponse(
        access_token=token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


async def _has_ultra_admin(db: AsyncSession) -> bool:
    count = await db.scalar(select(func.count(User.id)).where(User.role == UserRole.ULTRA))
    return bool(count)


# ── First-run setup ───────────────────────────────────────────

@router.get("/is-setup", response_model=SetupStatusResponse)
async def is_setup(db: AsyncSession = Depends(get_db)):
    """True while no ultra admin exists and the setup form should be shown."""
    return SetupStatusResponse(is_setup_mode=not await _has_ultra_admin(db))


@router.post("/setup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def setup(data: SetupRequest, db: AsyncSession = Depends(get_db)):
    """Create the first ultra admin. Closed once one exists."""
    if await _has_ultra_admin(db):
        raise AuthorizationError("Setup has already been completed")

    if await db.scalar(select(User.id).where(User.username == data.username)) is not None:
        raise ConflictError("Username already exists")

    user = User(
        username=data.username,
        email=data.email,
        password_hash=hash_password(data.password),
        role=UserRole.ULTRA,
        can_use_paid_notifications=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info("Initial ultra admin %s created", user.username)
    return _issue_token(user)


# ── Login / Logout ────────────────────────────────────────────

@router.post("/login", response_model=TokenResponse)
async def login(
    data: LoginRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    allowed = await SchedulerCache(redis).allow_attempt("login", data.username, LOGIN_ATTEMPTS_PER_MINUTE)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again in a minute.",
        )

    user = await db.scalar(select(User).where(User.username == data.username))
    if user is None or not verify_password(data.password, user.password_hash):
        logger.info("Failed login for %s", data.username)
        raise AuthenticationError("Invalid username or password")
    if not user.is_active:
        raise AuthorizationError("User account is inactive")

    return _issue_token(user)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    token_data: TokenData = Depends(get_token_data),
    redis=Depends(get_redis),
):
    """Deny-list the presented token's jti until it would have expired."""
    ttl = get_token_remaining_ttl(token_data.payload)
    if ttl > 0:
        await SchedulerCache(redis).revoke_token(token_data.jti, ttl)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return current_user
