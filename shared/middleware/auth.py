"""
shared/middleware/auth.py
Auth dependencies for the admin API.
A bearer JWT identifies the user; what they may touch is decided by their
role rank plus the congregations they are linked to or that sit beneath
their region, mission or stake.
"""

from typing import Optional, Set

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import SchedulerCache, get_redis
from shared.models.models import (
    ROLE_RANK,
    Congregation,
    Mission,
    Stake,
    User,
    UserCongregation,
    UserRole,
)
from shared.utils.errors import AuthorizationError
from shared.utils.security import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class TokenData:
    """Claims of a verified access token."""

    def __init__(self, payload: dict):
        self.payload = payload
        self.user_id = int(payload["sub"])
        self.role = UserRole(payload["role"])
        self.username = payload.get("username", "")
        self.jti = payload["jti"]


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    redis=Depends(get_redis),
) -> TokenData:
    if credentials is None:
        raise _unauthorized("Authentication required")
    try:
        payload = verify_access_token(credentials.credentials)
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    # Logged-out tokens stay deny-listed until their natural expiry
    if await SchedulerCache(redis).is_token_revoked(payload["jti"]):
        raise _unauthorized("Token has been revoked")
    return TokenData(payload)


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, token_data.user_id)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


class RoleRequired:
    """`Depends(RoleRequired(UserRole.ULTRA))` admits only the listed roles."""

    def __init__(self, *roles: UserRole):
        self.roles = set(roles)

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if UserRole(current_user.role) not in self.roles:
            raise AuthorizationError("Your role does not permit this action")
        return current_user


require_admin = RoleRequired(*UserRole)
require_super_admin = RoleRequired(UserRole.ULTRA, UserRole.REGION, UserRole.MISSION, UserRole.STAKE)
require_ultra_admin = RoleRequired(UserRole.ULTRA)


# ── Congregation scope ────────────────────────────────────────

def outranks(actor: User, role: UserRole) -> bool:
    """True when actor's role is strictly broader than `role`."""
    return ROLE_RANK[UserRole(actor.role)] > ROLE_RANK[UserRole(role)]


async def accessible_congregation_ids(db: AsyncSession, user: User) -> Optional[Set[int]]:
    """
    Congregations the user may administer. None means unrestricted (ultra).
    Linked congregations always count; region/mission/stake admins also
    reach every congregation beneath their unit.
    """
    if user.role == UserRole.ULTRA:
        return None

    ids = set(
        await db.scalars(
            select(UserCongregation.congregation_id).where(UserCongregation.user_id == user.id)
        )
    )

    stmt = None
    if user.role == UserRole.REGION and user.region_id:
        stmt = (
            select(Congregation.id)
            .join(Stake, Congregation.stake_id == Stake.id)
            .join(Mission, Stake.mission_id == Mission.id)
            .where(Mission.region_id == user.region_id)
        )
    elif user.role == UserRole.MISSION and user.mission_id:
        stmt = (
            select(Congregation.id)
            .join(Stake, Congregation.stake_id == Stake.id)
            .where(Stake.mission_id == user.mission_id)
        )
    elif user.role == UserRole.STAKE and user.stake_id:
        stmt = select(Congregation.id).where(Congregation.stake_id == user.stake_id)

    if stmt is not None:
        ids |= set(await db.scalars(stmt))
    return ids


async def ensure_congregation_access(db: AsyncSession, user: User, congregation_id: int) -> None:
    allowed = await accessible_congregation_ids(db, user)
    if allowed is not None and congregation_id not in allowed:
        raise AuthorizationError("You do not have access to this congregation")
