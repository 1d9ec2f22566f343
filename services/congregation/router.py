"""
services/congregation/router.py
Congregations (wards): public access-code lookup and roster/calendar reads,
plus admin CRUD, access-code regeneration and user links.
"""

import logging
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from config.redis_client import SchedulerCache, get_redis
from config.settings import settings
from services.availability.checker import parse_selector
from shared.middleware.auth import (
    accessible_congregation_ids,
    ensure_congregation_access,
    require_admin,
    require_super_admin,
)
from shared.models.models import (
    Congregation,
    Meal,
    Missionary,
    Stake,
    User,
    UserCongregation,
    UserRole,
)
from shared.schemas.schemas import (
    AccessCodeRegenerateRequest,
    CongregationCreate,
    CongregationJoinRequest,
    CongregationResponse,
    CongregationUpdate,
    CongregationUserAdd,
    CongregationUserResponse,
    MealResponse,
    MessageResponse,
    MissionarySummary,
)
from shared.utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from shared.utils.security import generate_access_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/congregations", tags=["Congregations"])
admin_router = APIRouter(prefix="/api/admin/congregations", tags=["Congregation Admin"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_congregation_or_404(db: AsyncSession, congregation_id: int) -> Congregation:
    congregation = await db.get(Congregation, congregation_id)
    if congregation is None:
        raise NotFoundError("Congregation not found")
    return congregation


async def _active_congregation_or_404(db: AsyncSession, congregation_id: int) -> Congregation:
    congregation = await _get_congregation_or_404(db, congregation_id)
    if not congregation.active:
        raise NotFoundError("Congregation not found")
    return congregation


async def _scoped_congregation(db: AsyncSession, user: User, congregation_id: int) -> Congregation:
    congregation = await _get_congregation_or_404(db, congregation_id)
    await ensure_congregation_access(db, user, congregation.id)
    return congregation


async def _unique_access_code(db: AsyncSession) -> str:
    while True:
        code = generate_access_code()
        taken = await db.scalar(select(Congregation.id).where(Congregation.access_code == code))
        if taken is None:
            return code


async def _commit_congregation(db: AsyncSession, congregation: Congregation) -> Congregation:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A congregation with that name already exists")
    await db.refresh(congregation)
    return congregation


# ── Public ────────────────────────────────────────────────────

@router.get("/{access_code}", response_model=CongregationResponse)
async def get_congregation_by_access_code(
    access_code: str,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Resolve a shareable link. Short codes are rejected before touching the
    database so the endpoint cannot be used to enumerate congregations.
    """
    if len(access_code) < settings.ACCESS_CODE_MIN_LOOKUP_LENGTH:
        raise NotFoundError("Congregation not found")

    cache = SchedulerCache(redis)
    cached = await cache.cached_congregation(access_code)
    if cached:
        return cached

    congregation = await db.scalar(
        select(Congregation).where(Congregation.access_code == access_code)
    )
    if congregation is None:
        raise NotFoundError("Congregation not found")
    if not congregation.active:
        raise AuthorizationError("This congregation is not active")

    payload = CongregationResponse.model_validate(congregation).model_dump(mode="json", by_alias=True)
    await cache.cache_congregation(access_code, payload)
    return payload


@router.get("/{congregation_id}/missionaries", response_model=List[MissionarySummary])
async def list_congregation_missionaries(congregation_id: int, db: AsyncSession = Depends(get_db)):
    await _active_congregation_or_404(db, congregation_id)
    return list(
        await db.scalars(
            select(Missionary)
            .where(Missionary.congregation_id == congregation_id, Missionary.active.is_(True))
            .order_by(Missionary.type, Missionary.name)
        )
    )


@router.get("/{congregation_id}/missionaries/{missionary_type}", response_model=List[MissionarySummary])
async def list_congregation_missionaries_by_type(
    congregation_id: int,
    missionary_type: str,
    db: AsyncSession = Depends(get_db),
):
    await _active_congregation_or_404(db, congregation_id)
    try:
        selector = parse_selector(missionary_type)
    except ValueError:
        raise ValidationError("Missionary type must be 'elders' or 'sisters'")
    if isinstance(selector, int):
        raise ValidationError("Missionary type must be 'elders' or 'sisters'")
    return list(
        await db.scalars(
            select(Missionary)
            .where(
                Missionary.congregation_id == congregation_id,
                Missionary.type == selector,
                Missionary.active.is_(True),
            )
            .order_by(Missionary.name)
        )
    )


@router.get("/{congregation_id}/meals", response_model=List[MealResponse])
async def list_congregation_meals(
    congregation_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    db: AsyncSession = Depends(get_db),
):
    await _active_congregation_or_404(db, congregation_id)
    if start_date > end_date:
        raise ValidationError("startDate must be on or before endDate")
    return list(
        await db.scalars(
            select(Meal)
            .options(selectinload(Meal.missionary))
            .where(
                Meal.congregation_id == congregation_id,
                Meal.date >= start_date,
                Meal.date <= end_date,
            )
            .order_by(Meal.date, Meal.start_time)
        )
    )


# ── Admin ─────────────────────────────────────────────────────

@admin_router.get("", response_model=List[CongregationResponse])
async def list_congregations(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Congregations within the caller's scope."""
    stmt = select(Congregation).order_by(Congregation.name)
    allowed = await accessible_congregation_ids(db, current_user)
    if allowed is not None:
        stmt = stmt.where(Congregation.id.in_(allowed))
    return list(await db.scalars(stmt))


@admin_router.post("", response_model=CongregationResponse, status_code=201)
async def create_congregation(
    data: CongregationCreate,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    if data.stake_id is not None and await db.get(Stake, data.stake_id) is None:
        raise NotFoundError("Stake not found")

    congregation = Congregation(**data.model_dump(), access_code=await _unique_access_code(db))
    db.add(congregation)
    congregation = await _commit_congregation(db, congregation)

    # The creator can manage what they just created
    if current_user.role != UserRole.ULTRA:
        db.add(UserCongregation(user_id=current_user.id, congregation_id=congregation.id))
        await db.commit()

    logger.info("Congregation %s created by %s", congregation.id, current_user.username)
    return congregation


@admin_router.get("/{congregation_id}", response_model=CongregationResponse)
async def get_congregation(
    congregation_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _scoped_congregation(db, current_user, congregation_id)


@admin_router.patch("/{congregation_id}", response_model=CongregationResponse)
async def update_congregation(
    congregation_id: int,
    data: CongregationUpdate,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Generic settings update. The access code is only changed by regeneration."""
    congregation = await _scoped_congregation(db, current_user, congregation_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("stake_id") is not None and await db.get(Stake, changes["stake_id"]) is None:
        raise NotFoundError("Stake not found")

    for field, value in changes.items():
        if value is None and field not in ("description", "stake_id"):
            continue
        setattr(congregation, field, value)

    congregation = await _commit_congregation(db, congregation)
    await SchedulerCache(redis).forget_congregation(congregation.access_code)
    return congregation


@admin_router.post("/{congregation_id}/regenerate-access-code", response_model=CongregationResponse)
async def regenerate_access_code(
    congregation_id: int,
    data: AccessCodeRegenerateRequest,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Issue a new access code. Every previously shared link and QR code stops working."""
    if not data.confirm:
        raise ValidationError("Regenerating the access code invalidates existing links; send confirm=true")

    congregation = await _scoped_congregation(db, current_user, congregation_id)
    old_code = congregation.access_code
    congregation.access_code = await _unique_access_code(db)
    await db.commit()
    await SchedulerCache(redis).forget_congregation(old_code)

    logger.warning(
        "Access code for congregation %s regenerated by %s", congregation.id, current_user.username
    )
    return congregation


@admin_router.delete("/{congregation_id}", response_model=MessageResponse)
async def delete_congregation(
    congregation_id: int,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    congregation = await _scoped_congregation(db, current_user, congregation_id)

    missionaries = await db.scalar(
        select(func.count(Missionary.id)).where(Missionary.congregation_id == congregation.id)
    )
    meals = await db.scalar(select(func.count(Meal.id)).where(Meal.congregation_id == congregation.id))
    if missionaries or meals:
        raise ConflictError(
            "Congregation still has missionaries or meals; deactivate it instead"
        )

    await db.delete(congregation)
    await db.commit()
    await SchedulerCache(redis).forget_congregation(congregation.access_code)
    logger.info("Congregation %s deleted by %s", congregation_id, current_user.username)
    return MessageResponse(message="Congregation deleted")


# ── User links ────────────────────────────────────────────────

@admin_router.get("/{congregation_id}/users", response_model=List[CongregationUserResponse])
async def list_congregation_users(
    congregation_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _scoped_congregation(db, current_user, congregation_id)
    return list(
        await db.scalars(
            select(User)
            .join(UserCongregation, UserCongregation.user_id == User.id)
            .where(UserCongregation.congregation_id == congregation_id)
            .order_by(User.username)
        )
    )


@admin_router.post("/{congregation_id}/users", response_model=MessageResponse, status_code=201)
async def add_congregation_user(
    congregation_id: int,
    data: CongregationUserAdd,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    await _scoped_congregation(db, current_user, congregation_id)
    user = await db.scalar(select(User).where(User.username == data.username))
    if user is None:
        raise NotFoundError("User not found")

    existing = await db.get(UserCongregation, (user.id, congregation_id))
    if existing is not None:
        raise ConflictError("User already has access to this congregation")

    db.add(UserCongregation(user_id=user.id, congregation_id=congregation_id))
    await db.commit()
    return MessageResponse(message=f"{user.username} added to congregation")


@admin_router.delete("/{congregation_id}/users/{user_id}", response_model=MessageResponse)
async def remove_congregation_user(
    congregation_id: int,
    user_id: int,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    await _scoped_congregation(db, current_user, congregation_id)
    result = await db.execute(
        delete(UserCongregation).where(
            UserCongregation.user_id == user_id,
            UserCongregation.congregation_id == congregation_id,
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("User is not linked to this congregation")
    await db.commit()
    return MessageResponse(message="User removed from congregation")


@admin_router.post("/{congregation_id}/leave", response_model=MessageResponse)
async def leave_congregation(
    congregation_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(UserCongregation).where(
            UserCongregation.user_id == current_user.id,
            UserCongregation.congregation_id == congregation_id,
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("You are not a member of this congregation")
    await db.commit()
    return MessageResponse(message="Left congregation")


@admin_router.post("/join", response_model=CongregationResponse)
async def join_congregation(
    data: CongregationJoinRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Rejoin a congregation using its access code."""
    congregation = await db.scalar(
        select(Congregation).where(Congregation.access_code == data.access_code)
    )
    if congregation is None:
        raise NotFoundError("Congregation not found")

    if await db.get(UserCongregation, (current_user.id, congregation.id)) is None:
        db.add(UserCongregation(user_id=current_user.id, congregation_id=congregation.id))
        await db.commit()
    return congregation
