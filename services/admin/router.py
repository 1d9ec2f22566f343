"""
services/admin/router.py
Administrative users and dashboard statistics.

Users are scoped by role rank: a non-ultra admin only sees and manages
users of a lower rank linked to congregations within their own scope.
"""

import logging
import math
from collections import Counter
from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import (
    accessible_congregation_ids,
    ensure_congregation_access,
    outranks,
    require_admin,
    require_super_admin,
)
from shared.models.models import (
    ROLE_RANK,
    Congregation,
    Meal,
    Missionary,
    MissionaryType,
    User,
    UserCongregation,
    UserRole,
)
from shared.schemas.schemas import (
    AdminStatsResponse,
    MealStatsResponse,
    MessageResponse,
    MissionaryMealStat,
    MonthlyMealCount,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from shared.utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from shared.utils.security import hash_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ── Helpers ───────────────────────────────────────────────────

async def _managed_user_or_404(db: AsyncSession, actor: User, user_id: int) -> User:
    """Target user, provided the actor is allowed to manage them."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if actor.role == UserRole.ULTRA or user.id == actor.id:
        return user
    if not outranks(actor, user.role):
        raise AuthorizationError("You cannot manage a user with an equal or higher role")

    allowed = await accessible_congregation_ids(db, actor)
    linked = set(
        await db.scalars(select(UserCongregation.congregation_id).where(UserCongregation.user_id == user.id))
    )
    if not linked & allowed:
        raise AuthorizationError("User is outside your scope")
    return user


def _check_assignable_role(actor: User, role: UserRole) -> None:
    if actor.role != UserRole.ULTRA and not outranks(actor, role):
        raise AuthorizationError("You can only assign roles lower than your own")


async def _stats_congregation(db: AsyncSession, user: User, congregation_id: Optional[int]) -> Optional[int]:
    if congregation_id is None:
        if user.role != UserRole.ULTRA:
            raise ValidationError("congregationId is required")
        return None
    await ensure_congregation_access(db, user, congregation_id)
    return congregation_id


def _month_bounds(today: date) -> tuple[date, date]:
    start = today.replace(day=1)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return start, next_month - timedelta(days=1)


# ── Users ─────────────────────────────────────────────────────

@router.get("/users", response_model=List[UserResponse])
async def list_users(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(User).order_by(User.username)
    allowed = await accessible_congregation_ids(db, current_user)
    if allowed is not None:
        lower_roles = [r for r in UserRole if ROLE_RANK[r] < ROLE_RANK[UserRole(current_user.role)]]
        in_scope = select(UserCongregation.user_id).where(UserCongregation.congregation_id.in_(allowed))
        stmt = stmt.where(
            or_(
                User.id == current_user.id,
                and_(User.role.in_(lower_roles), User.id.in_(in_scope)),
            )
        )
    return list(await db.scalars(stmt))


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(
    data: UserCreate,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    _check_assignable_role(current_user, UserRole(data.role))
    for congregation_id in data.congregation_ids:
        if await db.get(Congregation, congregation_id) is None:
            raise NotFoundError(f"Congregation {congregation_id} not found")
        await ensure_congregation_access(db, current_user, congregation_id)

    if await db.scalar(select(User.id).where(User.username == data.username)) is not None:
        raise ConflictError("Username already exists")

    user = User(
        **data.model_dump(exclude={"password", "congregation_ids"}),
        password_hash=hash_password(data.password),
    )
    db.add(user)
    await db.flush()
    db.add_all(
        UserCongregation(user_id=user.id, congregation_id=cid) for cid in set(data.congregation_ids)
    )
    await db.commit()
    await db.refresh(user)

    logger.info("User %s (%s) created by %s", user.username, user.role, current_user.username)
    return user


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    data: UserUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _managed_user_or_404(db, current_user, user_id)
    changes = data.model_dump(exclude_unset=True)

    if changes.get("role") is not None and changes["role"] != getattr(user.role, "value", user.role):
        if user.id == current_user.id and current_user.role != UserRole.ULTRA:
            raise AuthorizationError("You cannot change your own role")
        _check_assignable_role(current_user, UserRole(changes["role"]))

    password = changes.pop("password", None)
    if password:
        user.password_hash = hash_password(password)

    for field, value in changes.items():
        if value is None and field in ("role", "is_active", "can_use_paid_notifications"):
            continue
        setattr(user, field, value)

    await db.commit()
    await db.refresh(user)
    return user


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    if user_id == current_user.id:
        raise ValidationError("You cannot delete your own account")
    user = await _managed_user_or_404(db, current_user, user_id)

    await db.execute(delete(UserCongregation).where(UserCongregation.user_id == user.id))
    await db.delete(user)
    await db.commit()
    logger.info("User %s deleted by %s", user.username, current_user.username)
    return MessageResponse(message="User deleted")


# ── Statistics ────────────────────────────────────────────────

@router.get("/stats", response_model=AdminStatsResponse)
async def admin_stats(
    congregation_id: Optional[int] = Query(None, alias="congregationId"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard counters for the current calendar month."""
    scope = await _stats_congregation(db, current_user, congregation_id)
    start, end = _month_bounds(date.today())

    missionary_stmt = select(Missionary.active)
    meal_stmt = (
        select(Meal.cancelled, Missionary.type)
        .join(Missionary, Missionary.id == Meal.missionary_id)
        .where(Meal.date >= start, Meal.date <= end)
    )
    if scope is not None:
        missionary_stmt = missionary_stmt.where(Missionary.congregation_id == scope)
        meal_stmt = meal_stmt.where(Meal.congregation_id == scope)

    actives = list(await db.scalars(missionary_stmt))
    meals = (await db.execute(meal_stmt)).all()
    booked = [m_type for cancelled, m_type in meals if not cancelled]

    return AdminStatsResponse(
        total_missionaries=len(actives),
        active_missionaries=sum(1 for a in actives if a),
        total_meals_this_month=len(booked),
        elders_bookings=sum(1 for t in booked if t == MissionaryType.ELDERS),
        sisters_bookings=sum(1 for t in booked if t == MissionaryType.SISTERS),
        cancelled_meals=sum(1 for cancelled, _ in meals if cancelled),
    )


@router.get("/meal-stats/{congregation_id}", response_model=MealStatsResponse)
async def meal_stats(
    congregation_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Per-missionary and per-month meal counts for a congregation (cancelled meals excluded)."""
    if start_date > end_date:
        raise ValidationError("startDate must be on or before endDate")
    await ensure_congregation_access(db, current_user, congregation_id)

    meals = list(
        await db.scalars(
            select(Meal).where(
                Meal.congregation_id == congregation_id,
                Meal.date >= start_date,
                Meal.date <= end_date,
                Meal.cancelled.is_(False),
            )
        )
    )
    missionaries = list(
        await db.scalars(select(Missionary).where(Missionary.congregation_id == congregation_id))
    )

    span_days = (end_date - start_date).days
    weeks = max(1, math.ceil(span_days / 7))
    months = max(1, math.ceil(span_days / 30))

    counts = Counter(meal.missionary_id for meal in meals)
    last_meal = {}
    for meal in meals:
        if meal.missionary_id not in last_meal or meal.date > last_meal[meal.missionary_id]:
            last_meal[meal.missionary_id] = meal.date

    monthly = Counter(meal.date.replace(day=1) for meal in meals)

    return MealStatsResponse(
        total_meals=len(meals),
        average_meals_per_week=round(len(meals) / weeks, 1),
        average_meals_per_month=round(len(meals) / months, 1),
        missionary_stats=sorted(
            (
                MissionaryMealStat(
                    id=m.id,
                    name=m.name,
                    type=m.type,
                    meal_count=counts.get(m.id, 0),
                    last_meal=last_meal.get(m.id),
                )
                for m in missionaries
            ),
            key=lambda stat: -stat.meal_count,
        ),
        monthly_breakdown=[
            MonthlyMealCount(month=f"{month:%b %Y}", meal_count=count)
            for month, count in sorted(monthly.items())
        ],
    )
