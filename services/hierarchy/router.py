"""
services/hierarchy/router.py
Regions, missions and stakes: the units above a congregation.
Regions and missions are managed by ultra admins, stakes by super admins.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import Base, get_db
from shared.middleware.auth import require_admin, require_super_admin, require_ultra_admin
from shared.models.models import Mission, Region, Stake, User
from shared.schemas.schemas import (
    MessageResponse,
    MissionCreate,
    MissionResponse,
    MissionUpdate,
    RegionCreate,
    RegionResponse,
    RegionUpdate,
    StakeCreate,
    StakeResponse,
    StakeUpdate,
)
from shared.utils.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Hierarchy"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_or_404(db: AsyncSession, model: type[Base], obj_id: int):
    obj = await db.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{model.__name__} not found")
    return obj


async def _require_parent(db: AsyncSession, model: type[Base], parent_id):
    if parent_id is not None:
        await _get_or_404(db, model, parent_id)


async def _save(db: AsyncSession, obj, label: str):
    """Commit, mapping a duplicate name to 409."""
    db.add(obj)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"A {label} with that name already exists")
    await db.refresh(obj)
    return obj


async def _delete(db: AsyncSession, obj, label: str, user: User) -> MessageResponse:
    await db.delete(obj)
    await db.commit()
    logger.info("%s %s deleted by %s", label, obj.id, user.username)
    return MessageResponse(message=f"{label} deleted")


# ── Regions ───────────────────────────────────────────────────

@router.get("/regions", response_model=List[RegionResponse])
async def list_regions(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return list(await db.scalars(select(Region).order_by(Region.name)))


@router.post("/regions", response_model=RegionResponse, status_code=201)
async def create_region(
    data: RegionCreate,
    current_user: User = Depends(require_ultra_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _save(db, Region(**data.model_dump()), "region")


@router.patch("/regions/{region_id}", response_model=RegionResponse)
async def update_region(
    region_id: int,
    data: RegionUpdate,
    current_user: User = Depends(require_ultra_admin),
    db: AsyncSession = Depends(get_db),
):
    region = await _get_or_404(db, Region, region_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(region, field, value)
    return await _save(db, region, "region")


@router.delete("/regions/{region_id}", response_model=MessageResponse)
async def delete_region(
    region_id: int,
    current_user: User = Depends(require_ultra_admin),
    db: AsyncSession = Depends(get_db),
):
    """Missions under the region are detached, not deleted."""
    return await _delete(db, await _get_or_404(db, Region, region_id), "Region", current_user)


# ── Missions ──────────────────────────────────────────────────

@router.get("/missions", response_model=List[MissionResponse])
async def list_missions(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return list(await db.scalars(select(Mission).order_by(Mission.name)))


@router.post("/missions", response_model=MissionResponse, status_code=201)
async def create_mission(
    data: MissionCreate,
    current_user: User = Depends(require_ultra_admin),
    db: AsyncSession = Depends(get_db),
):
    await _require_parent(db, Region, data.region_id)
    return await _save(db, Mission(**data.model_dump()), "mission")


@router.patch("/missions/{mission_id}", response_model=MissionResponse)
async def update_mission(
    mission_id: int,
    data: MissionUpdate,
    current_user: User = Depends(require_ultra_admin),
    db: AsyncSession = Depends(get_db),
):
    mission = await _get_or_404(db, Mission, mission_id)
    changes = data.model_dump(exclude_unset=True)
    await _require_parent(db, Region, changes.get("region_id"))
    for field, value in changes.items():
        setattr(mission, field, value)
    return await _save(db, mission, "mission")


@router.delete("/missions/{mission_id}", response_model=MessageResponse)
async def delete_mission(
    mission_id: int,
    current_user: User = Depends(require_ultra_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _delete(db, await _get_or_404(db, Mission, mission_id), "Mission", current_user)


# ── Stakes ────────────────────────────────────────────────────

@router.get("/stakes", response_model=List[StakeResponse])
async def list_stakes(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return list(await db.scalars(select(Stake).order_by(Stake.name)))


@router.post("/stakes", response_model=StakeResponse, status_code=201)
async def create_stake(
    data: StakeCreate,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    await _require_parent(db, Mission, data.mission_id)
    return await _save(db, Stake(**data.model_dump()), "stake")


@router.patch("/stakes/{stake_id}", response_model=StakeResponse)
async def update_stake(
    stake_id: int,
    data: StakeUpdate,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    stake = await _get_or_404(db, Stake, stake_id)
    changes = data.model_dump(exclude_unset=True)
    await _require_parent(db, Mission, changes.get("mission_id"))
    for field, value in changes.items():
        setattr(stake, field, value)
    return await _save(db, stake, "stake")


@router.delete("/stakes/{stake_id}", response_model=MessageResponse)
async def delete_stake(
    stake_id: int,
    current_user: User = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _delete(db, await _get_or_404(db, Stake, stake_id), "Stake", current_user)
