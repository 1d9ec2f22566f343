"""
services/availability/checker.py
Read-only availability predicate over meals and missionary rosters.

A selector is either a missionary type ("elders"/"sisters"), meaning the
companionships of that type as a unit, or a concrete missionary id.
"""

from datetime import date
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Congregation, Meal, Missionary, MissionaryType

Selector = Union[int, str, MissionaryType]


def parse_selector(selector: Selector) -> Union[int, MissionaryType]:
    """Numeric selectors are missionary ids; anything else must name a type."""
    if isinstance(selector, MissionaryType):
        return selector
    if isinstance(selector, bool):
        raise ValueError(f"Invalid missionary selector: {selector!r}")
    if isinstance(selector, int):
        return selector
    value = str(selector).strip().lower()
    if value.isdigit():
        return int(value)
    return MissionaryType(value)


async def booked_missionary_ids(
    db: AsyncSession,
    day: date,
    congregation_id: int,
    exclude_meal_id: Optional[int] = None,
) -> set[int]:
    """Missionaries in the congregation that already hold a non-cancelled meal on `day`."""
    stmt = select(Meal.missionary_id).where(
        Meal.congregation_id == congregation_id,
        Meal.date == day,
        Meal.cancelled.is_(False),
    )
    if exclude_meal_id is not None:
        stmt = stmt.where(Meal.id != exclude_meal_id)
    return set(await db.scalars(stmt))


async def missionary_has_meal(
    db: AsyncSession,
    missionary_id: int,
    day: date,
    exclude_meal_id: Optional[int] = None,
) -> bool:
    """Any non-cancelled meal for this missionary on `day`, in any congregation."""
    stmt = select(Meal.id).where(
        Meal.missionary_id == missionary_id,
        Meal.date == day,
        Meal.cancelled.is_(False),
    )
    if exclude_meal_id is not None:
        stmt = stmt.where(Meal.id != exclude_meal_id)
    return (await db.scalar(stmt.limit(1))) is not None


async def is_available(
    db: AsyncSession,
    day: date,
    selector: Selector,
    congregation_id: int,
    exclude_meal_id: Optional[int] = None,
) -> bool:
    """
    Can this missionary (or any companionship of this type) be booked on `day`?

    Fails closed: an unknown or inactive congregation, an unknown missionary,
    a missionary from another congregation and an empty roster of the
    requested type all report unavailable.
    """
    congregation = await db.get(Congregation, congregation_id)
    if congregation is None or not congregation.active:
        return False

    target = parse_selector(selector)

    if isinstance(target, int):
        missionary = await db.get(Missionary, target)
        if missionary is None or missionary.congregation_id != congregation_id:
            return False
        return not await missionary_has_meal(db, missionary.id, day, exclude_meal_id)

    roster = set(
        await db.scalars(
            select(Missionary.id).where(
                Missionary.congregation_id == congregation_id,
                Missionary.type == target,
                Missionary.active.is_(True),
            )
        )
    )
    if not roster:
        return False

    booked = await booked_missionary_ids(db, day, congregation_id, exclude_meal_id)
    return bool(roster - booked)
