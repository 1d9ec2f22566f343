"""
services/meal/service.py
BookingService: create, update and cancel meals.

The availability pre-check gives a readable conflict message; the partial
unique index on (missionary_id, date) for non-cancelled meals is what
actually closes the check-then-insert race. Notifications are scheduled
after commit and can never undo a booking.
"""

import logging
from datetime import date, timedelta
from typing import List, Optional

from fastapi import BackgroundTasks
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from services.availability.checker import missionary_has_meal
from services.notification.dispatcher import NotificationManager
from services.notification.messages import MessageType
from shared.models.models import Congregation, Meal, Missionary
from shared.schemas.schemas import MealCreateRequest, MealUpdateRequest
from shared.utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "missionary_id",
    "date",
    "start_time",
    "host_name",
    "host_phone",
    "host_email",
    "meal_description",
    "special_notes",
)

# NOT NULL columns; an explicit null in a patch leaves them unchanged
REQUIRED_FIELDS = {"missionary_id", "date", "start_time", "host_name", "host_phone"}


def conflict_message(missionary: Missionary, day: date) -> str:
    label = str(getattr(missionary.type, "value", missionary.type)).capitalize()
    return f"{label} {missionary.name} are already booked on {day.isoformat()}"


class BookingService:

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationManager,
        background_tasks: Optional[BackgroundTasks] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.background_tasks = background_tasks

    # ── Lookups ───────────────────────────────────────────────

    async def get_meal(self, meal_id: int) -> Meal:
        meal = await self.db.scalar(
            select(Meal)
            .options(selectinload(Meal.missionary))
            .where(Meal.id == meal_id)
            .execution_options(populate_existing=True)
        )
        if meal is None:
            raise NotFoundError("Meal not found")
        return meal

    async def _bookable_missionary(self, missionary_id: int, congregation_id: int) -> Missionary:
        missionary = await self.db.get(Missionary, missionary_id)
        if missionary is None:
            raise NotFoundError("Missionary not found")
        if not missionary.active:
            raise ValidationError("Missionary is not active")
        if missionary.congregation_id != congregation_id:
            raise ValidationError("Missionary does not belong to this congregation")
        return missionary

    async def _check_host_caps(self, congregation: Congregation, host_phone: str, day: date) -> None:
        """Per-phone booking limits. A cap of 0 means unlimited."""
        base = select(func.count(Meal.id)).where(
            Meal.congregation_id == congregation.id,
            Meal.host_phone == host_phone,
            Meal.cancelled.is_(False),
        )

        if congregation.max_bookings_per_phone > 0:
            upcoming = await self.db.scalar(base.where(Meal.date >= date.today()))
            if upcoming >= congregation.max_bookings_per_phone:
                raise ConflictError(
                    f"This phone number already has {upcoming} upcoming meal(s); "
                    f"the limit is {congregation.max_bookings_per_phone}"
                )

        if congregation.max_bookings_per_period > 0:
            span = timedelta(days=congregation.booking_period_days - 1)
            in_period = await self.db.scalar(
                base.where(Meal.date >= day - span, Meal.date <= day + span)
            )
            if in_period >= congregation.max_bookings_per_period:
                raise ConflictError(
                    f"This phone number already has {in_period} meal(s) within "
                    f"{congregation.booking_period_days} days; "
                    f"the limit is {congregation.max_bookings_per_period}"
                )

    async def _commit_or_conflict(self, missionary: Missionary, day: date) -> None:
        # Rollback expires the missionary, so the message is built first
        message = conflict_message(missionary, day)
        missionary_id = missionary.id
        try:
            await self.db.flush()
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Booking race lost for missionary %s on %s", missionary_id, day)
            raise ConflictError(message)

    async def _notify(self, meal_id: int, event: MessageType, reason: Optional[str] = None) -> None:
        if self.background_tasks is not None:
            self.background_tasks.add_task(self.notifier.notify_meal_event, meal_id, event, reason)
        else:
            await self.notifier.notify_meal_event(meal_id, event, reason)

    # ── Commands ──────────────────────────────────────────────

    async def create(self, command: MealCreateRequest) -> Meal:
        congregation = await self.db.get(Congregation, command.congregation_id)
        if congregation is None:
            raise NotFoundError("Congregation not found")
        if not congregation.active:
            raise ValidationError("Congregation is not active")

        missionary = await self._bookable_missionary(command.missionary_id, congregation.id)

        if await missionary_has_meal(self.db, missionary.id, command.date):
            logger.info("Conflict: missionary %s already booked on %s", missionary.id, command.date)
            raise ConflictError(conflict_message(missionary, command.date))

        await self._check_host_caps(congregation, command.host_phone, command.date)

        meal = Meal(
            missionary_id=missionary.id,
            congregation_id=congregation.id,
            date=command.date,
            start_time=command.start_time,
            host_name=command.host_name,
            host_phone=command.host_phone,
            host_email=command.host_email,
            meal_description=command.meal_description,
            special_notes=command.special_notes,
            cancelled=False,
        )
        self.db.add(meal)
        await self._commit_or_conflict(missionary, command.date)
        logger.info(
            "Meal %s booked for missionary %s on %s", meal.id, missionary.id, meal.date,
            extra={"meal_id": meal.id, "missionary_id": missionary.id},
        )

        await self._notify(meal.id, MessageType.MEAL_CREATED)
        return await self.get_meal(meal.id)

    async def update(self, meal_id: int, patch: MealUpdateRequest) -> Meal:
        meal = await self.get_meal(meal_id)
        if meal.cancelled:
            raise ConflictError("Cannot update a cancelled meal")

        changes = {
            field: value
            for field, value in patch.model_dump(exclude_unset=True).items()
            if field in UPDATABLE_FIELDS and not (value is None and field in REQUIRED_FIELDS)
        }
        if not changes:
            return meal

        new_day = changes.get("date", meal.date)
        new_missionary_id = changes.get("missionary_id", meal.missionary_id)
        missionary = meal.missionary

        if new_day != meal.date or new_missionary_id != meal.missionary_id:
            if new_missionary_id != meal.missionary_id:
                missionary = await self._bookable_missionary(new_missionary_id, meal.congregation_id)
            if await missionary_has_meal(self.db, missionary.id, new_day, exclude_meal_id=meal.id):
                raise ConflictError(conflict_message(missionary, new_day))

        for field, value in changes.items():
            setattr(meal, field, value)
        if missionary.id != meal.missionary.id:
            meal.missionary = missionary

        await self._commit_or_conflict(missionary, new_day)
        logger.info("Meal %s updated: %s", meal.id, sorted(changes))

        await self._notify(meal.id, MessageType.MEAL_UPDATED)
        return await self.get_meal(meal.id)

    async def cancel(self, meal_id: int, reason: Optional[str] = None) -> Meal:
        meal = await self.get_meal(meal_id)
        if meal.cancelled:
            return meal

        meal.cancelled = True
        meal.cancellation_reason = reason
        await self.db.commit()
        logger.info("Meal %s cancelled (%s)", meal.id, reason or "no reason", extra={"meal_id": meal.id})

        await self._notify(meal.id, MessageType.MEAL_CANCELLED, reason)
        return meal

    async def cancel_for_missionary(self, missionary_id: int, reason: str) -> int:
        """Cancel every upcoming meal of a missionary without notifying. Returns the count."""
        meals = await self.db.scalars(
            select(Meal).where(
                Meal.missionary_id == missionary_id,
                Meal.date >= date.today(),
                Meal.cancelled.is_(False),
            )
        )
        count = 0
        for meal in meals:
            meal.cancelled = True
            meal.cancellation_reason = reason
            count += 1
        await self.db.flush()
        return count

    # ── Queries ───────────────────────────────────────────────

    async def list(self, start: date, end: date, congregation_id: Optional[int] = None) -> List[Meal]:
        if start > end:
            raise ValidationError("startDate must be on or before endDate")
        stmt = (
            select(Meal)
            .options(selectinload(Meal.missionary))
            .where(Meal.date >= start, Meal.date <= end)
            .order_by(Meal.date, Meal.start_time)
        )
        if congregation_id is not None:
            stmt = stmt.where(Meal.congregation_id == congregation_id)
        return list(await self.db.scalars(stmt))

    async def list_by_host_phone(self, phone: str, congregation_id: Optional[int] = None) -> List[Meal]:
        stmt = (
            select(Meal)
            .options(selectinload(Meal.missionary))
            .where(
                Meal.host_phone == phone,
                Meal.date >= date.today(),
                Meal.cancelled.is_(False),
            )
            .order_by(Meal.date, Meal.start_time)
        )
        if congregation_id is not None:
            stmt = stmt.where(Meal.congregation_id == congregation_id)
        return list(await self.db.scalars(stmt))

    async def upcoming_for_missionary(self, missionary_id: int) -> List[Meal]:
        return list(
            await self.db.scalars(
                select(Meal)
                .options(selectinload(Meal.missionary))
                .where(
                    Meal.missionary_id == missionary_id,
                    Meal.date >= date.today(),
                    Meal.cancelled.is_(False),
                )
                .order_by(Meal.date, Meal.start_time)
            )
        )
