"""
services/meal/router.py
Public meal booking endpoints used by hosts and the calendar view.
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.availability.checker import is_available
from services.meal.service import BookingService
from services.notification.dispatcher import NotificationManager, get_notification_manager
from shared.schemas.schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    MealCancelRequest,
    MealCreateRequest,
    MealResponse,
    MealUpdateRequest,
)

router = APIRouter(prefix="/api/meals", tags=["Meals"])


def get_booking_service(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
) -> BookingService:
    return BookingService(db, notifier, background_tasks)


@router.get("", response_model=List[MealResponse])
async def list_meals(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    ward_id: Optional[int] = Query(None, alias="wardId"),
    congregation_id: Optional[int] = Query(None, alias="congregationId"),
    service: BookingService = Depends(get_booking_service),
):
    """Meals in [startDate, endDate], cancelled ones included, with a missionary summary."""
    return await service.list(start_date, end_date, ward_id if ward_id is not None else congregation_id)


@router.post("", response_model=MealResponse, status_code=status.HTTP_201_CREATED)
async def create_meal(
    data: MealCreateRequest,
    service: BookingService = Depends(get_booking_service),
):
    return await service.create(data)


@router.post("/check-availability", response_model=AvailabilityResponse)
async def check_availability(data: AvailabilityRequest, db: AsyncSession = Depends(get_db)):
    available = await is_available(db, data.date, data.missionary_type, data.congregation_id)
    return AvailabilityResponse(available=available)


@router.get("/host/{phone}", response_model=List[MealResponse])
async def meals_for_host(
    phone: str,
    ward_id: Optional[int] = Query(None, alias="wardId"),
    service: BookingService = Depends(get_booking_service),
):
    """Upcoming, non-cancelled meals booked with this host phone."""
    return await service.list_by_host_phone(phone, ward_id)


@router.get("/{meal_id}", response_model=MealResponse)
async def get_meal(meal_id: int, service: BookingService = Depends(get_booking_service)):
    return await service.get_meal(meal_id)


@router.patch("/{meal_id}", response_model=MealResponse)
async def update_meal(
    meal_id: int,
    data: MealUpdateRequest,
    service: BookingService = Depends(get_booking_service),
):
    return await service.update(meal_id, data)


@router.post("/{meal_id}/cancel", response_model=MealResponse)
async def cancel_meal(
    meal_id: int,
    data: Optional[MealCancelRequest] = None,
    service: BookingService = Depends(get_booking_service),
):
    """Mark a meal cancelled. Cancelling twice returns the record unchanged."""
    return await service.cancel(meal_id, data.reason if data else None)
