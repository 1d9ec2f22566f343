"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas.
JSON on the wire is camelCase; snake_case input is accepted too.
"""

import re
from datetime import date, datetime
from typing import List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

from shared.models.models import (
    ConsentStatus,
    MissionaryType,
    NotificationMethod,
    NotificationScheduleType,
    UserRole,
)

# Several schemas have a field named `date`
CalendarDay = date

_TIME_RE = re.compile(r"^(\d{1,2}):([0-5]\d)$")
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Request bodies may name the congregation either way
CONGREGATION_ALIASES = AliasChoices("wardId", "congregationId", "ward_id", "congregation_id")


def normalize_time(value: Optional[str]) -> Optional[str]:
    """'6:30' -> '06:30'; rejects anything that is not a 24h HH:MM time."""
    if value is None:
        return value
    match = _TIME_RE.match(value.strip())
    if not match or int(match.group(1)) > 23:
        raise ValueError("Time must be HH:MM (24-hour)")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def coerce_calendar_day(value):
    """Accept '2025-06-01' as well as ISO datetimes sent by browser clients."""
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    if isinstance(value, datetime):
        return value.date()
    return value


def normalize_method(value):
    if isinstance(value, str) and value.lower() == "sms":
        return NotificationMethod.TEXT.value
    return value.lower() if isinstance(value, str) else value


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class MessageResponse(BaseSchema):
    message: str


# ── Auth ──────────────────────────────────────────────────────

class LoginRequest(BaseSchema):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1)


class SetupRequest(BaseSchema):
    username: str = Field(..., min_length=3, max_length=150)
    password: str = Field(..., min_length=6)
    email: Optional[EmailStr] = None


class SetupStatusResponse(BaseSchema):
    is_setup_mode: bool


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: "UserResponse"


# ── Hierarchy ─────────────────────────────────────────────────

class RegionCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class RegionUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class RegionResponse(RegionCreate):
    id: int
    created_at: datetime


class MissionCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    region_id: Optional[int] = None


class MissionUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    region_id: Optional[int] = None


class MissionResponse(MissionCreate):
    id: int
    created_at: datetime


class StakeCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    mission_id: Optional[int] = None


class StakeUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    mission_id: Optional[int] = None


class StakeResponse(StakeCreate):
    id: int
    created_at: datetime


# ── Congregation ──────────────────────────────────────────────

class CongregationSettings(BaseSchema):
    allow_combined_bookings: bool = False
    max_bookings_per_address: int = Field(0, ge=0)
    max_bookings_per_phone: int = Field(0, ge=0)
    max_bookings_per_period: int = Field(0, ge=0)   # 0 = unlimited
    booking_period_days: int = Field(30, ge=1)


class CongregationCreate(CongregationSettings):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    stake_id: Optional[int] = None
    active: bool = True


class CongregationUpdate(BaseSchema):
    """Generic field update. The access code is regenerated separately."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    stake_id: Optional[int] = None
    active: Optional[bool] = None
    allow_combined_bookings: Optional[bool] = None
    max_bookings_per_address: Optional[int] = Field(None, ge=0)
    max_bookings_per_phone: Optional[int] = Field(None, ge=0)
    max_bookings_per_period: Optional[int] = Field(None, ge=0)
    booking_period_days: Optional[int] = Field(None, ge=1)


class AccessCodeRegenerateRequest(BaseSchema):
    confirm: bool = False


class CongregationResponse(CongregationSettings):
    id: int
    name: str
    access_code: str
    description: Optional[str]
    stake_id: Optional[int]
    active: bool
    created_at: datetime


class CongregationUserAdd(BaseSchema):
    username: str = Field(..., min_length=1)


class CongregationJoinRequest(BaseSchema):
    access_code: str = Field(..., min_length=1)


class CongregationUserResponse(BaseSchema):
    id: int
    username: str
    email: Optional[str]
    role: UserRole


# ── Missionary ────────────────────────────────────────────────

class MissionaryBase(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    type: MissionaryType
    phone_number: Optional[str] = Field(None, max_length=32)
    email_address: Optional[EmailStr] = None
    whatsapp_number: Optional[str] = Field(None, max_length=32)
    messenger_account: Optional[str] = Field(None, max_length=255)
    preferred_notification: NotificationMethod = NotificationMethod.EMAIL
    active: bool = True
    is_trio: bool = False
    notification_schedule_type: NotificationScheduleType = NotificationScheduleType.BEFORE_MEAL
    hours_before: int = Field(3, ge=0, le=72)
    day_of_time: str = "08:00"
    weekly_summary_day: str = "monday"
    weekly_summary_time: str = "08:00"
    dietary_restrictions: Optional[str] = None
    transfer_date: Optional[date] = None

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("preferred_notification", mode="before")
    @classmethod
    def sms_is_text(cls, v):
        return normalize_method(v)

    @field_validator("day_of_time", "weekly_summary_time")
    @classmethod
    def valid_time(cls, v: str) -> str:
        return normalize_time(v)

    @field_validator("weekly_summary_day")
    @classmethod
    def valid_weekday(cls, v: str) -> str:
        if v.lower() not in _WEEKDAYS:
            raise ValueError(f"weekly_summary_day must be one of {', '.join(_WEEKDAYS)}")
        return v.lower()


class MissionaryCreate(MissionaryBase):
    congregation_id: int = Field(..., validation_alias=CONGREGATION_ALIASES)


class MissionaryUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[MissionaryType] = None
    congregation_id: Optional[int] = Field(None, validation_alias=CONGREGATION_ALIASES)
    phone_number: Optional[str] = Field(None, max_length=32)
    email_address: Optional[EmailStr] = None
    whatsapp_number: Optional[str] = Field(None, max_length=32)
    messenger_account: Optional[str] = Field(None, max_length=255)
    preferred_notification: Optional[NotificationMethod] = None
    active: Optional[bool] = None
    is_trio: Optional[bool] = None
    notification_schedule_type: Optional[NotificationScheduleType] = None
    hours_before: Optional[int] = Field(None, ge=0, le=72)
    day_of_time: Optional[str] = None
    weekly_summary_day: Optional[str] = None
    weekly_summary_time: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    transfer_date: Optional[date] = None

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("preferred_notification", mode="before")
    @classmethod
    def sms_is_text(cls, v):
        return normalize_method(v)

    @field_validator("day_of_time", "weekly_summary_time")
    @classmethod
    def valid_time(cls, v: Optional[str]) -> Optional[str]:
        return normalize_time(v)

    @field_validator("weekly_summary_day")
    @classmethod
    def valid_weekday(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v.lower() not in _WEEKDAYS:
            raise ValueError(f"weekly_summary_day must be one of {', '.join(_WEEKDAYS)}")
        return v.lower() if v else v


class MissionarySummary(BaseSchema):
    id: int
    name: str
    type: MissionaryType
    phone_number: Optional[str] = None
    email_address: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    is_trio: bool = False
    active: bool = True


class MissionaryResponse(MissionarySummary):
    congregation_id: int
    whatsapp_number: Optional[str]
    messenger_account: Optional[str]
    preferred_notification: NotificationMethod
    email_verified: bool
    notification_schedule_type: NotificationScheduleType
    hours_before: int
    day_of_time: str
    weekly_summary_day: str
    weekly_summary_time: str
    consent_status: ConsentStatus
    consent_date: Optional[datetime]
    transfer_date: Optional[date]
    created_at: datetime


class MissionaryRegisterRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    type: MissionaryType
    email_address: EmailStr
    congregation_access_code: str = Field(..., min_length=6)
    password: str = Field(..., min_length=6)

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v):
        return v.lower() if isinstance(v, str) else v


class RegisterResponse(BaseSchema):
    message: str
    missionary_id: int


class EmailVerifyRequest(BaseSchema):
    missionary_id: int
    verification_code: str = Field(
        ...,
        min_length=4,
        max_length=4,
        validation_alias=AliasChoices("verificationCode", "verification_code", "code"),
    )


class CodeRequest(BaseSchema):
    code: str = Field(..., min_length=4, max_length=4)


class PortalAuthRequest(BaseSchema):
    access_code: str = Field(..., min_length=1)
    email_address: EmailStr
    password: str = Field(..., min_length=1)


class PortalAuthResponse(BaseSchema):
    authenticated: bool
    missionary: Optional[MissionarySummary] = None
    upcoming_meals: List["MealResponse"] = []


class PortalChangePasswordRequest(BaseSchema):
    access_code: str = Field(..., min_length=1)
    email_address: EmailStr
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class PortalForgotPasswordRequest(BaseSchema):
    access_code: str = Field(..., min_length=1)
    email_address: EmailStr


class TransferScheduleRequest(BaseSchema):
    transfer_date: date


class ConsentStatusResponse(BaseSchema):
    missionary_id: int
    consent_status: ConsentStatus
    consent_date: Optional[datetime]
    consent_verification_sent_at: Optional[datetime]


# ── Meal ──────────────────────────────────────────────────────

class MealCreateRequest(BaseSchema):
    missionary_id: int
    date: CalendarDay
    start_time: str
    host_name: str = Field(..., min_length=1, max_length=255)
    host_phone: str = Field(..., min_length=1, max_length=32)
    host_email: Optional[EmailStr] = None
    meal_description: Optional[str] = Field(None, max_length=2000)
    special_notes: Optional[str] = Field(None, max_length=2000)
    congregation_id: int = Field(..., validation_alias=CONGREGATION_ALIASES)

    @field_validator("date", mode="before")
    @classmethod
    def calendar_day(cls, v):
        return coerce_calendar_day(v)

    @field_validator("start_time")
    @classmethod
    def valid_start_time(cls, v: str) -> str:
        return normalize_time(v)

    @field_validator("host_name", "host_phone")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class MealUpdateRequest(BaseSchema):
    """Partial update. Only fields present in the body are applied."""
    missionary_id: Optional[int] = None
    date: Optional[CalendarDay] = None
    start_time: Optional[str] = None
    host_name: Optional[str] = Field(None, min_length=1, max_length=255)
    host_phone: Optional[str] = Field(None, min_length=1, max_length=32)
    host_email: Optional[EmailStr] = None
    meal_description: Optional[str] = Field(None, max_length=2000)
    special_notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("date", mode="before")
    @classmethod
    def calendar_day(cls, v):
        return coerce_calendar_day(v)

    @field_validator("start_time")
    @classmethod
    def valid_start_time(cls, v: Optional[str]) -> Optional[str]:
        return normalize_time(v)


class MealCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class MealResponse(BaseSchema):
    id: int
    missionary_id: int
    congregation_id: int
    date: CalendarDay
    start_time: str
    host_name: str
    host_phone: str
    host_email: Optional[str]
    meal_description: Optional[str]
    special_notes: Optional[str]
    cancelled: bool
    cancellation_reason: Optional[str]
    created_at: datetime
    updated_at: datetime
    missionary: Optional[MissionarySummary] = None


class AvailabilityRequest(BaseSchema):
    date: CalendarDay
    missionary_type: Union[int, str] = Field(
        ...,
        validation_alias=AliasChoices(
            "missionaryType", "missionary_type", "missionaryId", "missionary_id"
        ),
    )
    congregation_id: int = Field(..., validation_alias=CONGREGATION_ALIASES)

    @field_validator("date", mode="before")
    @classmethod
    def calendar_day(cls, v):
        return coerce_calendar_day(v)

    @field_validator("missionary_type")
    @classmethod
    def type_or_id(cls, v):
        if isinstance(v, int):
            return v
        value = v.strip().lower()
        if value.isdigit():
            return int(value)
        if value not in {t.value for t in MissionaryType}:
            raise ValueError("missionaryType must be 'elders', 'sisters' or a missionary id")
        return value


class AvailabilityResponse(BaseSchema):
    available: bool


# ── Users ─────────────────────────────────────────────────────

class UserCreate(BaseSchema):
    username: str = Field(..., min_length=3, max_length=150)
    password: str = Field(..., min_length=6)
    email: Optional[EmailStr] = None
    role: UserRole = UserRole.WARD
    region_id: Optional[int] = None
    mission_id: Optional[int] = None
    stake_id: Optional[int] = None
    can_use_paid_notifications: bool = False
    congregation_ids: List[int] = []


class UserUpdate(BaseSchema):
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[UserRole] = None
    region_id: Optional[int] = None
    mission_id: Optional[int] = None
    stake_id: Optional[int] = None
    can_use_paid_notifications: Optional[bool] = None
    is_active: Optional[bool] = None


class UserResponse(BaseSchema):
    id: int
    username: str
    email: Optional[str]
    role: UserRole
    region_id: Optional[int]
    mission_id: Optional[int]
    stake_id: Optional[int]
    can_use_paid_notifications: bool
    is_active: bool
    created_at: datetime


# ── Notifications & statistics ────────────────────────────────

class TestMessageRequest(BaseSchema):
    missionary_id: int
    message: str = Field(..., min_length=1, max_length=1600)


class NotificationResult(BaseSchema):
    successful: bool
    method: str
    failure_reason: Optional[str] = None


class MessageLogResponse(BaseSchema):
    id: int
    missionary_id: Optional[int]
    congregation_id: Optional[int]
    message_type: str
    method: str
    content: str
    character_count: int
    successful: bool
    failure_reason: Optional[str]
    sent_at: datetime
    segment_count: int
    estimated_cost: float


class AdminStatsResponse(BaseSchema):
    total_missionaries: int
    active_missionaries: int
    total_meals_this_month: int
    elders_bookings: int
    sisters_bookings: int
    cancelled_meals: int


class MissionaryMealStat(BaseSchema):
    id: int
    name: str
    type: MissionaryType
    meal_count: int
    last_meal: Optional[date]


class MonthlyMealCount(BaseSchema):
    month: str
    meal_count: int


class MealStatsResponse(BaseSchema):
    total_meals: int
    average_meals_per_week: float
    average_meals_per_month: float
    missionary_stats: List[MissionaryMealStat]
    monthly_breakdown: List[MonthlyMealCount]


class WardMessageStat(BaseSchema):
    ward_id: Optional[int]
    ward_name: Optional[str]
    message_count: int
    successful_count: int
    failed_count: int
    characters: int
    segments: int
    cost: float


class MissionaryMessageStat(BaseSchema):
    missionary_id: Optional[int]
    missionary_name: Optional[str]
    message_count: int
    successful_count: int
    failed_count: int
    characters: int
    segments: int
    cost: float


class PeriodMessageStat(BaseSchema):
    period: str
    message_count: int
    segments: int
    cost: float


class MessageStatsResponse(BaseSchema):
    total_messages: int
    total_successful: int
    total_failed: int
    total_characters: int
    total_segments: int
    estimated_cost: float
    by_ward: List[WardMessageStat]
    by_missionary: List[MissionaryMessageStat]
    by_period: List[PeriodMessageStat]


# Rebuild models with forward refs
TokenResponse.model_rebuild()
PortalAuthResponse.model_rebuild()
