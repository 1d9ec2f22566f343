"""
shared/models/models.py
All SQLAlchemy ORM models for the Missionary Meal Scheduler.
Hierarchy: Region → Mission → Stake → Congregation → Missionary → Meal.
"""

from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

# Meal has a column named `date`; annotate through an alias.
CalendarDay = date


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    """Store enum values (lowercase strings), not member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    ULTRA = "ultra"
    REGION = "region"
    MISSION = "mission"
    STAKE = "stake"
    WARD = "ward"


# Higher number = broader scope
ROLE_RANK = {
    UserRole.WARD: 1,
    UserRole.STAKE: 2,
    UserRole.MISSION: 3,
    UserRole.REGION: 4,
    UserRole.ULTRA: 5,
}


class MissionaryType(str, PyEnum):
    ELDERS = "elders"
    SISTERS = "sisters"


class NotificationMethod(str, PyEnum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    TEXT = "text"             # legacy SMS
    MESSENGER = "messenger"   # legacy


class NotificationScheduleType(str, PyEnum):
    NONE = "none"
    BEFORE_MEAL = "before_meal"
    DAY_OF = "day_of"
    WEEKLY_SUMMARY = "weekly_summary"


class ConsentStatus(str, PyEnum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )


# ── Hierarchy ─────────────────────────────────────────────────

class Region(TimestampMixin, Base):
    __tablename__ = "regions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)

    missions: Mapped[List["Mission"]] = relationship(back_populates="region", passive_deletes=True)


class Mission(TimestampMixin, Base):
    __tablename__ = "missions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    region_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("regions.id", ondelete="SET NULL")
    )

    region: Mapped[Optional["Region"]] = relationship(back_populates="missions")
    stakes: Mapped[List["Stake"]] = relationship(back_populates="mission", passive_deletes=True)

    __table_args__ = (Index("ix_missions_region_id", "region_id"),)


class Stake(TimestampMixin, Base):
    __tablename__ = "stakes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    mission_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("missions.id", ondelete="SET NULL")
    )

    mission: Mapped[Optional["Mission"]] = relationship(back_populates="stakes")
    congregations: Mapped[List["Congregation"]] = relationship(back_populates="stake", passive_deletes=True)

    __table_args__ = (Index("ix_stakes_mission_id", "mission_id"),)


class Congregation(TimestampMixin, Base):
    """A ward. Owns a missionary roster and the booking-policy settings."""
    __tablename__ = "congregations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    access_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allow_combined_bookings: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_bookings_per_address: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_bookings_per_phone: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_bookings_per_period: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0 = unlimited
    booking_period_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    stake_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stakes.id", ondelete="SET NULL")
    )

    stake: Mapped[Optional["Stake"]] = relationship(back_populates="congregations")
    missionaries: Mapped[List["Missionary"]] = relationship(back_populates="congregation", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("max_bookings_per_address >= 0", name="ck_congregation_addr_cap"),
        CheckConstraint("max_bookings_per_phone >= 0", name="ck_congregation_phone_cap"),
        CheckConstraint("max_bookings_per_period >= 0", name="ck_congregation_period_cap"),
        CheckConstraint("booking_period_days >= 1", name="ck_congregation_period_days"),
        Index("ix_congregations_stake_id", "stake_id"),
    )


# ── Missionaries & Meals ──────────────────────────────────────

class Missionary(TimestampMixin, Base):
    """A companionship (pair or trio) of elders or sisters."""
    __tablename__ = "missionaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    congregation_id: Mapped[int] = mapped_column(
        ForeignKey("congregations.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[MissionaryType] = mapped_column(_enum(MissionaryType), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32))
    email_address: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_verification_code: Mapped[Optional[str]] = mapped_column(String(8))
    email_verification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(32))
    messenger_account: Mapped[Optional[str]] = mapped_column(String(255))
    preferred_notification: Mapped[NotificationMethod] = mapped_column(
        _enum(NotificationMethod), default=NotificationMethod.EMAIL, nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_trio: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Reminder schedule
    notification_schedule_type: Mapped[NotificationScheduleType] = mapped_column(
        _enum(NotificationScheduleType),
        default=NotificationScheduleType.BEFORE_MEAL,
        nullable=False,
    )
    hours_before: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    day_of_time: Mapped[str] = mapped_column(String(5), default="08:00", nullable=False)
    weekly_summary_day: Mapped[str] = mapped_column(String(10), default="monday", nullable=False)
    weekly_summary_time: Mapped[str] = mapped_column(String(5), default="08:00", nullable=False)

    # SMS consent (legacy text channel)
    consent_status: Mapped[ConsentStatus] = mapped_column(
        _enum(ConsentStatus), default=ConsentStatus.PENDING, nullable=False
    )
    consent_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    consent_verification_token: Mapped[Optional[str]] = mapped_column(String(16))
    consent_verification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Portal
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    dietary_restrictions: Mapped[Optional[str]] = mapped_column(Text)

    # Transfers
    transfer_date: Mapped[Optional[date]] = mapped_column(Date)
    transfer_notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    congregation: Mapped["Congregation"] = relationship(back_populates="missionaries")
    meals: Mapped[List["Meal"]] = relationship(back_populates="missionary", passive_deletes=True)

    __table_args__ = (
        Index("ix_missionaries_congregation_type", "congregation_id", "type", "active"),
        Index("ix_missionaries_phone", "phone_number"),
        CheckConstraint("hours_before >= 0", name="ck_missionary_hours_before"),
    )


class Meal(TimestampMixin, Base):
    """
    A meal appointment between a host and a missionary companionship.
    At most one non-cancelled meal per (missionary_id, date); enforced by
    a partial unique index so concurrent bookings cannot both land.
    """
    __tablename__ = "meals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    missionary_id: Mapped[int] = mapped_column(ForeignKey("missionaries.id"), nullable=False)
    congregation_id: Mapped[int] = mapped_column(ForeignKey("congregations.id"), nullable=False)
    date: Mapped[CalendarDay] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    host_name: Mapped[str] = mapped_column(String(255), nullable=False)
    host_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    host_email: Mapped[Optional[str]] = mapped_column(String(255))
    meal_description: Mapped[Optional[str]] = mapped_column(Text)
    special_notes: Mapped[Optional[str]] = mapped_column(Text)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    missionary: Mapped["Missionary"] = relationship(back_populates="meals", lazy="selectin")

    __table_args__ = (
        Index(
            "uq_meals_missionary_date_active",
            "missionary_id",
            "date",
            unique=True,
            postgresql_where=text("cancelled = false"),
            sqlite_where=text("cancelled = 0"),
        ),
        Index("ix_meals_congregation_date", "congregation_id", "date"),
        Index("ix_meals_host_phone", "host_phone"),
    )


# ── Administration ────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Administrative account, scoped by role and congregation links."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), default=UserRole.WARD, nullable=False)
    region_id: Mapped[Optional[int]] = mapped_column(ForeignKey("regions.id", ondelete="SET NULL"))
    mission_id: Mapped[Optional[int]] = mapped_column(ForeignKey("missions.id", ondelete="SET NULL"))
    stake_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stakes.id", ondelete="SET NULL"))
    can_use_paid_notifications: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_users_role", "role"),)


class UserCongregation(Base):
    """Grants a user scoped access to a congregation."""
    __tablename__ = "user_congregations"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    congregation_id: Mapped[int] = mapped_column(
        ForeignKey("congregations.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )


class MessageLog(Base):
    """Append-only record of every notification attempt."""
    __tablename__ = "message_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    missionary_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("missionaries.id", ondelete="SET NULL")
    )
    congregation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("congregations.id", ondelete="SET NULL")
    )
    message_type: Mapped[str] = mapped_column(String(50), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    character_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    segment_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    __table_args__ = (
        Index("ix_message_logs_congregation_sent", "congregation_id", "sent_at"),
        Index("ix_message_logs_missionary", "missionary_id"),
    )
