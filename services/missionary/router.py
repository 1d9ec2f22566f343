"""
services/missionary/router.py
Missionary roster management for admins, self-registration with email
verification, and the missionary portal (access code + email + password).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.meal.service import BookingService
from services.notification import messages as msg
from services.notification.dispatcher import NotificationManager, get_notification_manager
from shared.middleware.auth import (
    accessible_congregation_ids,
    ensure_congregation_access,
    require_admin,
)
from shared.models.models import (
    Congregation,
    ConsentStatus,
    Meal,
    Missionary,
    User,
)
from shared.schemas.schemas import (
    CodeRequest,
    ConsentStatusResponse,
    EmailVerifyRequest,
    MealResponse,
    MessageResponse,
    MissionaryCreate,
    MissionaryRegisterRequest,
    MissionaryResponse,
    MissionarySummary,
    MissionaryUpdate,
    PortalAuthRequest,
    PortalAuthResponse,
    PortalChangePasswordRequest,
    PortalForgotPasswordRequest,
    RegisterResponse,
    TransferScheduleRequest,
)
from shared.utils.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from shared.utils.security import (
    generate_numeric_code,
    generate_temporary_password,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

# Optional contact fields an admin may blank out
CLEARABLE_FIELDS = {
    "phone_number",
    "email_address",
    "whatsapp_number",
    "messenger_account",
    "dietary_restrictions",
    "transfer_date",
}

router = APIRouter(prefix="/api/missionaries", tags=["Missionaries"])
admin_router = APIRouter(prefix="/api/admin/missionaries", tags=["Missionary Admin"])
portal_router = APIRouter(prefix="/api/missionary-portal", tags=["Missionary Portal"])


# ── Helpers ───────────────────────────────────────────────────

async def _scoped_missionary(db: AsyncSession, user: User, missionary_id: int) -> Missionary:
    missionary = await db.get(Missionary, missionary_id)
    if missionary is None:
        raise NotFoundError("Missionary not found")
    await ensure_congregation_access(db, user, missionary.congregation_id)
    return missionary


async def _congregation_by_code(db: AsyncSession, access_code: str) -> Congregation:
    congregation = await db.scalar(
        select(Congregation).where(Congregation.access_code == access_code)
    )
    if congregation is None or not congregation.active:
        raise NotFoundError("Invalid congregation access code")
    return congregation


async def _email_taken(db: AsyncSession, email: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(Missionary.id).where(func.lower(Missionary.email_address) == email.lower())
    if exclude_id is not None:
        stmt = stmt.where(Missionary.id != exclude_id)
    return (await db.scalar(stmt)) is not None


async def _send_verification_code(
    db: AsyncSession, notifier: NotificationManager, missionary: Missionary
) -> bool:
    code = generate_numeric_code(4)
    missionary.email_verification_code = code
    missionary.email_verification_sent_at = datetime.now(timezone.utc)
    missionary.email_verified = False
    message = msg.email_verification_message(
        missionary.name, code, settings.EMAIL_VERIFICATION_TTL_MINUTES
    )
    log = await notifier.send_email(db, missionary, message)
    return log.successful


def _check_verification_code(missionary: Missionary, code: str) -> None:
    if not missionary.email_verification_code or missionary.email_verification_code != code:
        raise ValidationError("Invalid verification code")

    sent_at = missionary.email_verification_sent_at
    if sent_at is not None and sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    ttl = timedelta(minutes=settings.EMAIL_VERIFICATION_TTL_MINUTES)
    if sent_at is None or datetime.now(timezone.utc) - sent_at > ttl:
        raise ValidationError("Verification code has expired")

    missionary.email_verified = True
    missionary.email_verification_code = None


async def _portal_missionary(db: AsyncSession, access_code: str, email: str) -> Missionary:
    congregation = await _congregation_by_code(db, access_code)
    missionary = await db.scalar(
        select(Missionary).where(func.lower(Missionary.email_address) == email.lower())
    )
    if missionary is None or missionary.congregation_id != congregation.id:
        raise AuthenticationError("Invalid credentials")
    return missionary


# ── Admin roster ──────────────────────────────────────────────

@admin_router.get("", response_model=List[MissionaryResponse])
async def list_missionaries(
    congregation_id: Optional[int] = Query(None, alias="congregationId"),
    ward_id: Optional[int] = Query(None, alias="wardId"),
    include_inactive: bool = Query(False, alias="includeInactive"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Missionary).order_by(Missionary.name)
    target = congregation_id if congregation_id is not None else ward_id
    if target is not None:
        await ensure_congregation_access(db, current_user, target)
        stmt = stmt.where(Missionary.congregation_id == target)
    else:
        allowed = await accessible_congregation_ids(db, current_user)
        if allowed is not None:
            stmt = stmt.where(Missionary.congregation_id.in_(allowed))
    if not include_inactive:
        stmt = stmt.where(Missionary.active.is_(True))
    return list(await db.scalars(stmt))


@admin_router.post("", response_model=MissionaryResponse, status_code=201)
async def create_missionary(
    data: MissionaryCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin-created missionaries start with a verified email and granted consent."""
    if await db.get(Congregation, data.congregation_id) is None:
        raise NotFoundError("Congregation not found")
    await ensure_congregation_access(db, current_user, data.congregation_id)
    if data.email_address and await _email_taken(db, data.email_address):
        raise ConflictError("A missionary with this email address already exists")

    missionary = Missionary(
        **data.model_dump(),
        email_verified=True,
        consent_status=ConsentStatus.GRANTED,
        consent_date=datetime.now(timezone.utc),
    )
    db.add(missionary)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A missionary with this email address already exists")
    await db.refresh(missionary)

    logger.info("Missionary %s created by %s", missionary.id, current_user.username)
    return missionary


@admin_router.get("/{missionary_id}", response_model=MissionaryResponse)
async def get_missionary(
    missionary_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await _scoped_missionary(db, current_user, missionary_id)


@admin_router.patch("/{missionary_id}", response_model=MissionaryResponse)
async def update_missionary(
    missionary_id: int,
    data: MissionaryUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    changes = {
        field: value
        for field, value in data.model_dump(exclude_unset=True).items()
        if value is not None or field in CLEARABLE_FIELDS
    }

    if "congregation_id" in changes and changes["congregation_id"] != missionary.congregation_id:
        if await db.get(Congregation, changes["congregation_id"]) is None:
            raise NotFoundError("Congregation not found")
        await ensure_congregation_access(db, current_user, changes["congregation_id"])

    new_email = changes.get("email_address")
    if "email_address" in changes and (new_email or "").lower() != (missionary.email_address or "").lower():
        if new_email and await _email_taken(db, new_email, exclude_id=missionary.id):
            raise ConflictError("A missionary with this email address already exists")
        missionary.email_verified = False
        missionary.email_verification_code = None

    if "transfer_date" in changes and changes["transfer_date"] != missionary.transfer_date:
        missionary.transfer_notification_sent = False

    for field, value in changes.items():
        setattr(missionary, field, value)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A missionary with this email address already exists")
    await db.refresh(missionary)
    return missionary


@admin_router.delete("/{missionary_id}", response_model=MessageResponse)
async def delete_missionary(
    missionary_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    """
    Upcoming meals are cancelled first. A missionary with meal history is
    deactivated so the history stays intact; otherwise the row is removed.
    """
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    cancelled = await BookingService(db, notifier).cancel_for_missionary(
        missionary.id, "Missionary deleted"
    )

    has_meals = await db.scalar(select(func.count(Meal.id)).where(Meal.missionary_id == missionary.id))
    if has_meals:
        missionary.active = False
        await db.commit()
        logger.info(
            "Missionary %s deactivated by %s (%d upcoming meals cancelled)",
            missionary.id, current_user.username, cancelled,
        )
        return MessageResponse(message="Missionary deactivated; meal history retained")

    await db.delete(missionary)
    await db.commit()
    logger.info("Missionary %s deleted by %s", missionary_id, current_user.username)
    return MessageResponse(message="Missionary deleted")


@admin_router.post("/{missionary_id}/send-verification", response_model=MessageResponse)
async def send_verification(
    missionary_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    if not missionary.email_address:
        raise ValidationError("Missionary has no email address")
    sent = await _send_verification_code(db, notifier, missionary)
    await db.commit()
    if not sent:
        return MessageResponse(message="Verification email could not be delivered")
    return MessageResponse(message="Verification code sent")


@admin_router.post("/{missionary_id}/verify-email", response_model=MissionaryResponse)
async def verify_email(
    missionary_id: int,
    data: CodeRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    _check_verification_code(missionary, data.code)
    await db.commit()
    return missionary


@admin_router.post("/{missionary_id}/request-consent", response_model=MessageResponse)
async def request_consent(
    missionary_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    """Text the missionary a YES-code consent request for the legacy SMS channel."""
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    if not missionary.phone_number:
        raise ValidationError("Missionary has no phone number")
    if missionary.consent_status == ConsentStatus.GRANTED:
        return MessageResponse(message="Consent already granted")

    sent = await notifier.request_consent(db, missionary, force=True)
    await db.commit()
    return MessageResponse(message="Consent request sent" if sent else "Consent request could not be delivered")


@admin_router.get("/{missionary_id}/consent-status", response_model=ConsentStatusResponse)
async def consent_status(
    missionary_id: int,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    return ConsentStatusResponse(
        missionary_id=missionary.id,
        consent_status=missionary.consent_status,
        consent_date=missionary.consent_date,
        consent_verification_sent_at=missionary.consent_verification_sent_at,
    )


@admin_router.post("/{missionary_id}/transfer", response_model=MissionaryResponse)
async def schedule_transfer(
    missionary_id: int,
    data: TransferScheduleRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    missionary = await _scoped_missionary(db, current_user, missionary_id)
    missionary.transfer_date = data.transfer_date
    missionary.transfer_notification_sent = False
    await db.commit()
    return missionary


# ── Self-registration ─────────────────────────────────────────

@router.post("/register", response_model=RegisterResponse)
async def register_missionary(
    data: MissionaryRegisterRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    """
    Portal sign-up. Requires a mission email address and a congregation
    access code; a roster entry created by an admin without a password is
    claimed rather than duplicated.
    """
    domain = settings.ALLOWED_MISSIONARY_EMAIL_DOMAIN.lower()
    if not data.email_address.lower().endswith(f"@{domain}"):
        raise ValidationError(f"Email must be a @{domain} address")

    congregation = await _congregation_by_code(db, data.congregation_access_code)

    missionary = await db.scalar(
        select(Missionary).where(func.lower(Missionary.email_address) == data.email_address.lower())
    )
    if missionary is not None:
        if missionary.password_hash:
            raise ConflictError("Missionary already registered with this email")
        missionary.password_hash = hash_password(data.password)
    else:
        missionary = Missionary(
            name=data.name,
            type=data.type,
            email_address=data.email_address,
            congregation_id=congregation.id,
            password_hash=hash_password(data.password),
            active=True,
        )
        db.add(missionary)
        await db.flush()

    await _send_verification_code(db, notifier, missionary)
    await db.commit()
    logger.info("Missionary %s registered in congregation %s", missionary.id, congregation.id)
    return RegisterResponse(
        message="Registration successful. Verification email sent.",
        missionary_id=missionary.id,
    )


@router.post("/verify", response_model=MessageResponse)
async def verify_registration(data: EmailVerifyRequest, db: AsyncSession = Depends(get_db)):
    missionary = await db.get(Missionary, data.missionary_id)
    if missionary is None:
        raise NotFoundError("Missionary not found")
    _check_verification_code(missionary, data.verification_code)
    await db.commit()
    return MessageResponse(message="Email verified successfully")


# ── Missionary portal ─────────────────────────────────────────

@portal_router.post("/authenticate", response_model=PortalAuthResponse)
async def portal_authenticate(
    data: PortalAuthRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    missionary = await _portal_missionary(db, data.access_code, data.email_address)
    if not verify_password(data.password, missionary.password_hash):
        raise AuthenticationError("Invalid credentials")

    meals = await BookingService(db, notifier).upcoming_for_missionary(missionary.id)
    return PortalAuthResponse(
        authenticated=True,
        missionary=MissionarySummary.model_validate(missionary),
        upcoming_meals=[MealResponse.model_validate(m) for m in meals],
    )


@portal_router.post("/change-password", response_model=MessageResponse)
async def portal_change_password(data: PortalChangePasswordRequest, db: AsyncSession = Depends(get_db)):
    missionary = await _portal_missionary(db, data.access_code, data.email_address)
    if not missionary.password_hash:
        raise AuthenticationError("No password set. Please register first.")
    if not verify_password(data.current_password, missionary.password_hash):
        raise AuthenticationError("Current password is incorrect")

    missionary.password_hash = hash_password(data.new_password)
    await db.commit()
    return MessageResponse(message="Password changed successfully")


@portal_router.post("/forgot-password", response_model=MessageResponse)
async def portal_forgot_password(
    data: PortalForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    """Email a temporary password to the missionary's address on file."""
    domain = settings.ALLOWED_MISSIONARY_EMAIL_DOMAIN.lower()
    if not data.email_address.lower().endswith(f"@{domain}"):
        raise ValidationError(f"Please use your @{domain} email address")

    congregation = await _congregation_by_code(db, data.access_code)
    missionary = await db.scalar(
        select(Missionary).where(func.lower(Missionary.email_address) == data.email_address.lower())
    )
    if missionary is None or missionary.congregation_id != congregation.id:
        raise NotFoundError("Missionary not found in this congregation")

    temporary = generate_temporary_password()
    missionary.password_hash = hash_password(temporary)
    await notifier.send_email(db, missionary, msg.password_reset_message(missionary.name, temporary))
    await db.commit()
    return MessageResponse(message="A temporary password has been sent to your email address")
