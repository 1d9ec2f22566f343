"""
services/notification/router.py
Message logs and statistics, admin test messages, and the Twilio inbound
webhook that records SMS consent replies (YES <code> / STOP).
"""

import logging
import re
from collections import defaultdict
from datetime import date, datetime, time, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.twiml.messaging_response import MessagingResponse

from config.database import get_db
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
    MessageLog,
    Missionary,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    MessageLogResponse,
    MessageStatsResponse,
    MissionaryMessageStat,
    NotificationResult,
    PeriodMessageStat,
    TestMessageRequest,
    WardMessageStat,
)
from shared.utils.errors import AuthorizationError, NotFoundError, ValidationError
from shared.utils.security import verify_twilio_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Notifications"])
webhook_router = APIRouter(prefix="/api/sms", tags=["SMS Webhook"])

OPT_OUT_WORDS = {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"}
_YES_RE = re.compile(r"^\s*YES\s+(\d{4,8})\s*$", re.IGNORECASE)


# ── Helpers ───────────────────────────────────────────────────

async def _stats_scope(
    db: AsyncSession, user: User, congregation_id: Optional[int]
) -> Optional[int]:
    """Non-ultra users must name a congregation they can administer."""
    if congregation_id is None:
        if user.role != UserRole.ULTRA:
            raise ValidationError("congregationId is required")
        return None
    await ensure_congregation_access(db, user, congregation_id)
    return congregation_id


def _period_key(sent_at: datetime, group_by: str) -> str:
    if group_by == "day":
        return sent_at.date().isoformat()
    if group_by == "week":
        year, week, _ = sent_at.isocalendar()
        return f"{year}-W{week:02d}"
    return f"{sent_at:%Y-%m}"


def _digits(phone: Optional[str]) -> str:
    return re.sub(r"\D", "", phone or "")[-10:]


# ── Logs & statistics ─────────────────────────────────────────

@router.get("/message-logs", response_model=List[MessageLogResponse])
async def list_message_logs(
    congregation_id: Optional[int] = Query(None, alias="congregationId"),
    missionary_id: Optional[int] = Query(None, alias="missionaryId"),
    limit: int = Query(100, ge=1, le=1000),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(MessageLog).order_by(MessageLog.sent_at.desc()).limit(limit)
    if congregation_id is not None:
        await ensure_congregation_access(db, current_user, congregation_id)
        stmt = stmt.where(MessageLog.congregation_id == congregation_id)
    else:
        allowed = await accessible_congregation_ids(db, current_user)
        if allowed is not None:
            stmt = stmt.where(MessageLog.congregation_id.in_(allowed))
    if missionary_id is not None:
        stmt = stmt.where(MessageLog.missionary_id == missionary_id)
    return list(await db.scalars(stmt))


@router.get("/message-stats", response_model=MessageStatsResponse)
async def message_stats(
    congregation_id: Optional[int] = Query(None, alias="congregationId"),
    ward_id: Optional[int] = Query(None, alias="wardId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    group_by: str = Query("month", alias="groupBy", pattern="^(day|week|month)$"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Message volume, segments and estimated cost, broken down by ward, missionary and period."""
    scope = await _stats_scope(db, current_user, congregation_id if congregation_id is not None else ward_id)

    stmt = (
        select(MessageLog, Congregation.name, Missionary.name)
        .outerjoin(Congregation, Congregation.id == MessageLog.congregation_id)
        .outerjoin(Missionary, Missionary.id == MessageLog.missionary_id)
    )
    if scope is not None:
        stmt = stmt.where(MessageLog.congregation_id == scope)
    if start_date is not None:
        stmt = stmt.where(MessageLog.sent_at >= datetime.combine(start_date, time.min, tzinfo=timezone.utc))
    if end_date is not None:
        stmt = stmt.where(MessageLog.sent_at <= datetime.combine(end_date, time.max, tzinfo=timezone.utc))

    rows = (await db.execute(stmt)).all()

    def bucket():
        return {"count": 0, "ok": 0, "chars": 0, "segments": 0, "cost": 0.0, "name": None}

    wards = defaultdict(bucket)
    missionaries = defaultdict(bucket)
    periods = defaultdict(bucket)

    for log, ward_name, missionary_name in rows:
        for key, name, table in (
            (log.congregation_id, ward_name, wards),
            (log.missionary_id, missionary_name, missionaries),
            (_period_key(log.sent_at, group_by), None, periods),
        ):
            entry = table[key]
            entry["name"] = name
            entry["count"] += 1
            entry["ok"] += int(log.successful)
            entry["chars"] += log.character_count
            entry["segments"] += log.segment_count
            entry["cost"] += log.estimated_cost

    total_ok = sum(int(log.successful) for log, _, _ in rows)
    return MessageStatsResponse(
        total_messages=len(rows),
        total_successful=total_ok,
        total_failed=len(rows) - total_ok,
        total_characters=sum(log.character_count for log, _, _ in rows),
        total_segments=sum(log.segment_count for log, _, _ in rows),
        estimated_cost=round(sum(log.estimated_cost for log, _, _ in rows), 4),
        by_ward=[
            WardMessageStat(
                ward_id=key, ward_name=e["name"], message_count=e["count"],
                successful_count=e["ok"], failed_count=e["count"] - e["ok"],
                characters=e["chars"], segments=e["segments"], cost=round(e["cost"], 4),
            )
            for key, e in sorted(wards.items(), key=lambda item: -item[1]["count"])
        ],
        by_missionary=[
            MissionaryMessageStat(
                missionary_id=key, missionary_name=e["name"], message_count=e["count"],
                successful_count=e["ok"], failed_count=e["count"] - e["ok"],
                characters=e["chars"], segments=e["segments"], cost=round(e["cost"], 4),
            )
            for key, e in sorted(missionaries.items(), key=lambda item: -item[1]["count"])
        ],
        by_period=[
            PeriodMessageStat(
                period=key, message_count=e["count"], segments=e["segments"], cost=round(e["cost"], 4)
            )
            for key, e in sorted(periods.items())
        ],
    )


# ── Test message ──────────────────────────────────────────────

@router.post("/notifications/test", response_model=NotificationResult)
async def send_test_message(
    data: TestMessageRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationManager = Depends(get_notification_manager),
):
    """Send a custom message through the missionary's preferred channel."""
    missionary = await db.get(Missionary, data.missionary_id)
    if missionary is None:
        raise NotFoundError("Missionary not found")
    await ensure_congregation_access(db, current_user, missionary.congregation_id)

    sender = notifier.sender_for(missionary.preferred_notification)
    paid_channel = sender.method.value in ("text", "messenger")
    if paid_channel and not current_user.can_use_paid_notifications and current_user.role != UserRole.ULTRA:
        raise AuthorizationError("Paid notification channels are not enabled for your account")

    log = await notifier.send(db, missionary, msg.custom_message(missionary.name, data.message))
    await db.commit()
    return NotificationResult(
        successful=log.successful,
        method=log.method,
        failure_reason=log.failure_reason,
    )


# ── Twilio inbound webhook ────────────────────────────────────

async def apply_consent_reply(db: AsyncSession, from_number: str, body: str) -> str:
    """Record a YES-code or opt-out reply. Returns the text to send back."""
    phone = _digits(from_number)
    text = (body or "").strip()
    now = datetime.now(timezone.utc)

    candidates = [
        m for m in await db.scalars(select(Missionary).where(Missionary.phone_number.is_not(None)))
        if phone and _digits(m.phone_number) == phone
    ]

    if text.upper() in OPT_OUT_WORDS:
        for missionary in candidates:
            missionary.consent_status = ConsentStatus.DENIED
            missionary.consent_date = now
            missionary.consent_verification_token = None
        logger.info("SMS opt-out from %s (%d missionaries)", from_number, len(candidates))
        return "You have been unsubscribed and will receive no further meal notifications."

    match = _YES_RE.match(text)
    if match:
        code = match.group(1)
        granted = [m for m in candidates if m.consent_verification_token == code]
        for missionary in granted:
            missionary.consent_status = ConsentStatus.GRANTED
            missionary.consent_date = now
            missionary.consent_verification_token = None
        if granted:
            logger.info("SMS consent granted from %s", from_number)
            return "Thank you! You will now receive meal notifications by text. Reply STOP to opt out."
        return "That code was not recognized. Please check the code and try again."

    return "Reply YES followed by your code to receive meal notifications, or STOP to opt out."


@webhook_router.post("/webhook")
async def sms_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    form = dict(await request.form())
    signature = request.headers.get("X-Twilio-Signature", "")
    if not verify_twilio_signature(str(request.url), form, signature):
        raise AuthorizationError("Invalid Twilio signature")

    reply = await apply_consent_reply(db, form.get("From", ""), form.get("Body", ""))
    await db.commit()

    twiml = MessagingResponse()
    twiml.message(reply)
    return Response(content=str(twiml), media_type="application/xml")
