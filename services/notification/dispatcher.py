"""
services/notification/dispatcher.py
NotificationManager: channel selection, SMS consent gate and message logging.

Built once in the application lifespan and handed to request handlers
through `get_notification_manager`. Celery tasks build their own and use
the *_sync entry points with a synchronous session.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from starlette.concurrency import run_in_threadpool

from config.settings import Settings, settings as default_settings
from services.notification import messages as msg
from services.notification.messages import MessageType, OutboundMessage
from services.notification.senders import ChannelSender, DeliveryResult, build_senders
from shared.models.models import (
    ConsentStatus,
    Meal,
    MessageLog,
    NotificationMethod,
    User,
    UserCongregation,
)
from shared.utils.security import generate_numeric_code

logger = logging.getLogger(__name__)

CONSENT_NOT_GRANTED = "SMS consent not granted"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive timestamps
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_meal_message(event: MessageType, missionary, meal, reason: Optional[str] = None) -> OutboundMessage:
    if event == MessageType.MEAL_CREATED:
        return msg.meal_created_message(missionary, meal)
    if event == MessageType.MEAL_UPDATED:
        return msg.meal_updated_message(missionary, meal)
    if event == MessageType.MEAL_CANCELLED:
        return msg.meal_cancelled_message(missionary, meal, reason)
    if event == MessageType.BEFORE_MEAL:
        return msg.before_meal_message(missionary, meal)
    raise ValueError(f"Not a single-meal event: {event}")


class NotificationManager:

    def __init__(
        self,
        senders: dict,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Settings = default_settings,
    ):
        self.senders = senders
        self.session_factory = session_factory
        self.settings = settings

    # ── Channel selection ─────────────────────────────────────

    def sender_for(self, method) -> ChannelSender:
        """Static lookup on the preferred method; anything unknown goes to email."""
        value = getattr(method, "value", method)
        if isinstance(value, str) and value.lower() == "sms":
            value = NotificationMethod.TEXT.value
        try:
            key = NotificationMethod(value)
        except ValueError:
            key = NotificationMethod.EMAIL
        return self.senders.get(key) or self.senders[NotificationMethod.EMAIL]

    # ── Core (sync, shared by both entry points) ──────────────

    def _log_entry(
        self,
        method: NotificationMethod,
        message: OutboundMessage,
        result: DeliveryResult,
        missionary_id: Optional[int],
        congregation_id: Optional[int],
    ) -> MessageLog:
        is_sms = method == NotificationMethod.TEXT
        segments = msg.sms_segment_count(message.text) if is_sms else 1
        cost = round(segments * self.settings.SMS_COST_PER_SEGMENT, 4) if is_sms else 0.0
        return MessageLog(
            missionary_id=missionary_id,
            congregation_id=congregation_id,
            message_type=message.message_type.value,
            method=method.value,
            content=message.text,
            character_count=len(message.text),
            successful=result.successful,
            failure_reason=result.failure_reason,
            provider_message_id=result.provider_message_id,
            segment_count=segments,
            estimated_cost=cost,
        )

    def _consent_request(self, missionary, force: bool = False) -> Optional[MessageLog]:
        """
        Text YES-code consent request to a missionary's phone.
        Throttled to one per CONSENT_RESEND_HOURS unless forced.
        """
        sent_at = _as_utc(missionary.consent_verification_sent_at)
        now = datetime.now(timezone.utc)
        window = timedelta(hours=self.settings.CONSENT_RESEND_HOURS)
        if not force and sent_at and now - sent_at < window:
            return None

        code = generate_numeric_code(6)
        missionary.consent_verification_token = code
        missionary.consent_verification_sent_at = now
        missionary.consent_status = ConsentStatus.PENDING

        message = msg.consent_request_message(code)
        sender = self.senders[NotificationMethod.TEXT]
        result = sender.send_to(missionary.phone_number, message)
        logger.info("Consent request to missionary %s: successful=%s", missionary.id, result.successful)
        return self._log_entry(
            NotificationMethod.TEXT, message, result, missionary.id, missionary.congregation_id
        )

    def _dispatch(self, missionary, message: OutboundMessage, method=None) -> List[MessageLog]:
        sender = self.sender_for(method or missionary.preferred_notification)
        entries: List[MessageLog] = []

        if sender.method == NotificationMethod.TEXT and missionary.consent_status != ConsentStatus.GRANTED:
            result = DeliveryResult(False, CONSENT_NOT_GRANTED)
            entries.append(
                self._log_entry(sender.method, message, result, missionary.id, missionary.congregation_id)
            )
            if missionary.consent_status == ConsentStatus.PENDING and missionary.phone_number:
                consent_entry = self._consent_request(missionary)
                if consent_entry is not None:
                    entries.append(consent_entry)
            logger.info("Cannot text missionary %s: consent is %s", missionary.id, missionary.consent_status)
            return entries

        result = sender.deliver(missionary, message)
        if result.successful:
            logger.info(
                "Sent %s to missionary %s via %s",
                message.message_type.value, missionary.id, sender.method.value,
            )
        else:
            logger.warning(
                "Failed %s to missionary %s via %s: %s",
                message.message_type.value, missionary.id, sender.method.value, result.failure_reason,
            )
        entries.append(
            self._log_entry(sender.method, message, result, missionary.id, missionary.congregation_id)
        )
        return entries

    def _dispatch_address(
        self, address: str, message: OutboundMessage, congregation_id: Optional[int]
    ) -> MessageLog:
        sender = self.senders[NotificationMethod.EMAIL]
        result = sender.send_to(address, message)
        return self._log_entry(sender.method, message, result, None, congregation_id)

    # ── Async entry points (request path) ─────────────────────

    async def send(self, db: AsyncSession, missionary, message: OutboundMessage) -> MessageLog:
        """
        Deliver `message` on the missionary's preferred channel.
        Log rows are added to `db`; the caller owns the commit.
        Returns the log row of the delivery attempt.
        """
        entries = await run_in_threadpool(self._dispatch, missionary, message)
        db.add_all(entries)
        await db.flush()
        return entries[0]

    async def send_email(self, db: AsyncSession, missionary, message: OutboundMessage) -> MessageLog:
        """Email the missionary whatever their preferred channel (verification, password reset)."""
        entries = await run_in_threadpool(self._dispatch, missionary, message, NotificationMethod.EMAIL)
        db.add_all(entries)
        await db.flush()
        return entries[0]

    async def send_to_address(
        self,
        db: AsyncSession,
        address: str,
        message: OutboundMessage,
        congregation_id: Optional[int] = None,
    ) -> bool:
        """Email a non-missionary recipient. Logged with no missionary."""
        entry = await run_in_threadpool(self._dispatch_address, address, message, congregation_id)
        db.add(entry)
        await db.flush()
        return entry.successful

    async def request_consent(self, db: AsyncSession, missionary, force: bool = True) -> bool:
        entry = await run_in_threadpool(self._consent_request, missionary, force)
        if entry is None:
            return False
        db.add(entry)
        await db.flush()
        return entry.successful

    async def notify_meal_event(
        self,
        meal_id: int,
        event: MessageType,
        reason: Optional[str] = None,
    ) -> None:
        """
        Background task body: notify the missionary about a meal change and,
        for cancellations, the congregation's linked admins.
        Runs in its own session; failures are logged, never raised.
        """
        try:
            async with self.session_factory() as db:
                meal = await db.scalar(
                    select(Meal).options(selectinload(Meal.missionary)).where(Meal.id == meal_id)
                )
                if meal is None:
                    logger.warning("Meal %s vanished before %s notification", meal_id, event.value)
                    return

                missionary = meal.missionary
                await self.send(db, missionary, build_meal_message(event, missionary, meal, reason))

                if event == MessageType.MEAL_CANCELLED:
                    admin_message = msg.admin_cancellation_message(missionary.name, meal, reason)
                    for address in await self.congregation_admin_emails(db, meal.congregation_id):
                        await self.send_to_address(db, address, admin_message, meal.congregation_id)

                await db.commit()
        except Exception:
            logger.exception("Notification %s for meal %s failed", event.value, meal_id)

    @staticmethod
    async def congregation_admin_emails(db: AsyncSession, congregation_id: int) -> List[str]:
        rows = await db.scalars(
            select(User.email)
            .join(UserCongregation, UserCongregation.user_id == User.id)
            .where(
                UserCongregation.congregation_id == congregation_id,
                User.is_active.is_(True),
                User.email.is_not(None),
            )
        )
        return sorted(set(rows))

    # ── Sync entry points (Celery workers) ────────────────────

    def dispatch_sync(self, session, missionary, message: OutboundMessage) -> MessageLog:
        entries = self._dispatch(missionary, message)
        session.add_all(entries)
        session.flush()
        return entries[0]

    def send_to_addresses_sync(
        self,
        session,
        addresses: Iterable[str],
        message: OutboundMessage,
        congregation_id: Optional[int] = None,
    ) -> int:
        """Returns how many deliveries succeeded."""
        delivered = 0
        for address in addresses:
            entry = self._dispatch_address(address, message, congregation_id)
            session.add(entry)
            delivered += int(entry.successful)
        session.flush()
        return delivered


def build_notification_manager(settings: Settings = default_settings, session_factory=None) -> NotificationManager:
    if session_factory is None:
        from config.database import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    return NotificationManager(build_senders(settings), session_factory, settings)


def get_notification_manager(request: Request) -> NotificationManager:
    """FastAPI dependency: the manager built at startup."""
    return request.app.state.notification_manager
