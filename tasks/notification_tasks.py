"""
tasks/notification_tasks.py
Scheduled missionary reminders, transfer alerts and retention cleanup.

Every job body is a plain function taking a synchronous session so it can
be exercised without a broker; the Celery tasks below only wire up the
session, the notification manager and the Redis de-duplication keys.
Reminders are idempotent: a key per missionary/meal/type is claimed in
Redis before anything is sent.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

import redis
from celery import Task
from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from services.notification import messages as msg
from services.notification.dispatcher import NotificationManager
from services.notification.senders import build_senders
from shared.models.models import (
    Meal,
    MessageLog,
    Missionary,
    NotificationScheduleType,
    User,
    UserCongregation,
    UserRole,
)
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

DAY_OF_WINDOW_MINUTES = 15
SUPER_ADMIN_ROLES = (UserRole.REGION, UserRole.MISSION, UserRole.STAKE)


# ── Plumbing ──────────────────────────────────────────────────

def sync_database_url(url: str) -> str:
    """postgresql+asyncpg:// -> postgresql+psycopg2://, sqlite+aiosqlite:// -> sqlite://"""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


class ReminderDedup:
    """Claims one Redis key per reminder; a second claim within the TTL fails."""

    def __init__(self, client, ttl: int = settings.REMINDER_DEDUP_TTL):
        self.client = client
        self.ttl = ttl

    def claim(self, key: str) -> bool:
        return bool(self.client.set(f"reminder:{key}", "1", nx=True, ex=self.ttl))


class DatabaseTask(Task):
    """Base class providing a synchronous DB session, the notifier and dedup."""
    abstract = True
    _session_factory = None
    _notifier = None
    _dedup = None

    @property
    def session_factory(self) -> sessionmaker:
        if DatabaseTask._session_factory is None:
            engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
            DatabaseTask._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        return DatabaseTask._session_factory

    @property
    def notifier(self) -> NotificationManager:
        if DatabaseTask._notifier is None:
            DatabaseTask._notifier = NotificationManager(build_senders(settings), None, settings)
        return DatabaseTask._notifier

    @property
    def dedup(self) -> ReminderDedup:
        if DatabaseTask._dedup is None:
            DatabaseTask._dedup = ReminderDedup(redis.Redis.from_url(settings.REDIS_URL, decode_responses=True))
        return DatabaseTask._dedup

    def run_job(self, job, *args) -> int:
        """Run `job(session, *args)` in one transaction; the count it returns is logged."""
        session: Session = self.session_factory()
        try:
            count = job(session, *args)
            session.commit()
            logger.info("%s finished: %d", self.name, count)
            return count
        except Exception:
            session.rollback()
            logger.exception("%s failed", self.name)
            raise
        finally:
            session.close()


def local_now() -> datetime:
    return datetime.now(ZoneInfo(settings.SCHEDULER_TIMEZONE))


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def meal_start(meal, tz) -> datetime:
    minutes = _minutes(meal.start_time)
    return datetime(meal.date.year, meal.date.month, meal.date.day, minutes // 60, minutes % 60, tzinfo=tz)


def _months_before(moment: datetime, months: int) -> datetime:
    month_index = moment.year * 12 + moment.month - 1 - months
    year, month = divmod(month_index, 12)
    day = min(moment.day, 28)
    return moment.replace(year=year, month=month + 1, day=day)


def _upcoming_meals(session: Session, schedule: NotificationScheduleType, start: date, end: date) -> List[Meal]:
    return list(
        session.scalars(
            select(Meal)
            .join(Missionary, Missionary.id == Meal.missionary_id)
            .where(
                Meal.cancelled.is_(False),
                Meal.date >= start,
                Meal.date <= end,
                Missionary.active.is_(True),
                Missionary.notification_schedule_type == schedule,
            )
            .order_by(Meal.date, Meal.start_time)
        )
    )


# ── Job bodies ────────────────────────────────────────────────

def run_before_meal_reminders(session: Session, notifier, dedup, now: datetime) -> int:
    """Remind `before_meal` missionaries whose meal starts within their `hours_before`."""
    sent = 0
    for meal in _upcoming_meals(session, NotificationScheduleType.BEFORE_MEAL, now.date(), now.date() + timedelta(days=7)):
        missionary = meal.missionary
        starts = meal_start(meal, now.tzinfo)
        if not now < starts <= now + timedelta(hours=missionary.hours_before):
            continue
        if not dedup.claim(f"before_meal:{missionary.id}:{meal.id}"):
            continue
        notifier.dispatch_sync(session, missionary, msg.before_meal_message(missionary, meal))
        sent += 1
    return sent


def run_day_of_reminders(session: Session, notifier, dedup, now: datetime) -> int:
    """Send `day_of` missionaries today's meals once their `day_of_time` comes round."""
    today = now.date()
    current = now.hour * 60 + now.minute
    by_missionary = {}
    for meal in _upcoming_meals(session, NotificationScheduleType.DAY_OF, today, today):
        by_missionary.setdefault(meal.missionary_id, (meal.missionary, []))[1].append(meal)

    sent = 0
    for missionary, meals in by_missionary.values():
        target = _minutes(missionary.day_of_time)
        if not target <= current < target + DAY_OF_WINDOW_MINUTES:
            continue
        if not dedup.claim(f"day_of:{missionary.id}:{today.isoformat()}"):
            continue
        notifier.dispatch_sync(session, missionary, msg.day_of_message(missionary, meals, today))
        sent += 1
    return sent


def run_weekly_summaries(session: Session, notifier, dedup, now: datetime) -> int:
    """Weekly summary of the next seven days, on the missionary's chosen day and hour."""
    today = now.date()
    weekday = now.strftime("%A").lower()
    missionaries = session.scalars(
        select(Missionary).where(
            Missionary.active.is_(True),
            Missionary.notification_schedule_type == NotificationScheduleType.WEEKLY_SUMMARY,
        )
    )

    sent = 0
    for missionary in missionaries:
        if missionary.weekly_summary_day.lower() != weekday:
            continue
        if _minutes(missionary.weekly_summary_time) // 60 != now.hour:
            continue
        year, week, _ = today.isocalendar()
        if not dedup.claim(f"weekly:{missionary.id}:{year}-W{week:02d}"):
            continue
        meals = list(
            session.scalars(
                select(Meal)
                .where(
                    Meal.missionary_id == missionary.id,
                    Meal.cancelled.is_(False),
                    Meal.date >= today,
                    Meal.date < today + timedelta(days=7),
                )
                .order_by(Meal.date, Meal.start_time)
            )
        )
        notifier.dispatch_sync(session, missionary, msg.weekly_summary_message(missionary, meals))
        sent += 1
    return sent


def transfer_recipients(session: Session, congregation_id: int) -> List[str]:
    """Active ultra admins, super admins linked to the congregation, plus ADMIN_NOTIFICATION_EMAIL."""
    linked = select(UserCongregation.user_id).where(UserCongregation.congregation_id == congregation_id)
    rows = session.scalars(
        select(User.email).where(
            User.is_active.is_(True),
            User.email.is_not(None),
            (User.role == UserRole.ULTRA) | (User.role.in_(SUPER_ADMIN_ROLES) & User.id.in_(linked)),
        )
    )
    recipients = set(rows)
    if settings.ADMIN_NOTIFICATION_EMAIL:
        recipients.add(settings.ADMIN_NOTIFICATION_EMAIL)
    return sorted(recipients)


def run_transfer_check(session: Session, notifier, today: date) -> int:
    """Alert admins about missionaries transferring by tomorrow; each missionary once."""
    due = session.scalars(
        select(Missionary).where(
            Missionary.active.is_(True),
            Missionary.transfer_date.is_not(None),
            Missionary.transfer_date <= today + timedelta(days=1),
            Missionary.transfer_notification_sent.is_(False),
        )
    )

    notified = 0
    for missionary in due:
        recipients = transfer_recipients(session, missionary.congregation_id)
        message = msg.transfer_reminder_message(missionary, settings.APP_URL)
        delivered = notifier.send_to_addresses_sync(session, recipients, message, missionary.congregation_id)
        if recipients and not delivered:
            logger.warning("Transfer reminder for missionary %s was not delivered; will retry", missionary.id)
            continue
        if not recipients:
            logger.warning("No admin recipients for transfer of missionary %s", missionary.id)
        missionary.transfer_notification_sent = True
        notified += 1
    return notified


def run_inactive_cleanup(session: Session, now: datetime, months: Optional[int] = None) -> int:
    """
    Hard-delete missionaries deactivated longer than the retention window.
    Their meals go with them; message logs are kept and detached.
    """
    cutoff = _months_before(now, months if months is not None else settings.INACTIVE_MISSIONARY_RETENTION_MONTHS)
    stale: Iterable[int] = list(
        session.scalars(
            select(Missionary.id).where(Missionary.active.is_(False), Missionary.updated_at < cutoff)
        )
    )
    if not stale:
        return 0

    session.execute(update(MessageLog).where(MessageLog.missionary_id.in_(stale)).values(missionary_id=None))
    session.execute(delete(Meal).where(Meal.missionary_id.in_(stale)))
    session.execute(delete(Missionary).where(Missionary.id.in_(stale)))
    logger.info("Removed %d inactive missionaries older than %s", len(stale), cutoff.date())
    return len(stale)


# ── Celery tasks ──────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def send_before_meal_reminders(self):
    return self.run_job(run_before_meal_reminders, self.notifier, self.dedup, local_now())


@celery_app.task(bind=True, base=DatabaseTask)
def send_day_of_reminders(self):
    return self.run_job(run_day_of_reminders, self.notifier, self.dedup, local_now())


@celery_app.task(bind=True, base=DatabaseTask)
def send_weekly_summaries(self):
    return self.run_job(run_weekly_summaries, self.notifier, self.dedup, local_now())


@celery_app.task(bind=True, base=DatabaseTask)
def check_transfers(self):
    return self.run_job(run_transfer_check, self.notifier, local_now().date())


@celery_app.task(bind=True, base=DatabaseTask)
def cleanup_inactive_missionaries(self):
    return self.run_job(run_inactive_cleanup, datetime.now(timezone.utc))
