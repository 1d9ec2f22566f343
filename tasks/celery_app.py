"""
tasks/celery_app.py
Celery application instance shared by the scheduled-job modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=2

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "meal_scheduler",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.notification_tasks"],
)

# ── Configuration ─────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SCHEDULER_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose a run
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_routes={"tasks.notification_tasks.*": {"queue": "notifications"}},
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────

celery_app.conf.beat_schedule = {
    "send-before-meal-reminders": {
        "task": "tasks.notification_tasks.send_before_meal_reminders",
        "schedule": crontab(minute="*/15"),
    },
    "send-day-of-reminders": {
        "task": "tasks.notification_tasks.send_day_of_reminders",
        "schedule": crontab(minute="*/15"),
    },
    "send-weekly-summaries": {
        "task": "tasks.notification_tasks.send_weekly_summaries",
        "schedule": crontab(minute=0),
    },
    "check-transfers": {
        "task": "tasks.notification_tasks.check_transfers",
        "schedule": crontab(minute=5),
    },
    # 02:00 in SCHEDULER_TIMEZONE
    "cleanup-inactive-missionaries": {
        "task": "tasks.notification_tasks.cleanup_inactive_missionaries",
        "schedule": crontab(hour=2, minute=0),
    },
}
