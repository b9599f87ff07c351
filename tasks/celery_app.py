"""
tasks/celery_app.py
Celery application instance shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker -Q notifications --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "mindweal_scheduling",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.notification_tasks"],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.DEFAULT_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose an email
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_annotations={
        "tasks.notification_tasks.send_booking_confirmation": {"rate_limit": "20/s"},
        "tasks.notification_tasks.send_booking_cancellation": {"rate_limit": "20/s"},
    },

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Remind clients ahead of their session; runs every 15 minutes so a
    # booking made a little less than a day out is still picked up
    "send-booking-reminders": {
        "task": "tasks.notification_tasks.send_booking_reminders",
        "schedule": crontab(minute="*/15"),
    },
}
