"""Celery task definitions for scheduled ledger maintenance."""

from celery import Celery
from celery.schedules import crontab

from bursar.config import settings

celery_app = Celery(
    "bursar",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.school_timezone,
    enable_utc=True,
)

# Periodic beat schedule (hours are school-local)
celery_app.conf.beat_schedule = {
    "mark-overdue-daily": {
        "task": "bursar.tasks.ledger_tasks.mark_overdue_ledgers",
        "schedule": crontab(hour=settings.overdue_batch_hour, minute=0),
    },
    "expire-promissory-notes-daily": {
        "task": "bursar.tasks.ledger_tasks.expire_promissory_notes",
        "schedule": crontab(hour=settings.overdue_batch_hour, minute=15),
    },
}

# Import tasks so they get registered
from bursar.tasks.ledger_tasks import *  # noqa
