"""Celery application with a periodic task to expire read notifications."""

from celery import Celery

from .config import settings


celery_app = Celery(
    "tracker",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["tracker.tasks"],
)

celery_app.conf.beat_schedule = {
    "purge-read-notifications": {
        "task": "tracker.tasks.purge_read_notifications",
        "schedule": settings.purge_frequency,
    }
}
celery_app.conf.timezone = "UTC"
