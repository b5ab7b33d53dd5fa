"""Celery tasks for notification housekeeping."""

import logging
from datetime import datetime, timedelta

from prometheus_client import Counter

from . import notifications
from .config import settings
from .worker import celery_app


logger = logging.getLogger(__name__)

# Counter to track how many read notifications were expired
PURGED_COUNTER = Counter(
    "notifications_purged_total", "Total read notifications deleted by retention"
)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def purge_read_notifications(self) -> int:
    """Delete read notifications older than the retention window.

    Unread notifications are never purged. Returns the number deleted.
    """
    retention_days = settings.notification_retention_days
    if retention_days <= 0:
        logger.info("notification retention disabled")
        return 0

    expiry = datetime.utcnow() - timedelta(days=retention_days)
    logger.info("purging read notifications older than %s", expiry.isoformat())
    try:
        deleted = notifications.purge_read_notifications(expiry)
    except Exception as exc:  # pragma: no cover - executed on failure
        logger.exception("Failed to purge read notifications")
        raise self.retry(exc=exc)
    PURGED_COUNTER.inc(deleted)
    logger.info("purged %d read notifications", deleted)
    return deleted
