"""Notification persistence and dispatch.

:class:`NotificationDispatcher` is the single place where a business event
becomes a stored :class:`~tracker.database.Notification` plus a best-effort
push to the target user's live channels. The stored record always comes
first; a push is never attempted for an event that failed to persist.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from fastapi import BackgroundTasks
from prometheus_client import Counter
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .connections import ConnectionRegistry
from .database import SEVERITIES, Account, Notification, SessionLocal
from .services import _handle_service_error
from .errors import NotFound, ValidationFailed


logger = logging.getLogger(__name__)

NOTIFICATION_COUNTER = Counter(
    "notifications_created_total", "Total notifications persisted", ["severity"]
)

NOTIFICATION_FAILURES = Counter(
    "notification_failures_total", "Notifications lost because storage failed"
)

STATUS_LABELS = {
    "unchecked": "Unchecked",
    "good": "Good",
    "bad": "Bad",
    "wrong_password": "Wrong Password",
}
STATUS_SEVERITY = {
    "unchecked": "info",
    "good": "success",
    "bad": "error",
    "wrong_password": "warning",
}
STATUS_CHANGE_TITLE = "Account Status Updated"
REPORT_TITLE = "Report Generated"


def create_notification(
    user_id: int, title: str, message: str, severity: str = "info"
) -> Notification:
    """Persist an unread notification for ``user_id``.

    Raises ``StorageUnavailable`` if it cannot be stored.
    """

    session: Session = SessionLocal()
    try:
        if severity not in SEVERITIES:
            raise ValidationFailed(f"Invalid severity: {severity}")
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            severity=severity,
            is_read=False,
            created_at=datetime.utcnow(),
        )
        session.add(notification)
        session.commit()
        session.refresh(notification)
        NOTIFICATION_COUNTER.labels(severity=severity).inc()
        logger.info(
            "created notification id=%s user=%s severity=%s",
            notification.id,
            user_id,
            severity,
        )
        return notification
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_notifications(user_id: int, unread_only: bool = False) -> List[Notification]:
    """Return a user's notifications, newest first."""

    session: Session = SessionLocal()
    try:
        query = session.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(
            Notification.created_at.desc(), Notification.id.desc()
        ).all()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_unread_notifications(user_id: int) -> List[Notification]:
    return list_notifications(user_id, unread_only=True)


def get_notification(notification_id: int) -> Notification:
    session: Session = SessionLocal()
    try:
        notification = session.get(Notification, notification_id)
        if notification is None:
            raise NotFound("Notification not found")
        return notification
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def mark_notification_read(notification_id: int) -> bool:
    """Flag a notification as read. Marking it again is a no-op."""

    session: Session = SessionLocal()
    try:
        notification = session.get(Notification, notification_id)
        if notification is None:
            return False
        notification.is_read = True
        session.commit()
        return True
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_notification(notification_id: int) -> bool:
    session: Session = SessionLocal()
    try:
        notification = session.get(Notification, notification_id)
        if notification is None:
            return False
        session.delete(notification)
        session.commit()
        logger.info("deleted notification id=%s", notification_id)
        return True
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def purge_read_notifications(older_than: datetime) -> int:
    """Delete read notifications created before ``older_than``."""

    session: Session = SessionLocal()
    try:
        deleted = (
            session.query(Notification)
            .filter(Notification.is_read.is_(True), Notification.created_at < older_than)
            .delete(synchronize_session=False)
        )
        session.commit()
        return deleted
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def serialize_notification(notification: Notification) -> Dict[str, object]:
    """JSON-safe representation used for pushes and the REST API alike."""
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "title": notification.title,
        "message": notification.message,
        "severity": notification.severity,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
    }


def status_change_notification(
    account: Account, old_status: str, new_status: str
) -> Tuple[str, str, str]:
    """Return ``(title, message, severity)`` for an account status change."""
    old_label = STATUS_LABELS.get(old_status, old_status)
    new_label = STATUS_LABELS.get(new_status, new_status)
    message = (
        f"Your {account.exchange_name} account ({account.email}) status "
        f"changed from {old_label} to {new_label}."
    )
    return STATUS_CHANGE_TITLE, message, STATUS_SEVERITY.get(new_status, "info")


def should_notify_status_change(
    updater_id: int, owner_id: int, old_status: str, new_status: str
) -> bool:
    """Only status changes made by someone other than the owner notify."""
    return old_status != new_status and updater_id != owner_id


class NotificationDispatcher:
    """Persist notifications and push them to live channels."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def notify(
        self,
        user_id: int,
        title: str,
        message: str,
        severity: str = "info",
        background: Optional[BackgroundTasks] = None,
    ) -> Notification:
        """Store a notification, then push it to every channel of ``user_id``.

        With ``background`` the push runs after the HTTP response is sent,
        otherwise it is awaited here. Push failures never propagate.
        """
        notification = await run_in_threadpool(
            create_notification, user_id, title, message, severity
        )
        payload = {"type": "notification", "payload": serialize_notification(notification)}
        if background is not None:
            background.add_task(self.registry.send, user_id, payload)
        else:
            await self.registry.send(user_id, payload)
        return notification

    async def notify_status_change(
        self,
        updater_id: int,
        account: Account,
        old_status: str,
        background: Optional[BackgroundTasks] = None,
    ) -> Optional[Notification]:
        if not should_notify_status_change(
            updater_id, account.owner_user_id, old_status, account.status
        ):
            return None
        title, message, severity = status_change_notification(
            account, old_status, account.status
        )
        return await self.notify(
            account.owner_user_id, title, message, severity, background=background
        )
