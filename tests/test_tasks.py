from datetime import datetime, timedelta

from tracker import notifications, tasks
from tracker.config import settings
from tracker.database import Notification


def test_purge_task_deletes_expired_read_notifications(make_user, session_local):
    alice = make_user("alice")
    old = datetime.utcnow() - timedelta(days=settings.notification_retention_days + 1)
    session = session_local()
    session.add_all(
        [
            Notification(user_id=alice.id, title="expired", message="m", is_read=True, created_at=old),
            Notification(user_id=alice.id, title="unread", message="m", created_at=old),
        ]
    )
    session.commit()
    session.close()

    assert tasks.purge_read_notifications() == 1
    assert [n.title for n in notifications.list_notifications(alice.id)] == ["unread"]


def test_purge_task_disabled(make_user, session_local, monkeypatch):
    alice = make_user("alice")
    old = datetime.utcnow() - timedelta(days=365)
    session = session_local()
    session.add(Notification(user_id=alice.id, title="x", message="m", is_read=True, created_at=old))
    session.commit()
    session.close()

    monkeypatch.setattr(settings, "notification_retention_days", 0)
    assert tasks.purge_read_notifications() == 0
    assert len(notifications.list_notifications(alice.id)) == 1


def test_purge_runs_on_beat_schedule():
    schedule = tasks.celery_app.conf.beat_schedule
    assert schedule["purge-read-notifications"]["task"] == "tracker.tasks.purge_read_notifications"
