import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from tracker import notifications, services
from tracker.connections import ConnectionRegistry
from tracker.database import Notification
from tracker.errors import NotFound, StorageUnavailable, ValidationFailed
from tracker.notifications import NotificationDispatcher


def test_create_is_unread(make_user):
    alice = make_user("alice")
    notification = notifications.create_notification(alice.id, "Hi", "Welcome", "success")

    assert notification.id is not None
    assert notification.is_read is False
    assert notification.created_at is not None
    assert notification.severity == "success"


def test_create_rejects_unknown_severity(make_user):
    alice = make_user("alice")
    with pytest.raises(ValidationFailed):
        notifications.create_notification(alice.id, "Hi", "Welcome", "critical")


def test_list_is_newest_first_and_per_user(make_user, session_local):
    alice = make_user("alice")
    bob = make_user("bob")
    base = datetime(2025, 1, 1)
    session = session_local()
    session.add_all(
        [
            Notification(user_id=alice.id, title="old", message="m", created_at=base),
            Notification(
                user_id=alice.id, title="new", message="m", created_at=base + timedelta(hours=1)
            ),
            Notification(user_id=bob.id, title="bob", message="m", created_at=base),
        ]
    )
    session.commit()
    session.close()

    assert [n.title for n in notifications.list_notifications(alice.id)] == ["new", "old"]
    assert [n.title for n in notifications.list_notifications(bob.id)] == ["bob"]


def test_mark_read_is_idempotent(make_user):
    alice = make_user("alice")
    notification = notifications.create_notification(alice.id, "Hi", "Welcome")

    assert notifications.mark_notification_read(notification.id) is True
    assert notifications.mark_notification_read(notification.id) is True
    assert notifications.get_notification(notification.id).is_read is True
    assert notifications.list_unread_notifications(alice.id) == []
    assert notifications.mark_notification_read(9999) is False


def test_delete_notification(make_user):
    alice = make_user("alice")
    notification = notifications.create_notification(alice.id, "Hi", "Welcome")

    assert notifications.delete_notification(notification.id) is True
    assert notifications.delete_notification(notification.id) is False
    with pytest.raises(NotFound):
        notifications.get_notification(notification.id)


def test_purge_only_removes_old_read_notifications(make_user, session_local):
    alice = make_user("alice")
    old = datetime.utcnow() - timedelta(days=60)
    session = session_local()
    session.add_all(
        [
            Notification(user_id=alice.id, title="old read", message="m", is_read=True, created_at=old),
            Notification(user_id=alice.id, title="old unread", message="m", created_at=old),
            Notification(user_id=alice.id, title="fresh read", message="m", is_read=True),
        ]
    )
    session.commit()
    session.close()

    deleted = notifications.purge_read_notifications(datetime.utcnow() - timedelta(days=30))

    assert deleted == 1
    titles = {n.title for n in notifications.list_notifications(alice.id)}
    assert titles == {"old unread", "fresh read"}


def test_status_change_message_and_severity(make_user):
    alice = make_user("alice")
    account = services.create_account(alice.id, {"exchange_name": "Binance", "email": "a@x.com"})

    title, message, severity = notifications.status_change_notification(
        account, "unchecked", "wrong_password"
    )

    assert title == "Account Status Updated"
    assert message == (
        "Your Binance account (a@x.com) status changed from Unchecked to Wrong Password."
    )
    assert severity == "warning"


@pytest.mark.parametrize(
    "new_status, severity",
    [("good", "success"), ("bad", "error"), ("wrong_password", "warning"), ("unchecked", "info")],
)
def test_severity_follows_new_status(new_status, severity):
    assert notifications.STATUS_SEVERITY[new_status] == severity


def test_should_notify_status_change():
    assert notifications.should_notify_status_change(2, 1, "unchecked", "bad")
    assert not notifications.should_notify_status_change(1, 1, "unchecked", "bad")
    assert not notifications.should_notify_status_change(2, 1, "bad", "bad")


def test_dispatch_persists_before_pushing(make_user, fake_channel):
    alice = make_user("alice")
    registry = ConnectionRegistry()
    seen_at_push = []
    channel = fake_channel(
        on_send=lambda data: seen_at_push.append(
            [n.id for n in notifications.list_notifications(alice.id)]
        )
    )
    registry.register(alice.id, channel)

    notification = asyncio.run(
        NotificationDispatcher(registry).notify(alice.id, "Hi", "Welcome", "info")
    )

    assert seen_at_push == [[notification.id]]
    assert channel.sent == [
        {"type": "notification", "payload": notifications.serialize_notification(notification)}
    ]


def test_dispatch_without_live_channel_still_persists(make_user):
    alice = make_user("alice")
    dispatcher = NotificationDispatcher(ConnectionRegistry())

    asyncio.run(dispatcher.notify(alice.id, "Hi", "Welcome"))

    assert [n.title for n in notifications.list_notifications(alice.id)] == ["Hi"]


def test_dispatch_survives_failing_channel(make_user, fake_channel):
    alice = make_user("alice")
    registry = ConnectionRegistry()
    broken, healthy = fake_channel(fail=True), fake_channel()
    registry.register(alice.id, broken)
    registry.register(alice.id, healthy)

    asyncio.run(NotificationDispatcher(registry).notify(alice.id, "Hi", "Welcome"))

    assert len(healthy.sent) == 1
    assert registry.channels_for(alice.id) == [healthy]
    assert len(notifications.list_notifications(alice.id)) == 1


def test_dispatch_aborts_when_storage_is_down(make_user, session_local, monkeypatch, fake_channel):
    alice = make_user("alice")
    registry = ConnectionRegistry()
    channel = fake_channel()
    registry.register(alice.id, channel)

    def broken_session():
        session = session_local()

        def fail():
            raise OperationalError("INSERT", {}, Exception("database is down"))

        session.commit = fail
        return session

    monkeypatch.setattr(notifications, "SessionLocal", broken_session)
    with pytest.raises(StorageUnavailable):
        asyncio.run(NotificationDispatcher(registry).notify(alice.id, "Hi", "Welcome"))
    assert channel.sent == []


def test_status_change_dispatch_skips_self_updates(make_user, fake_channel):
    alice = make_user("alice")
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(registry)
    account = services.create_account(alice.id, {"exchange_name": "Binance", "email": "a@x.com"})
    updated = services.update_account(account.id, {"status": "good"})

    assert asyncio.run(dispatcher.notify_status_change(alice.id, updated, "unchecked")) is None
    assert notifications.list_notifications(alice.id) == []

    sent = asyncio.run(dispatcher.notify_status_change(999, updated, "unchecked"))
    assert sent.user_id == alice.id
    assert sent.severity == "success"
