import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tracker import notifications, services
from tracker.api import app, limiter
from tracker.auth import create_access_token, hash_password
from tracker.connections import ConnectionRegistry
from tracker.database import Base
from tracker.notifications import NotificationDispatcher


@pytest.fixture
def session_local(monkeypatch):
    """Provide an isolated in-memory database shared across threads."""
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(services, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(notifications, "SessionLocal", TestingSessionLocal)
    return TestingSessionLocal


@pytest.fixture
def registry(monkeypatch):
    """A fresh connection registry and dispatcher wired into the app."""
    registry = ConnectionRegistry(send_timeout=1.0)
    monkeypatch.setattr(app.state, "registry", registry)
    monkeypatch.setattr(app.state, "dispatcher", NotificationDispatcher(registry))
    return registry


@pytest.fixture
def client(session_local, registry, monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(session_local):
    def _make(username: str, role: str = "user", password: str = "password1"):
        return services.create_user(username, hash_password(password), role=role)

    return _make


@pytest.fixture
def headers_for():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers


class FakeChannel:
    """Stand-in for a websocket that records what is pushed to it."""

    def __init__(self, fail: bool = False, delay: float = 0.0, on_send=None):
        self.sent = []
        self.fail = fail
        self.delay = delay
        self.on_send = on_send
        self.close_code = None

    @property
    def closed(self):
        return self.close_code is not None

    async def send_json(self, data):
        if self.closed:
            raise RuntimeError("send after close")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_send is not None:
            self.on_send(data)
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    async def close(self, code=1000):
        self.close_code = code


@pytest.fixture
def fake_channel():
    return FakeChannel
