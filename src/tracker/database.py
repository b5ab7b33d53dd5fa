"""Database setup for exchange accounts and user notifications."""

from datetime import datetime
from sqlalchemy import (
    create_engine,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import sessionmaker, declarative_base, relationship

from .config import settings

ACCOUNT_STATUSES = ("unchecked", "good", "bad", "wrong_password")
SEVERITIES = ("info", "success", "warning", "error")

DATABASE_URL = settings.database_url

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, future=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


class Account(Base):
    """A third-party exchange account record owned by one user."""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    exchange_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    secret = Column(String, default="", nullable=False)
    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    owner_name = Column(String, default="", nullable=False)
    phone_number = Column(String, default="", nullable=False)
    owner_user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    date_added = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(String, default="unchecked", nullable=False)

    owner = relationship("User", back_populates="accounts")

    # Owner's username, filled in at read time by the service layer
    added_by = None


class Notification(Base):
    """A persisted per-user notification."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    severity = Column(String, default="info", nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    user = relationship("User", back_populates="notifications")


def init_db() -> None:
    """Create database tables if they do not exist."""
    # Register the users table on the shared metadata
    from .models import user  # noqa: F401

    Base.metadata.create_all(bind=engine)
