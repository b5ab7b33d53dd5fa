"""Service layer for exchange accounts and users."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from prometheus_client import Counter
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import ACCOUNT_STATUSES, SessionLocal, Account
from .errors import NotFound, StorageUnavailable, TrackerError, ValidationFailed
from .models.user import User


logger = logging.getLogger(__name__)

# Prometheus counters for key service events
ACCOUNT_CREATED_COUNTER = Counter(
    "accounts_created_total", "Total exchange accounts created"
)
ACCOUNT_UPDATED_COUNTER = Counter(
    "accounts_updated_total", "Total exchange account updates"
)
ACCOUNT_DELETED_COUNTER = Counter(
    "accounts_deleted_total", "Total exchange accounts deleted"
)
USER_DELETED_COUNTER = Counter("users_deleted_total", "Total users deleted")

EDITABLE_FIELDS = frozenset(
    {
        "exchange_name",
        "email",
        "secret",
        "two_factor_enabled",
        "owner_name",
        "phone_number",
        "status",
    }
)
CREATE_FIELDS = EDITABLE_FIELDS | {"date_added"}


def _handle_service_error(session: Session, exc: Exception) -> None:
    """Rollback the transaction and re-raise as a tracker error."""
    session.rollback()
    if isinstance(exc, TrackerError):
        raise exc
    logger.exception("service layer error", exc_info=exc)
    if isinstance(exc, SQLAlchemyError):
        raise StorageUnavailable() from exc
    if isinstance(exc, (ValueError, TypeError)):
        raise ValidationFailed(str(exc)) from exc
    raise exc


def _check_fields(fields: Dict[str, object], allowed: Iterable[str]) -> None:
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationFailed(f"Unknown or read-only fields: {', '.join(unknown)}")
    nulls = sorted(key for key, value in fields.items() if value is None)
    if nulls:
        raise ValidationFailed(f"Fields may not be null: {', '.join(nulls)}")
    status = fields.get("status")
    if status is not None and status not in ACCOUNT_STATUSES:
        raise ValidationFailed(f"Invalid status: {status}")


def _account_query(
    session: Session,
    owner_user_id: Optional[int] = None,
    exchange: Optional[str] = None,
    status: Optional[str] = None,
    added_by: Optional[str] = None,
    two_factor_enabled: Optional[bool] = None,
    search: Optional[str] = None,
):
    """Build the account listing query joined with the owner's username.

    ``owner_user_id`` is applied in SQL so other users' rows are never read.
    """
    query = session.query(Account, User.username).join(
        User, Account.owner_user_id == User.id
    )
    if owner_user_id is not None:
        query = query.filter(Account.owner_user_id == owner_user_id)
    if exchange:
        query = query.filter(Account.exchange_name == exchange)
    if status:
        query = query.filter(Account.status == status)
    if added_by:
        query = query.filter(User.username == added_by)
    if two_factor_enabled is not None:
        query = query.filter(Account.two_factor_enabled == two_factor_enabled)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Account.exchange_name.ilike(pattern),
                Account.email.ilike(pattern),
                User.username.ilike(pattern),
            )
        )
    return query.order_by(Account.id)


def _project(rows) -> List[Account]:
    accounts = []
    for account, username in rows:
        account.added_by = username
        accounts.append(account)
    return accounts


def create_account(owner_user_id: int, fields: Dict[str, object]) -> Account:
    """Persist a new account owned by ``owner_user_id``."""

    logger.info("create account owner=%s exchange=%s", owner_user_id, fields.get("exchange_name"))
    session: Session = SessionLocal()
    try:
        _check_fields(fields, CREATE_FIELDS)
        owner = session.get(User, owner_user_id)
        if owner is None:
            raise NotFound("User not found")

        values = dict(fields)
        values.setdefault("date_added", datetime.utcnow())
        values.setdefault("status", "unchecked")
        account = Account(owner_user_id=owner_user_id, **values)
        session.add(account)
        session.commit()
        session.refresh(account)
        account.added_by = owner.username
        ACCOUNT_CREATED_COUNTER.inc()
        logger.info("created account id=%s owner=%s", account.id, owner_user_id)
        return account
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_account(account_id: int) -> Account:
    """Return a single account with its owner's username, or raise NotFound."""

    session: Session = SessionLocal()
    try:
        row = (
            session.query(Account, User.username)
            .join(User, Account.owner_user_id == User.id)
            .filter(Account.id == account_id)
            .first()
        )
        if row is None:
            raise NotFound("Account not found")
        return _project([row])[0]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_all_accounts(**filters) -> List[Account]:
    """Return every account, optionally filtered."""

    session: Session = SessionLocal()
    try:
        return _project(_account_query(session, **filters).all())
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_accounts_by_owner(owner_user_id: int, **filters) -> List[Account]:
    """Return the accounts owned by ``owner_user_id``, optionally filtered."""

    session: Session = SessionLocal()
    try:
        query = _account_query(session, owner_user_id=owner_user_id, **filters)
        return _project(query.all())
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_account(account_id: int, patch: Dict[str, object]) -> Account:
    """Apply a partial update; fields missing from ``patch`` are left as-is.

    No concurrency token is checked, concurrent updates are last-write-wins.
    """

    logger.info("update account id=%s fields=%s", account_id, sorted(patch))
    session: Session = SessionLocal()
    try:
        _check_fields(patch, EDITABLE_FIELDS)
        account = session.get(Account, account_id)
        if account is None:
            raise NotFound("Account not found")
        for key, value in patch.items():
            setattr(account, key, value)
        session.commit()
        session.refresh(account)
        account.added_by = account.owner.username
        ACCOUNT_UPDATED_COUNTER.inc()
        logger.info("updated account id=%s status=%s", account.id, account.status)
        return account
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_account(account_id: int) -> bool:
    """Delete an account. Returns ``False`` when it does not exist."""

    session: Session = SessionLocal()
    try:
        account = session.get(Account, account_id)
        if account is None:
            return False
        session.delete(account)
        session.commit()
        ACCOUNT_DELETED_COUNTER.inc()
        logger.info("deleted account id=%s", account_id)
        return True
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def summarize_accounts(accounts: Iterable[Account]) -> Dict[str, int]:
    """Count accounts per status, including statuses with no accounts."""
    counts = {status: 0 for status in ACCOUNT_STATUSES}
    for account in accounts:
        counts[account.status] = counts.get(account.status, 0) + 1
    return counts


def create_user(username: str, password_hash: str, role: str = "user") -> User:
    """Persist a new user; usernames are unique."""

    logger.info("create user username=%s role=%s", username, role)
    session: Session = SessionLocal()
    try:
        if session.query(User).filter(User.username == username).first():
            raise ValidationFailed("Username already registered")
        user = User(username=username, password_hash=password_hash, role=role)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    except IntegrityError as exc:
        session.rollback()
        raise ValidationFailed("Username already registered") from exc
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_user_credentials(user_id: int, password_hash: str, role: str) -> User:
    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        user.password_hash = password_hash
        user.role = role
        session.commit()
        session.refresh(user)
        return user
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_user(user_id: int) -> User:
    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_user_by_username(username: str) -> Optional[User]:
    session: Session = SessionLocal()
    try:
        return session.query(User).filter(User.username == username).first()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_users() -> List[User]:
    """Return every registered user."""

    session: Session = SessionLocal()
    try:
        return session.query(User).order_by(User.id).all()
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_user(user_id: int) -> bool:
    """Delete a user together with their accounts and notifications."""

    session: Session = SessionLocal()
    try:
        user = session.get(User, user_id)
        if user is None:
            return False
        owned = len(user.accounts)
        session.delete(user)
        session.commit()
        USER_DELETED_COUNTER.inc()
        logger.info("deleted user id=%s with %d accounts", user_id, owned)
        return True
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()
