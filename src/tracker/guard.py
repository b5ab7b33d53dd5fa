"""Role and ownership checks for account and user-management operations.

Every function here is a pure decision over a :class:`Caller`; nothing
touches the database. Denials are raised as :class:`~tracker.errors.Unauthorized`
or :class:`~tracker.errors.Forbidden` and mapped to HTTP by the API layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .errors import Forbidden, Unauthorized


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Operation(str, Enum):
    READ_ACCOUNT = "read_account"
    CREATE_ACCOUNT = "create_account"
    UPDATE_ACCOUNT = "update_account"
    DELETE_ACCOUNT = "delete_account"
    LIST_USERS = "list_users"
    DELETE_USER = "delete_user"
    SEND_NOTIFICATION = "send_notification"


ACCOUNT_OPERATIONS = frozenset(
    {
        Operation.READ_ACCOUNT,
        Operation.UPDATE_ACCOUNT,
        Operation.DELETE_ACCOUNT,
    }
)
ADMIN_OPERATIONS = frozenset(
    {
        Operation.LIST_USERS,
        Operation.DELETE_USER,
        Operation.SEND_NOTIFICATION,
    }
)


@dataclass(frozen=True)
class Caller:
    """Authenticated identity of a request, as resolved from the user table."""

    id: int
    role: str = Role.USER.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


def authorize(
    caller: Optional[Caller], operation: Operation, owner_id: Optional[int] = None
) -> None:
    """Raise unless ``caller`` may perform ``operation``.

    ``owner_id`` is the owning user of the target account and is only
    consulted for single-account operations.
    """
    if caller is None:
        raise Unauthorized()
    if caller.is_admin:
        return
    if operation == Operation.CREATE_ACCOUNT:
        return
    if operation in ACCOUNT_OPERATIONS:
        if owner_id is not None and caller.id == owner_id:
            return
        raise Forbidden("You don't have permission to access this account")
    if operation in ADMIN_OPERATIONS:
        raise Forbidden("Admin access required")
    raise Forbidden()


def is_allowed(
    caller: Optional[Caller], operation: Operation, owner_id: Optional[int] = None
) -> bool:
    try:
        authorize(caller, operation, owner_id)
    except (Unauthorized, Forbidden):
        return False
    return True


def account_scope(caller: Caller) -> Optional[int]:
    """Owner id that account listings must be restricted to, ``None`` for all."""
    if caller is None:
        raise Unauthorized()
    return None if caller.is_admin else caller.id


def capabilities(caller: Caller) -> Dict[str, bool]:
    """Capability flags the client caches for the session."""
    return {
        "view_all_accounts": caller.is_admin,
        "manage_users": is_allowed(caller, Operation.LIST_USERS),
        "send_notifications": is_allowed(caller, Operation.SEND_NOTIFICATION),
        "change_any_status": caller.is_admin,
    }
