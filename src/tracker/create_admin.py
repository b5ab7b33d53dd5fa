"""Create or promote an administrator user.

Usage: ``python -m tracker.create_admin --username root --password <secret>``
"""

import argparse
import os
from typing import List, Optional

from .auth import hash_password
from .database import init_db
from .services import create_user, get_user_by_username, update_user_credentials


def ensure_admin(username: str, password: str) -> str:
    """Create ``username`` as an admin, or reset an existing user to admin.

    Returns ``"created"`` or ``"updated"``.
    """
    password_hash = hash_password(password)
    existing = get_user_by_username(username)
    if existing is None:
        create_user(username, password_hash, role="admin")
        return "created"
    update_user_credentials(existing.id, password_hash, role="admin")
    return "updated"


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--username", default=os.getenv("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"))
    args = parser.parse_args(argv)
    if not args.password:
        parser.error("--password or ADMIN_PASSWORD is required")

    init_db()
    action = ensure_admin(args.username, args.password)
    print(f"Admin user {action}: {args.username}")


if __name__ == "__main__":
    main()
