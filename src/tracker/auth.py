from datetime import datetime, timedelta
from typing import Optional

import hashlib
import hmac
import os

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from .config import settings
from .errors import Unauthorized
from .guard import Caller
from .models.user import User
from .services import get_user_by_username

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    """Return ``<hex digest>.<hex salt>`` using scrypt."""
    salt = os.urandom(16).hex()
    digest = hashlib.scrypt(password.encode(), salt=salt.encode(), n=16384, r=8, p=1, dklen=64)
    return f"{digest.hex()}.{salt}"


def verify_password(password: str, stored: str) -> bool:
    try:
        digest, salt = stored.split(".", 1)
    except ValueError:
        return False
    candidate = hashlib.scrypt(password.encode(), salt=salt.encode(), n=16384, r=8, p=1, dklen=64)
    return hmac.compare_digest(candidate.hex(), digest)


def _create_token(user: User, expires: timedelta, token_type: str) -> str:
    payload = {"sub": user.username, "exp": datetime.utcnow() + expires, "type": token_type}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: User) -> str:
    return _create_token(user, timedelta(minutes=settings.access_token_expire_minutes), "access")


def create_refresh_token(user: User) -> str:
    return _create_token(user, timedelta(minutes=settings.refresh_token_expire_minutes), "refresh")


def user_from_token(token: Optional[str], token_type: str = "access") -> Optional[User]:
    """Resolve a token of ``token_type`` to its user, or ``None`` if invalid."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.PyJWTError:
        return None
    username: str | None = payload.get("sub")
    if username is None or payload.get("type") != token_type:
        return None
    return get_user_by_username(username)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    if credentials is None:
        raise Unauthorized("Not authenticated")
    user = user_from_token(credentials.credentials)
    if user is None:
        raise Unauthorized("Invalid token")
    return user


def get_caller(current_user: User = Depends(get_current_user)) -> Caller:
    # Role always comes from the stored user row
    return Caller(id=current_user.id, role=current_user.role)
