"""Error taxonomy shared by the stores, the guard and the API layer."""

from typing import Optional


class TrackerError(Exception):
    """Base exception; ``status_code`` is the HTTP status the API reports."""

    status_code = 500
    detail = "Internal error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.detail
        super().__init__(self.detail)


class Unauthorized(TrackerError):
    """No valid session accompanies the request."""

    status_code = 401
    detail = "Unauthorized"


class Forbidden(TrackerError):
    """Valid session, but insufficient role or ownership."""

    status_code = 403
    detail = "Forbidden"


class NotFound(TrackerError):
    status_code = 404
    detail = "Not found"


class ValidationFailed(TrackerError):
    status_code = 422
    detail = "Invalid input"


class StorageUnavailable(TrackerError):
    """Durable store unreachable; callers may retry."""

    status_code = 503
    detail = "Storage unavailable"
    retry_after = 5


class ChannelSendFailed(TrackerError):
    """Push to a live channel failed. Handled inside the connection registry."""

    detail = "Channel send failed"

    def __init__(self, user_id: Optional[int], reason: Optional[str] = None):
        self.user_id = user_id
        super().__init__(f"push to user {user_id} failed: {reason}" if reason else None)
