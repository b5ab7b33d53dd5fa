"""FastAPI application exposing exchange accounts, users and notifications."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

import json
import logging
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

from pydantic import BaseModel, Field

from .auth import (
    create_access_token,
    create_refresh_token,
    get_caller,
    get_current_user,
    hash_password,
    user_from_token,
    verify_password,
)
from .config import settings
from .connections import ConnectionRegistry
from .database import init_db
from .errors import NotFound, StorageUnavailable, TrackerError, Unauthorized
from .guard import Caller, Operation, account_scope, authorize, capabilities
from .models.user import User
from .notifications import (
    NOTIFICATION_FAILURES,
    REPORT_TITLE,
    NotificationDispatcher,
    delete_notification,
    get_notification,
    list_notifications,
    list_unread_notifications,
    mark_notification_read,
    serialize_notification,
)
from .services import (
    create_account,
    create_user,
    delete_account,
    delete_user,
    get_account,
    get_user,
    get_user_by_username,
    list_accounts_by_owner,
    list_all_accounts,
    list_users,
    summarize_accounts,
    update_account,
)


limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title=settings.api_title)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.state.registry = ConnectionRegistry()
app.state.dispatcher = NotificationDispatcher(app.state.registry)
init_db()

logger = logging.getLogger(__name__)

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


def _endpoint_label(request: Request) -> str:
    """Route template for metric labels, so ids do not create new series."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=_endpoint_label(request),
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=_endpoint_label(request),
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


async def _tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    headers = None
    if isinstance(exc, StorageUnavailable):
        headers = {"Retry-After": str(exc.retry_after)}
    elif isinstance(exc, Unauthorized):
        headers = {"WWW-Authenticate": "Bearer"}
    logger.info(
        "%s %s failed with %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.detail}, headers=headers
    )


app.add_exception_handler(TrackerError, _tracker_error_handler)


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


AccountStatus = Literal["unchecked", "good", "bad", "wrong_password"]
Severity = Literal["info", "success", "warning", "error"]


class AccountBase(BaseModel):
    """Editable fields of an exchange account."""

    exchange_name: str = Field(..., min_length=1, description="Exchange name")
    email: str = Field(..., min_length=1, description="Login email on the exchange")
    secret: str = Field("", description="Exchange account credential")
    two_factor_enabled: bool = False
    owner_name: str = ""
    phone_number: str = ""


class AccountCreate(AccountBase):
    """Request body for creating an account; the caller becomes the owner."""

    status: AccountStatus = "unchecked"
    date_added: Optional[datetime] = None


class AccountUpdate(BaseModel):
    """Partial update; only the fields sent are changed."""

    exchange_name: Optional[str] = Field(None, min_length=1)
    email: Optional[str] = Field(None, min_length=1)
    secret: Optional[str] = None
    two_factor_enabled: Optional[bool] = None
    owner_name: Optional[str] = None
    phone_number: Optional[str] = None
    status: Optional[AccountStatus] = None


class AccountResponse(AccountBase):
    """Serialized account, including the owner's current username."""

    id: int
    owner_user_id: int
    date_added: datetime
    status: str
    added_by: Optional[str] = None

    class Config:
        from_attributes = True


class AccountReport(BaseModel):
    """Filtered account rows with per-status totals."""

    generated_at: datetime
    total: int
    counts: Dict[str, int]
    items: List[AccountResponse]


class UserCreate(BaseModel):
    """Request body for registering a new user."""

    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)


class UserLogin(BaseModel):
    """Request body for user login."""

    username: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    """JWT access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: int
    username: str
    role: str

    class Config:
        from_attributes = True


class MeResponse(UserResponse):
    """The caller's profile and the capabilities the client may rely on."""

    capabilities: Dict[str, bool]


class NotificationCreate(BaseModel):
    """Request body for an administrator-issued notification."""

    user_id: int
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    severity: Severity = "info"


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    severity: str
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


def _tokens(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user),
        refresh_token=create_refresh_token(user),
    )


@app.post("/api/register", response_model=TokenResponse)
@limiter.limit(settings.auth_rate_limit)
def register(request: Request, user: UserCreate):
    # Self-registration always yields a regular user
    db_user = create_user(user.username, hash_password(user.password), role="user")
    return _tokens(db_user)


@app.post("/api/login", response_model=TokenResponse)
@limiter.limit(settings.auth_rate_limit)
def login(request: Request, user: UserLogin):
    db_user = get_user_by_username(user.username)
    if not db_user or not verify_password(user.password, db_user.password_hash):
        raise Unauthorized("Invalid credentials")
    return _tokens(db_user)


@app.post("/api/token/refresh", response_model=TokenResponse)
def refresh(payload: RefreshRequest):
    db_user = user_from_token(payload.refresh_token, token_type="refresh")
    if db_user is None:
        raise Unauthorized("Invalid refresh token")
    return _tokens(db_user)


@app.get("/api/me", response_model=MeResponse)
def read_me(current_user: User = Depends(get_current_user)):
    """Return the caller's profile and server-side capabilities."""

    caller = Caller(id=current_user.id, role=current_user.role)
    return MeResponse(
        id=current_user.id,
        username=current_user.username,
        role=current_user.role,
        capabilities=capabilities(caller),
    )


def account_filters(
    exchange: Optional[str] = None,
    status: Optional[AccountStatus] = None,
    added_by: Optional[str] = None,
    two_factor_enabled: Optional[bool] = None,
    search: Optional[str] = None,
) -> Dict[str, object]:
    return {
        "exchange": exchange,
        "status": status,
        "added_by": added_by,
        "two_factor_enabled": two_factor_enabled,
        "search": search,
    }


def _scoped_accounts(caller: Caller, filters: Dict[str, object]):
    owner_id = account_scope(caller)
    if owner_id is None:
        return list_all_accounts(**filters)
    return list_accounts_by_owner(owner_id, **filters)


@app.get("/api/accounts", response_model=List[AccountResponse])
def list_accounts(
    filters: Dict[str, object] = Depends(account_filters),
    caller: Caller = Depends(get_caller),
):
    """Return all accounts for admins, otherwise only the caller's own."""

    return _scoped_accounts(caller, filters)


@app.post(
    "/api/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
)
def post_account(payload: AccountCreate, caller: Caller = Depends(get_caller)):
    """Record a new exchange account owned by the caller."""

    authorize(caller, Operation.CREATE_ACCOUNT)
    return create_account(caller.id, payload.model_dump(exclude_none=True))


@app.get("/api/accounts/{account_id}", response_model=AccountResponse)
def read_account(account_id: int, caller: Caller = Depends(get_caller)):
    account = get_account(account_id)
    authorize(caller, Operation.READ_ACCOUNT, account.owner_user_id)
    return account


@app.put("/api/accounts/{account_id}", response_model=AccountResponse)
@app.patch("/api/accounts/{account_id}", response_model=AccountResponse)
async def put_account(
    account_id: int,
    payload: AccountUpdate,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_caller),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Update an account and notify its owner of status changes by others."""

    existing = await run_in_threadpool(get_account, account_id)
    authorize(caller, Operation.UPDATE_ACCOUNT, existing.owner_user_id)
    updated = await run_in_threadpool(
        update_account, account_id, payload.model_dump(exclude_unset=True)
    )
    try:
        await dispatcher.notify_status_change(
            caller.id, updated, existing.status, background=background_tasks
        )
    except StorageUnavailable:
        # The account update is already committed.
        NOTIFICATION_FAILURES.inc()
        logger.exception(
            "status change notification for account=%s not stored", account_id
        )
    return updated


@app.delete("/api/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_account(account_id: int, caller: Caller = Depends(get_caller)):
    account = get_account(account_id)
    authorize(caller, Operation.DELETE_ACCOUNT, account.owner_user_id)
    if not delete_account(account_id):
        raise NotFound("Account not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/reports/accounts", response_model=AccountReport)
async def account_report(
    background_tasks: BackgroundTasks,
    filters: Dict[str, object] = Depends(account_filters),
    caller: Caller = Depends(get_caller),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Return the filtered accounts visible to the caller with status totals."""

    accounts = await run_in_threadpool(_scoped_accounts, caller, filters)
    report = AccountReport(
        generated_at=datetime.utcnow(),
        total=len(accounts),
        counts=summarize_accounts(accounts),
        items=[AccountResponse.model_validate(a) for a in accounts],
    )
    await dispatcher.notify(
        caller.id,
        REPORT_TITLE,
        f"Account report with {report.total} accounts is ready.",
        "info",
        background=background_tasks,
    )
    return report


@app.get("/api/users", response_model=List[UserResponse])
def get_users(caller: Caller = Depends(get_caller)):
    """Return every registered user. Admin only."""

    authorize(caller, Operation.LIST_USERS)
    return list_users()


@app.delete("/api/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_user(user_id: int, caller: Caller = Depends(get_caller)):
    """Delete a user and every account they own. Admin only."""

    authorize(caller, Operation.DELETE_USER)
    if not delete_user(user_id):
        raise NotFound("User not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _owned_notification(caller: Caller, notification_id: int):
    notification = get_notification(notification_id)
    # Other users' notifications are reported as missing
    if notification.user_id != caller.id:
        raise NotFound("Notification not found")
    return notification


@app.get("/api/notifications", response_model=List[NotificationResponse])
def get_notifications(unread_only: bool = False, caller: Caller = Depends(get_caller)):
    """Return the caller's notifications, newest first."""

    return list_notifications(caller.id, unread_only=unread_only)


@app.post(
    "/api/notifications",
    response_model=NotificationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_notification(
    payload: NotificationCreate,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_caller),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send a notification to a user. Admin only."""

    authorize(caller, Operation.SEND_NOTIFICATION)
    await run_in_threadpool(get_user, payload.user_id)
    return await dispatcher.notify(
        payload.user_id,
        payload.title,
        payload.message,
        payload.severity,
        background=background_tasks,
    )


@app.put("/api/notifications/{notification_id}/read", response_model=NotificationResponse)
def read_notification(notification_id: int, caller: Caller = Depends(get_caller)):
    _owned_notification(caller, notification_id)
    if not mark_notification_read(notification_id):
        raise NotFound("Notification not found")
    return get_notification(notification_id)


@app.delete(
    "/api/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT
)
def remove_notification(notification_id: int, caller: Caller = Depends(get_caller)):
    _owned_notification(caller, notification_id)
    if not delete_notification(notification_id):
        raise NotFound("Notification not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/health")
def health_check():
    return {"status": "ok", "live_channels": len(app.state.registry)}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.websocket("/ws")
async def notification_channel(websocket: WebSocket, token: Optional[str] = None):
    """Push channel for live notifications.

    The client authenticates with ``?token=<access token>`` and then sends
    ``{"type": "identify", "userId": <id>}``. The id must match the token.
    """
    await websocket.accept()
    user = await run_in_threadpool(user_from_token, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: ConnectionRegistry = websocket.app.state.registry

    async def load_backlog():
        unread = await run_in_threadpool(list_unread_notifications, user.id)
        return [serialize_notification(n) for n in unread]

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning("ignoring malformed message from user=%s", user.id)
                continue
            if not isinstance(message, dict) or message.get("type") != "identify":
                continue
            if registry.owner_of(websocket) is not None:
                continue
            claimed = message.get("userId", message.get("user_id"))
            if str(claimed) != str(user.id):
                logger.warning(
                    "identify for user=%s rejected on token of user=%s", claimed, user.id
                )
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return
            await registry.authenticate(user.id, websocket, load_backlog)
    except WebSocketDisconnect:
        logger.info("push channel closed for user=%s", user.id)
    finally:
        registry.unregister(websocket)
