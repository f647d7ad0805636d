from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Path, Query, Request, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gatehouse.api.schemas import (
    AuditEntryResponse,
    AuditListResponse,
    AuthResponse,
    CsrfResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordValidateRequest,
    PasswordValidationResponse,
    RegisterRequest,
    RevokeSessionsRequest,
    RevokeSessionsResponse,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from gatehouse.logging import get_correlation_id, get_logger
from gatehouse.service.audit import AuditAction
from gatehouse.service.context import Identity, RequestContext
from gatehouse.service.errors import AuthenticationError, NotFoundError, ValidationError
from gatehouse.service.permissions import Permission, filter_by_permission
from gatehouse.service.runtime import Runtime
from gatehouse.service.sanitize import sanitize_pagination
from gatehouse.storage.models import RevocationReason, Session, User
from gatehouse.storage.redis_cache import RedisStore

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

M = TypeVar("M", bound=BaseModel)

HEALTH_CHECK_TIMEOUT_SECONDS = 3


# Dependencies ----------------------------------------------------------------


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_identity(request: Request) -> Optional[Identity]:
    """Identity resolved by the security pipeline, ``None`` when anonymous."""
    return getattr(request.state, "identity", None)


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise AuthenticationError()
    return identity


def require_permission(permission: Permission) -> Callable[..., Identity]:
    def _dependency(
        identity: Identity = Depends(require_identity),
        runtime: Runtime = Depends(get_runtime),
    ) -> Identity:
        return runtime.engine.require_permission(identity, permission)

    return _dependency


async def sanitized_body(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> Dict[str, Any]:
    """Request JSON after the sanitization boundary; an empty body is ``{}``."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("request body is not valid JSON") from exc
    return runtime.engine.sanitize(payload)


def _parse(model: Type[M], body: Dict[str, Any]) -> M:
    try:
        return model.model_validate(body)
    except PydanticValidationError as exc:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        raise ValidationError("invalid request", detail={"errors": errors}) from exc


def _ok(data: Any = None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _client(request: Request, runtime: Runtime) -> tuple[str, str]:
    """``(user_agent, ip)`` as the token fingerprint sees them."""
    ctx = RequestContext.build(
        request.method,
        request.url.path,
        headers=dict(request.headers),
        client_ip=request.client.host if request.client else None,
    )
    return ctx.user_agent, runtime.engine.client_ip(ctx)


def _set_csrf_cookie(response: Response, runtime: Runtime, token: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        max_age=settings.csrf_token_ttl_seconds,
        httponly=False,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, email=user.email, role=user.role, created_at=user.created_at)


def _session_response(session: Session, current_id: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        user_id=session.user_id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        platform=session.platform,
        browser=session.browser,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        is_active=session.is_active,
        is_current=session.id == current_id,
        revoked_reason=session.revoked_reason,
    )


# Auth lifecycle ----------------------------------------------------------------


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf_token(response: Response, runtime: Runtime = Depends(get_runtime)):
    """Issue a signed CSRF token as both cookie and response body."""
    token = runtime.csrf.issue()
    _set_csrf_cookie(response, runtime, token)
    return _ok(
        CsrfResponse(
            csrf_token=token,
            header_name=runtime.settings.csrf_header_name,
            cookie_name=runtime.settings.csrf_cookie_name,
            expires_in=runtime.settings.csrf_token_ttl_seconds,
        )
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    request: Request,
    body: Dict[str, Any] = Depends(sanitized_body),
    runtime: Runtime = Depends(get_runtime),
):
    """Create a customer account.

    Raises:
        400: invalid email or password policy violation
        409: email already registered
    """
    payload = _parse(RegisterRequest, body)
    user_agent, ip = _client(request, runtime)
    user = await runtime.auth.register(
        payload.email, payload.password, ip=ip, user_agent=user_agent
    )
    return _ok(_user_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    request: Request,
    response: Response,
    body: Dict[str, Any] = Depends(sanitized_body),
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Returns a device-bound token pair and rotates the CSRF token.

    Raises:
        401: invalid credentials or locked account
    """
    payload = _parse(LoginRequest, body)
    user_agent, ip = _client(request, runtime)
    result = await runtime.auth.login(payload.email, payload.password, user_agent, ip)
    csrf_token = runtime.csrf.issue()
    _set_csrf_cookie(response, runtime, csrf_token)
    return _ok(
        AuthResponse(
            user_id=result.user.id,
            role=result.user.role,
            session_id=result.session.id,
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_expires_at=result.tokens.access_expires_at,
            refresh_expires_at=result.tokens.refresh_expires_at,
            csrf_token=csrf_token,
            password_change_required=result.password_change_required,
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    body: Dict[str, Any] = Depends(sanitized_body),
    runtime: Runtime = Depends(get_runtime),
):
    """Rotate a refresh token; the presented token is dead afterwards."""
    payload = _parse(TokenRefreshRequest, body)
    user_agent, ip = _client(request, runtime)
    pair = await runtime.auth.refresh(payload.refresh_token, user_agent, ip)
    return _ok(
        TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=pair.session_id,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Dict[str, Any] = Depends(sanitized_body),
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    payload = _parse(LogoutRequest, body)
    user_agent, ip = _client(request, runtime)
    ended = await runtime.auth.logout(
        identity, payload.refresh_token, ip=ip, user_agent=user_agent
    )
    return _ok({"logged_out": ended})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_everywhere(
    request: Request,
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    """End every session of the caller, this one included."""
    user_agent, ip = _client(request, runtime)
    count = await runtime.auth.logout_everywhere(
        identity.user_id,
        RevocationReason.LOGOUT,
        actor=identity,
        ip=ip,
        user_agent=user_agent,
    )
    return _ok(RevokeSessionsResponse(user_id=identity.user_id, revoked_sessions=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    identity: Identity = Depends(require_permission(Permission.USER_READ)),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.store.get_user(identity.user_id)
    if user is None:
        raise NotFoundError("user not found")
    data = _user_response(user).model_dump(mode="json")
    data["session_id"] = identity.session_id
    return _ok(data)


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_my_sessions(
    identity: Identity = Depends(require_permission(Permission.SESSION_READ)),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.sessions.get_active_sessions(identity.user_id)
    visible = filter_by_permission(
        sessions, identity.role, identity.user_id, Permission.SESSION_READ, owner_key="user_id"
    )
    items = [_session_response(s, identity.session_id) for s in visible]
    return _ok(SessionListResponse(items=items, count=len(items)))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=128),
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke one session; only the owner or an admin may do so."""
    session = await runtime.sessions.get_session(session_id)
    if session is None:
        raise NotFoundError("session not found")
    user_agent, ip = _client(request, runtime)
    await runtime.engine.require_mutation(
        identity,
        Permission.SESSION_REVOKE,
        AuditAction.SESSION_REVOKE,
        "session",
        session_id,
        session.user_id,
        ip=ip,
        user_agent=user_agent,
    )
    revoked = await runtime.auth.revoke_user_session(
        identity, session_id, ip=ip, user_agent=user_agent
    )
    return _ok({"session_id": session_id, "revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    request: Request,
    body: Dict[str, Any] = Depends(sanitized_body),
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password; other sessions are ended."""
    user_agent, ip = _client(request, runtime)
    await runtime.engine.require_mutation(
        identity,
        Permission.USER_UPDATE,
        AuditAction.PASSWORD_CHANGE,
        "user",
        identity.user_id,
        ip=ip,
        user_agent=user_agent,
    )
    payload = _parse(PasswordChangeRequest, body)
    credential = await runtime.auth.change_password(
        identity,
        payload.current_password,
        payload.new_password,
        ip=ip,
        user_agent=user_agent,
    )
    return _ok({"changed_at": credential.last_changed_at.isoformat()})


@router.post("/auth/password/validate", response_model=Envelope, tags=["auth"])
async def validate_password(
    body: Dict[str, Any] = Depends(sanitized_body),
    identity: Optional[Identity] = Depends(get_identity),
    runtime: Runtime = Depends(get_runtime),
):
    """Report policy violations for a candidate password without storing it.

    For an authenticated caller the password history is checked as well.
    """
    payload = _parse(PasswordValidateRequest, body)
    history: list[str] = []
    if identity is not None:
        credential = await runtime.store.get_credential(identity.user_id)
        if credential is not None:
            history = runtime.credentials.history_for(credential)
    result = runtime.credentials.validate_password(payload.password, history)
    return _ok(
        PasswordValidationResponse(
            is_valid=result.is_valid,
            is_strong=result.is_strong,
            score=result.score,
            errors=result.errors,
        )
    )


# Administration ----------------------------------------------------------------


@router.post(
    "/admin/users/{user_id}/revoke-sessions", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_sessions(
    request: Request,
    user_id: str = Path(..., max_length=128),
    body: Dict[str, Any] = Depends(sanitized_body),
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    """Kill every session and outstanding token of ``user_id``."""
    user_agent, ip = _client(request, runtime)
    await runtime.engine.require_mutation(
        identity,
        Permission.ADMIN_USERS,
        AuditAction.SESSION_REVOKE,
        "user",
        user_id,
        ip=ip,
        user_agent=user_agent,
    )
    payload = _parse(RevokeSessionsRequest, body)
    if await runtime.store.get_user(user_id) is None:
        raise NotFoundError("user not found")
    count = await runtime.auth.logout_everywhere(
        user_id, payload.reason, actor=identity, ip=ip, user_agent=user_agent
    )
    logger.warning(
        "admin_revoked_user_sessions",
        actor_id=identity.user_id,
        target_user_id=user_id,
        count=count,
    )
    return _ok(RevokeSessionsResponse(user_id=user_id, revoked_sessions=count))


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(
    user_id: str = Path(..., max_length=128),
    include_inactive: bool = Query(False),
    identity: Identity = Depends(require_identity),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.engine.require_permission(identity, Permission.SESSION_READ, user_id)
    sessions = await runtime.store.list_user_sessions(user_id, active_only=not include_inactive)
    items = [_session_response(s, identity.session_id) for s in sessions]
    return _ok(SessionListResponse(items=items, count=len(items)))


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def list_audit(
    actor_id: Optional[str] = Query(None, max_length=128),
    page: int = Query(1),
    limit: int = Query(20),
    identity: Identity = Depends(require_permission(Permission.ADMIN_PANEL)),
    runtime: Runtime = Depends(get_runtime),
):
    page, limit = sanitize_pagination(page, limit)
    entries = await runtime.audit.list_entries(actor_id=actor_id, limit=page * limit)
    window = entries[(page - 1) * limit:]
    items = [AuditEntryResponse.model_validate(e.to_dict()) for e in window]
    return _ok(AuditListResponse(items=items, count=len(items)))


# Health --------------------------------------------------------------------------


async def health(request: Request) -> Envelope:
    """Liveness plus a bounded store ping."""
    runtime: Runtime = request.app.state.runtime
    store_ok = True
    if isinstance(runtime.store, RedisStore):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False
    return _ok(
        {
            "status": "healthy" if store_ok else "unhealthy",
            "checks": {
                "store": {
                    "status": "healthy" if store_ok else "unhealthy",
                    "type": "redis" if isinstance(runtime.store, RedisStore) else "memory",
                }
            },
        }
    )
