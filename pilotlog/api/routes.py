from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from pilotlog.api.error_handling import wants_html
from pilotlog.api.schemas import (
    AuditEventListResponse,
    AuditEventResponse,
    AuthResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    UserListResponse,
    UserResponse,
    UserStatusUpdate,
)
from pilotlog.logging import get_logger
from pilotlog.service.access import AuthenticatedUser
from pilotlog.service.auth import RequestContext
from pilotlog.service.runtime import get_runtime
from pilotlog.storage.models import UserStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, else ``"unknown"``."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return "unknown"


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_addr=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def _session_cookie_value(request: Request) -> Optional[str]:
    runtime = get_runtime()
    return request.cookies.get(runtime.settings.session_cookie_name) or None


async def get_current_user(request: Request, response: Response) -> AuthenticatedUser:
    """Resolve the session cookie into an active user.

    A refreshed or dead session has its cookie rewritten on the outgoing
    response.
    """
    runtime = get_runtime()
    validation = await runtime.guard.resolve(_session_cookie_value(request))
    principal = await runtime.guard.authorize(validation)
    cookie = runtime.sessions.cookie_for(validation)
    if cookie is not None:
        cookie.apply(response)
    return principal


async def get_admin_user(
    principal: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    get_runtime().guard.ensure_admin(principal)
    return principal


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a pending account.

    The account cannot sign in until an administrator approves it. Rate
    limited per client IP and per email address.
    """
    runtime = get_runtime()
    registration = await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        phone=body.phone,
        ctx=request_context(request),
    )
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(registration.user),
            "message": "Registration received. Your account is pending approval.",
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and set the session cookie.

    Raises:
        401: Invalid credentials
        403: Account pending approval or disabled
        429: Too many attempts for this client and email
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, ctx=request_context(request)
    )
    runtime.sessions.session_cookie(result.session).apply(response)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            session_expires_at=result.session.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    session_id = _session_cookie_value(request)
    validation = await runtime.guard.resolve(session_id)
    await runtime.auth.logout(
        session_id,
        user_id=validation.user.id if validation.user else None,
        ctx=request_context(request),
    )
    runtime.sessions.blank_session_cookie().apply(response)
    return Envelope(status="ok", data=MessageResponse(message="Signed out."))


@router.get("/auth/approve", response_model=None, tags=["auth"])
async def approve_account(
    request: Request, token: str = Query(..., min_length=20, max_length=256)
):
    runtime = get_runtime()
    user = await runtime.auth.approve_account(token)
    if wants_html(request):
        return RedirectResponse("/login?approved=1", status_code=303)
    return Envelope(status="ok", data={"user": UserResponse.from_user(user)})


@router.post("/auth/request-password-reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.auth.request_password_reset(
        body.email, ctx=request_context(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(
        status="ok", data=MessageResponse(message="Password reset. Please log in.")
    )


@router.get("/auth/verify-email", response_model=None, tags=["auth"])
async def verify_email(
    request: Request, token: str = Query(..., min_length=20, max_length=256)
):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(token)
    if wants_html(request):
        target = "/account-pending" if user.status == UserStatus.PENDING else "/login?verified=1"
        return RedirectResponse(target, status_code=303)
    return Envelope(status="ok", data={"user": UserResponse.from_user(user)})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.auth.resend_verification(
        body.email, ctx=request_context(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


# current user
@router.get("/me", response_model=Envelope, tags=["account"])
async def get_me(principal: AuthenticatedUser = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(principal.user))


@router.get("/me/sessions", response_model=Envelope, tags=["account"])
async def list_my_sessions(principal: AuthenticatedUser = Depends(get_current_user)):
    runtime = get_runtime()
    sessions = runtime.store.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse.from_session(s, current_id=principal.session.id)
                for s in sessions
            ]
        ),
    )


@router.post("/profile/change-password", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: AuthenticatedUser = Depends(get_current_user),
):
    """Change the password and sign out every session, this one included."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user,
        body.current_password,
        body.new_password,
        ctx=request_context(request),
    )
    runtime.sessions.blank_session_cookie().apply(response)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password updated. Please sign in again."),
    )


# admin
@router.get("/admin/users/pending", response_model=Envelope, tags=["admin"])
async def list_pending_users(principal: AuthenticatedUser = Depends(get_admin_user)):
    runtime = get_runtime()
    users = await runtime.auth.list_pending_users()
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def set_user_status(
    user_id: UUID,
    body: UserStatusUpdate,
    principal: AuthenticatedUser = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_status(
        str(user_id), body.status, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def list_audit_events(
    action: Optional[str] = Query(None, min_length=1, max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: AuthenticatedUser = Depends(get_admin_user),
):
    """Audit trail across all users, newest first, optionally for one action."""
    runtime = get_runtime()
    # one extra row tells us whether another page exists
    events = runtime.store.list_audit_events(
        action=action, limit=limit + 1, offset=(page - 1) * limit
    )
    return Envelope(
        status="ok",
        data=AuditEventListResponse(
            items=[AuditEventResponse.from_event(e) for e in events[:limit]],
            page=page,
            limit=limit,
            has_more=len(events) > limit,
        ),
    )
