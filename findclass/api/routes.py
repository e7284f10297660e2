from __future__ import annotations

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from findclass.api.schemas import (
    ApplyRoleRequest,
    ApproveRequest,
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    RoleApplicationResponse,
    RoleHistoryResponse,
    RoleRecordResponse,
    RolesResponse,
    SendCodeRequest,
    SessionResponse,
    TokenResponse,
    UpdateProfileRequest,
    UserResponse,
    UserStatusRequest,
    VerifyCodeRequest,
)
from findclass.logging import get_logger
from findclass.service.gate import AuthContext, extract_bearer
from findclass.service.role_applications import DEFAULT_PENDING_LIMIT, RolesView
from findclass.service.runtime import check_rate_limit, get_runtime
from findclass.service.sessions import TokenPair
from findclass.storage.models import (
    RoleApplication,
    RoleApplicationHistoryEntry,
    Session,
    User,
    UserRole,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
            headers={"Retry-After": str(max(reset_seconds, 1))},
        )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        status=user.status,
        language=user.language,
        phone=user.phone,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        session_id=tokens.session_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_response(user: User, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=_user_response(user),
        session_id=tokens.session_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _session_response(session: Session, current_session_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        user_agent=session.user_agent,
        ip_addr=session.ip_addr,
        current=session.id == current_session_id,
    )


def _application_response(app: RoleApplication) -> RoleApplicationResponse:
    return RoleApplicationResponse(
        id=app.id,
        user_id=app.user_id,
        role=app.role,
        status=app.status,
        reason=app.reason,
        reviewer_id=app.reviewer_id,
        comment=app.comment,
        created_at=app.created_at,
        updated_at=app.updated_at,
    )


def _history_response(entry: RoleApplicationHistoryEntry) -> RoleHistoryResponse:
    return RoleHistoryResponse(
        id=entry.id,
        application_id=entry.application_id,
        from_status=entry.from_status,
        to_status=entry.to_status,
        actor_id=entry.actor_id,
        comment=entry.comment,
        created_at=entry.created_at,
    )


def _roles_response(view: RolesView) -> RolesResponse:
    return RolesResponse(
        current_role=view.current_role,
        roles=[
            RoleRecordResponse(
                role=record.role,
                status=record.status,
                applied_at=record.applied_at,
                processed_at=record.processed_at,
                comment=record.comment,
                application_id=record.application_id,
            )
            for record in view.roles
        ],
        pending_application=(
            _application_response(view.pending_application)
            if view.pending_application
            else None
        ),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.gate.authenticate, extract_bearer(authorization))


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(
        runtime.gate.require_role, extract_bearer(authorization), {UserRole.ADMIN}
    )


# -- registration, login, tokens ---------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and open its first session.

    A REGISTER verification code is mailed to the address; registration
    does not wait for it to be confirmed.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If the per-address rate limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    # argon2 hashing is CPU bound
    user, tokens = await asyncio.to_thread(
        runtime.auth.signup,
        body.email,
        body.password,
        body.name,
        body.role,
        language=body.language,
        phone=body.phone,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid
        403: If the account is disabled
        429: If the per-address rate limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, tokens = await asyncio.to_thread(
        runtime.auth.login,
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await asyncio.to_thread(runtime.sessions.refresh, body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.sessions.revoke_session(principal.session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = runtime.sessions.logout_all(principal.user_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data={"items": [_session_response(s, principal.session_id) for s in sessions]},
    )


# -- verification codes and password reset ------------------------------------


@router.post("/auth/send-verification-code", response_model=Envelope, tags=["auth"])
async def send_verification_code(body: SendCodeRequest):
    runtime = get_runtime()
    runtime.verification.issue(body.email, body.purpose)
    return Envelope(
        status="ok",
        data={
            "status": "sent",
            "expires_in": runtime.settings.verification_code_ttl_seconds,
        },
    )


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest):
    runtime = get_runtime()
    runtime.verification.redeem(body.email, body.code, body.purpose)
    return Envelope(status="ok", data={"verified": True})


@router.post("/auth/password/reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    runtime.auth.request_password_reset(body.email)
    # Same answer whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset:{body.email}", limit=5, window_seconds=300)
    await asyncio.to_thread(
        runtime.auth.reset_password, body.email, body.code, body.new_password
    )
    return Envelope(status="ok", data={"status": "reset"})


# -- profile -----------------------------------------------------------------


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.credentials.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_current_user(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = runtime.credentials.update_profile(
        principal.user_id, name=body.name, language=body.language, phone=body.phone
    )
    return Envelope(status="ok", data=_user_response(user))


# -- role applications -------------------------------------------------------


@router.get("/auth/roles", response_model=Envelope, tags=["roles"])
async def get_roles(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    view = runtime.roles.get_roles(principal.user_id)
    return Envelope(status="ok", data=_roles_response(view))


@router.post("/auth/roles/apply", response_model=Envelope, status_code=201, tags=["roles"])
async def apply_for_role(body: ApplyRoleRequest, principal: AuthContext = Depends(get_user)):
    """Open a PENDING application for ``body.role``.

    Raises:
        400: If the role is ADMIN or already held
        409: If the caller already has a PENDING application
    """
    runtime = get_runtime()
    application = runtime.roles.apply(principal.user_id, body.role, body.reason)
    return Envelope(status="ok", data=_application_response(application))


@router.get("/auth/roles/applications/my", response_model=Envelope, tags=["roles"])
async def list_my_applications(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items: List[RoleApplicationResponse] = [
        _application_response(a) for a in runtime.roles.list_mine(principal.user_id)
    ]
    return Envelope(status="ok", data={"items": items})


@router.get("/auth/roles/applications/pending", response_model=Envelope, tags=["roles"])
async def list_pending_applications(
    limit: int = Query(DEFAULT_PENDING_LIMIT, ge=1, le=200),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    items = [_application_response(a) for a in runtime.roles.list_pending(limit)]
    return Envelope(status="ok", data={"items": items})


@router.get(
    "/auth/roles/applications/{application_id}", response_model=Envelope, tags=["roles"]
)
async def get_application(
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    application = runtime.roles.get_detail(principal, application_id)
    return Envelope(status="ok", data=_application_response(application))


@router.get(
    "/auth/roles/applications/{application_id}/history",
    response_model=Envelope,
    tags=["roles"],
)
async def get_application_history(
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    entries = runtime.roles.get_history(principal, application_id)
    return Envelope(status="ok", data={"items": [_history_response(e) for e in entries]})


@router.post(
    "/auth/roles/applications/{application_id}/approve",
    response_model=Envelope,
    tags=["roles"],
)
async def decide_application(
    body: ApproveRequest,
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    application = runtime.roles.approve(
        principal.user_id, application_id, body.decision, body.comment
    )
    return Envelope(status="ok", data=_application_response(application))


@router.delete(
    "/auth/roles/applications/{application_id}", response_model=Envelope, tags=["roles"]
)
async def cancel_application(
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    application = runtime.roles.cancel(principal.user_id, application_id)
    return Envelope(status="ok", data=_application_response(application))


# -- administration ----------------------------------------------------------


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def set_user_status(
    body: UserStatusRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    """Enable or disable an account. Disabling revokes every session it holds."""
    runtime = get_runtime()
    if user_id == principal.user_id:
        raise _http_error("validation_error", "cannot change your own status", status_code=400)
    user = runtime.auth.set_user_status(user_id, body.status)
    logger.info(
        "admin_user_status_changed",
        admin_id=principal.user_id,
        user_id=user.id,
        status=user.status.value,
    )
    return Envelope(status="ok", data=_user_response(user))
