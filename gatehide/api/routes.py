from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from gatehide.api.schemas import (
    ChangePasswordRequest,
    ClaimsResponse,
    Envelope,
    ForgotPasswordRequest,
    IdentityView,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    ResetTokenRequest,
    RevokedCountResponse,
    SendEmailVerificationRequest,
    SendEmailVerificationResponse,
    SessionListResponse,
    SessionView,
    TokenResponse,
    VerifyEmailRequest,
)
from gatehide.logging import get_logger
from gatehide.service.auth import AuthContext
from gatehide.service.runtime import Runtime
from gatehide.service.sessions import ActiveSession
from gatehide.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("server_error", "service not initialised", status_code=503)
    return runtime


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return await runtime.auth.authenticate(authorization)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _identity_view(identity: Identity) -> IdentityView:
    return IdentityView(
        id=identity.id,
        namespace=identity.namespace,
        email=identity.email,
        name=identity.name,
        mobile=identity.mobile,
        last_login_at=identity.last_login_at,
        created_at=identity.created_at,
    )


def _session_view(entry: ActiveSession) -> SessionView:
    sess = entry.session
    return SessionView(
        id=sess.id,
        device_info=sess.device_info,
        ip_address=sess.ip_address,
        user_agent=sess.user_agent,
        last_activity_at=sess.last_activity_at,
        created_at=sess.created_at,
        expires_at=sess.expires_at,
        is_current=entry.is_current,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate against either account namespace.

    Standard users are probed before administrators; the response reports
    which namespace matched in ``user_type``.

    Raises:
        401: If no namespace accepts the credentials
    """
    result = await runtime.auth.login_with_session(
        body.email,
        body.password,
        remember=body.remember_me,
        device_info=body.device_info,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=result.token,
            user_type=result.namespace,
            expires_at=result.expires_at,
            session_id=result.session_id,
            user=_identity_view(result.identity),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: Optional[RefreshRequest] = None,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Exchange a still-valid token for a new one with a fresh expiry window."""
    token = runtime.auth.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    remember = body.remember_me if body else False
    issued = await runtime.auth.refresh_token(token, remember=remember)
    return Envelope(
        status="ok",
        data=TokenResponse(token=issued.token, expires_at=issued.expires_at),
    )


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    claims = await runtime.auth.validate_token(principal.token)
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            user_id=claims.identity_id,
            user_type=claims.namespace,
            email=claims.email,
            name=claims.name,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
            session_id=principal.session_id,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_identity(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    identity = await runtime.auth.get_identity(principal)
    return Envelope(status="ok", data=_identity_view(identity))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)
):
    """Email a reset link to the matching account.

    The reply is identical whichever namespace matched; the token itself only
    travels through the notification channel.
    """
    await runtime.auth.forgot_password(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="password reset instructions sent"),
    )


@router.post("/auth/validate-reset-token", response_model=Envelope, tags=["auth"])
async def validate_reset_token(
    body: ResetTokenRequest, runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.validate_reset_token(body.token)
    return Envelope(status="ok", data={"valid": True})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.reset_password(
        body.token, body.email, body.new_password, body.confirm_password
    )
    return Envelope(status="ok", data=MessageResponse(message="password has been reset"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password, body.confirm_password
    )
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/auth/email/send-verification", response_model=Envelope, tags=["auth"])
async def send_email_verification(
    body: SendEmailVerificationRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    code = await runtime.auth.send_email_verification(principal, body.new_email)
    settings = runtime.settings
    return Envelope(
        status="ok",
        data=SendEmailVerificationResponse(
            expires_in_minutes=settings.email_verification_ttl_minutes,
            code=code if settings.expose_codes else None,
        ),
    )


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: VerifyEmailRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.verify_email_code(principal, body.new_email, body.code)
    identity = await runtime.auth.get_identity(principal)
    return Envelope(status="ok", data=_identity_view(identity))


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    entries = await runtime.auth.list_sessions(principal)
    return Envelope(
        status="ok",
        data=SessionListResponse(sessions=[_session_view(e) for e in entries]),
    )


@router.post("/sessions/logout-others", response_model=Envelope, tags=["sessions"])
async def logout_other_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.auth.revoke_other_sessions(principal)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/sessions/logout-all", response_model=Envelope, tags=["sessions"])
async def logout_all_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.auth.revoke_all_sessions(principal)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/sessions/{session_id}/logout", response_model=Envelope, tags=["sessions"])
async def logout_session(
    session_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.revoke_session(principal, session_id)
    return Envelope(status="ok", data=MessageResponse(message="session logged out"))
