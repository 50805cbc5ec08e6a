from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from authcore.api.schemas import (
    Envelope,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    PermissionResponse,
    RecoveryRequest,
    RecoveryValidateRequest,
    RecoveryValidateResponse,
    SessionResponse,
    TwoFactorVerifyRequest,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthenticationFacade, LoginResult
from authcore.service.runtime import get_runtime
from authcore.storage.models import Session

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


def _session_response(session: Session) -> SessionResponse:
    identity = session.identity
    return SessionResponse(
        session_id=session.session_id,
        issued_at=session.issued_at,
        expires_at=session.expires_at,
        renewable=session.renewable,
        identity=IdentityResponse(
            id=identity.id,
            username=identity.username,
            display_name=identity.display_name,
            email=identity.email,
            role=identity.role,
            permissions=list(identity.permissions),
        ),
    )


def _login_envelope(result: LoginResult) -> Envelope:
    if result.requires_two_factor and result.error is None:
        return Envelope(
            status="ok",
            data=LoginResponse(requires_two_factor=True, pending_id=result.pending_id),
        )
    if not result.success or result.session is None:
        raise result.error
    return Envelope(status="ok", data=LoginResponse(session=_session_response(result.session)))


def _bearer_session_id(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def _authenticated_context(authorization: Optional[str]) -> AuthenticationFacade:
    session_id = _bearer_session_id(authorization)
    if not session_id:
        raise _http_error("unauthorized", "session required", status_code=401)
    context = get_runtime().new_context()
    if not await context.restore_session(session_id) or not context.is_authenticated():
        raise _http_error("unauthorized", "session expired or invalid", status_code=401)
    return context


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with username and password.

    Roles that require two-factor (or ``force_two_factor``) receive a
    ``pending_id`` instead of a session; finish with ``/auth/2fa/verify``.
    """
    context = get_runtime().new_context()
    if body.force_two_factor:
        result = await context.login_with_two_factor(body.username, body.password, body.remember_me)
    else:
        result = await context.login(body.username, body.password, body.remember_me)
    return _login_envelope(result)


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest):
    context = get_runtime().new_context()
    result = await context.complete_two_factor_login(body.code, pending_id=body.pending_id)
    if result.error is not None and result.requires_two_factor:
        # Wrong code with attempts left: the caller may retry with the same pending id
        raise _http_error(
            result.error.error_code,
            result.error.message,
            status_code=result.error.status_code,
            details={"pending_id": result.pending_id},
        )
    return _login_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(default=None)):
    session_id = _bearer_session_id(authorization)
    if session_id:
        context = get_runtime().new_context()
        if await context.restore_session(session_id):
            context.logout("user")
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(authorization: Optional[str] = Header(default=None)):
    context = await _authenticated_context(authorization)
    context.record_activity()
    session = context.current_session
    if session is None:
        raise _http_error("unauthorized", "session expired or invalid", status_code=401)
    return Envelope(status="ok", data=_session_response(session))


@router.get("/auth/permissions/{permission}", response_model=Envelope, tags=["auth"])
async def check_permission(permission: str, authorization: Optional[str] = Header(default=None)):
    context = await _authenticated_context(authorization)
    return Envelope(
        status="ok",
        data=PermissionResponse(permission=permission, allowed=context.has_permission(permission)),
    )


@router.post("/auth/recovery/request", response_model=Envelope, tags=["auth"])
async def request_recovery(body: RecoveryRequest):
    result = await get_runtime().new_context().request_recovery(body.email)
    return Envelope(status="ok", data=MessageResponse(success=result.success, message=result.message))


@router.post("/auth/recovery/validate", response_model=Envelope, tags=["auth"])
async def validate_recovery_token(body: RecoveryValidateRequest):
    result = get_runtime().new_context().validate_token(body.token)
    if not result.valid:
        raise result.error
    return Envelope(status="ok", data=RecoveryValidateResponse(valid=True, email=result.email))


@router.post("/auth/recovery/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    result = await get_runtime().new_context().reset_password(body.token, body.new_password)
    if not result.success:
        raise result.error
    return Envelope(status="ok", data=MessageResponse(message=result.message))
