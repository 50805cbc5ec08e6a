from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "input_invalid",
    "weak_password",
    "locked",
    "invalid_credentials",
    "challenge_expired",
    "challenge_exhausted",
    "token_expired",
    "token_not_found",
    "session_integrity",
    "unauthorized",
    "not_found",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=256)
    password: str = Field(..., max_length=1024)
    remember_me: bool = False
    force_two_factor: bool = Field(
        default=False, description="Require a two-factor code regardless of role"
    )


class TwoFactorVerifyRequest(BaseModel):
    pending_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=10)


class IdentityResponse(BaseModel):
    id: str
    username: str
    display_name: str
    email: str
    role: str
    permissions: List[str]


class SessionResponse(BaseModel):
    session_id: str
    issued_at: datetime
    expires_at: datetime
    renewable: bool
    identity: IdentityResponse


class LoginResponse(BaseModel):
    requires_two_factor: bool = False
    pending_id: Optional[str] = None
    session: Optional[SessionResponse] = None


class RecoveryRequest(BaseModel):
    email: str = Field(..., max_length=320)


class RecoveryValidateRequest(BaseModel):
    token: str = Field(..., max_length=256)


class RecoveryValidateResponse(BaseModel):
    valid: bool
    email: Optional[str] = None


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=1024)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class PermissionResponse(BaseModel):
    permission: str
    allowed: bool
