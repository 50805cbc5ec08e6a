from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication failures mapped to typed results and HTTP.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` so the
    facade, the API layer and the audit trail all agree on the outcome name.
    """

    status_code: int = 400
    error_code: str = "input_invalid"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InputValidationError(ServiceError):
    """Malformed username or password input (400)."""
    status_code = 400
    error_code = "input_invalid"


class WeakPasswordError(ServiceError):
    """New password fails the strength policy (400)."""
    status_code = 400
    error_code = "weak_password"


class LockoutError(ServiceError):
    """Identity is temporarily locked after repeated failures (429)."""
    status_code = 429
    error_code = "locked"

    def __init__(self, retry_after_seconds: int, message: str = "account temporarily locked") -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class InvalidCredentialsError(ServiceError):
    """Unknown identity, disabled identity or wrong password (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class ChallengeExpiredError(ServiceError):
    """Two-factor challenge is missing, consumed or past its TTL (401)."""
    status_code = 401
    error_code = "challenge_expired"


class ChallengeExhaustedError(ServiceError):
    """Two-factor challenge ran out of attempts (401)."""
    status_code = 401
    error_code = "challenge_exhausted"


class TokenExpiredError(ServiceError):
    status_code = 400
    error_code = "token_expired"


class TokenNotFoundError(ServiceError):
    status_code = 400
    error_code = "token_not_found"


class SessionIntegrityError(ServiceError):
    """Persisted session failed its integrity check (401)."""
    status_code = 401
    error_code = "session_integrity"


class ServerError(ServiceError):
    """Internal server error, typically a store failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InputValidationError",
    "WeakPasswordError",
    "LockoutError",
    "InvalidCredentialsError",
    "ChallengeExpiredError",
    "ChallengeExhaustedError",
    "TokenExpiredError",
    "TokenNotFoundError",
    "SessionIntegrityError",
    "ServerError",
]
