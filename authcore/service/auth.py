from __future__ import annotations

import asyncio
import secrets
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, NoReturn, Optional, Tuple

from authcore.logging import get_logger, redact_email
from authcore.service.audit import AuditSink
from authcore.service.credentials import CredentialValidator
from authcore.service.errors import (
    ChallengeExhaustedError,
    ChallengeExpiredError,
    InputValidationError,
    InvalidCredentialsError,
    LockoutError,
    ServerError,
    ServiceError,
    SessionIntegrityError,
    TokenExpiredError,
    TokenNotFoundError,
    WeakPasswordError,
)
from authcore.service.lockout import LockoutGuard
from authcore.service.permissions import grants
from authcore.service.recovery import RecoveryTokenManager
from authcore.service.sessions import SessionManager
from authcore.service.two_factor import TwoFactorChallengeManager
from authcore.service.validation import validate_login_input
from authcore.storage.common import Clock, CredentialStore, KeyValueStore
from authcore.storage.errors import StoreError
from authcore.storage.models import Identity, IdentitySnapshot, PendingLogin, Session, utcnow

RECOVERY_REQUESTED_MESSAGE = (
    "If the email address is registered, password recovery instructions have been sent."
)
PASSWORD_RESET_MESSAGE = "Password updated. Sign in with the new password."


@dataclass
class LoginResult:
    success: bool
    session: Optional[Session] = None
    error: Optional[ServiceError] = None
    requires_two_factor: bool = False
    pending_id: Optional[str] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    @property
    def retry_after_seconds(self) -> Optional[int]:
        if isinstance(self.error, LockoutError):
            return self.error.retry_after_seconds
        return None


@dataclass
class RecoveryResult:
    success: bool
    message: str = ""
    error: Optional[ServiceError] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None


@dataclass
class TokenValidationResult:
    valid: bool
    email: Optional[str] = None
    error: Optional[ServiceError] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None


class AuthenticationFacade:
    """Entry point for login, two-factor, logout, recovery and session checks.

    One facade instance is one execution context: it holds at most one
    authenticated session and at most one pending two-factor login. Shared
    components (store, lockout guard, session manager) are injected so many
    contexts can run against the same state.

    Login steps run in a fixed order: input check, lockout check, credential
    verification, two-factor issue and validate, session issue. Validation
    and lockout outcomes are returned in the result; store failures and
    session tampering force a logout and are audited.
    """

    PENDING_PREFIX = "pending_login:"

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        store: KeyValueStore,
        validator: CredentialValidator,
        lockout: LockoutGuard,
        sessions: SessionManager,
        two_factor: TwoFactorChallengeManager,
        recovery: RecoveryTokenManager,
        audit: AuditSink,
        two_factor_roles: Iterable[str] = ("admin", "manager"),
        pending_ttl_minutes: int = 10,
        password_max_length: int = 128,
        clock: Clock = utcnow,
    ) -> None:
        self.credentials = credentials
        self.store = store
        self.validator = validator
        self.lockout = lockout
        self.sessions = sessions
        self.two_factor = two_factor
        self.recovery = recovery
        self.audit = audit
        self.two_factor_roles = frozenset(role.lower() for role in two_factor_roles)
        self.pending_ttl = timedelta(minutes=pending_ttl_minutes)
        self.password_max_length = password_max_length
        self._clock = clock
        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._pending_id: Optional[str] = None
        self.logger = get_logger(__name__)

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def pending_id(self) -> Optional[str]:
        return self._pending_id

    def requires_two_factor(self, identity: Identity) -> bool:
        return (identity.role or "").lower() in self.two_factor_roles

    # -- login -------------------------------------------------------------

    async def login(self, username: str, password: str, remember_me: bool = False) -> LoginResult:
        """Authenticate and open a session.

        Identities whose role requires two-factor are routed into the
        challenge flow and get ``requires_two_factor=True`` instead of a
        session.
        """
        identity, failure = await self._authenticate(username, password)
        if failure is not None:
            return failure
        if self.requires_two_factor(identity):
            return await self._begin_two_factor(identity, remember_me)
        return self._complete_login(identity, remember_me, two_factor=False)

    async def login_with_two_factor(
        self, username: str, password: str, remember_me: bool = False
    ) -> LoginResult:
        """Authenticate and always require a two-factor code before the session."""
        identity, failure = await self._authenticate(username, password)
        if failure is not None:
            return failure
        return await self._begin_two_factor(identity, remember_me)

    async def _authenticate(
        self, username: str, password: str
    ) -> Tuple[Optional[Identity], Optional[LoginResult]]:
        try:
            identity_key = validate_login_input(
                username, password, password_max_length=self.password_max_length
            )
        except InputValidationError as exc:
            self.audit.emit("login_failed", reason=exc.error_code)
            return None, LoginResult(success=False, error=exc)

        try:
            if self.lockout.is_locked(identity_key):
                retry_after = self.lockout.retry_after(identity_key)
                self.audit.emit(
                    "login_rejected_locked",
                    identity_key=identity_key.lower(),
                    retry_after_seconds=retry_after,
                )
                return None, LoginResult(success=False, error=LockoutError(retry_after))

            identity = await self.validator.verify(identity_key, password)
            if identity is None:
                record = self.lockout.record_failure(identity_key)
                self.audit.emit(
                    "login_failed",
                    identity_key=record.identity_key,
                    reason="invalid_credentials",
                    failed_attempts=record.count,
                )
                if record.count == self.lockout.max_attempts:
                    self.audit.emit(
                        "lockout_triggered",
                        identity_key=record.identity_key,
                        retry_after_seconds=self.lockout.retry_after(identity_key),
                    )
                return None, LoginResult(
                    success=False,
                    error=InvalidCredentialsError("invalid username or password"),
                )
            self.lockout.record_success(identity_key)
            return identity, None
        except StoreError as exc:
            self._store_failure(exc, "login")

    def _complete_login(self, identity: Identity, remember_me: bool, *, two_factor: bool) -> LoginResult:
        try:
            self.logout("superseded")
            session = self.sessions.issue(
                identity, remember_me, on_expire=self._on_session_expired
            )
        except StoreError as exc:
            self._store_failure(exc, "session_issue")
        with self._lock:
            self._session = session
        self.audit.emit(
            "login_succeeded",
            identity_id=identity.id,
            session_id=session.session_id,
            remember_me=remember_me,
            two_factor=two_factor,
        )
        return LoginResult(success=True, session=session)

    # -- two-factor --------------------------------------------------------

    def _pending_key(self, pending_id: str) -> str:
        return f"{self.PENDING_PREFIX}{pending_id}"

    def _clear_pending(self, pending_id: Optional[str]) -> None:
        with self._lock:
            if pending_id is None or self._pending_id == pending_id:
                self._pending_id = None
        if pending_id:
            self.store.delete(self._pending_key(pending_id))

    async def _begin_two_factor(self, identity: Identity, remember_me: bool) -> LoginResult:
        now = self._clock()
        try:
            with self._lock:
                previous = self._pending_id
            if previous:
                self.store.delete(self._pending_key(previous))
            code = self.two_factor.issue(identity.username)
            pending = PendingLogin(
                pending_id=secrets.token_urlsafe(24),
                identity=IdentitySnapshot(
                    id=identity.id,
                    username=identity.username,
                    display_name=identity.display_name,
                    email=identity.email,
                    role=identity.role,
                ),
                remember_me=remember_me,
                expires_at=now + self.pending_ttl,
            )
            self.store.put(
                self._pending_key(pending.pending_id),
                pending.to_record(),
                ttl_seconds=int(self.pending_ttl.total_seconds()),
            )
        except StoreError as exc:
            self._store_failure(exc, "two_factor_issue")
        with self._lock:
            self._pending_id = pending.pending_id
        await asyncio.to_thread(self.two_factor.deliver, identity, code)
        self.audit.emit("two_factor_issued", identity_id=identity.id)
        return LoginResult(
            success=False, requires_two_factor=True, pending_id=pending.pending_id
        )

    async def complete_two_factor_login(
        self, code: str, pending_id: Optional[str] = None
    ) -> LoginResult:
        pid = pending_id or self._pending_id
        if not pid:
            return LoginResult(
                success=False, error=ChallengeExpiredError("no pending two-factor login")
            )
        try:
            record = self.store.get(self._pending_key(pid))
            pending = PendingLogin.from_record(record) if record else None
            if pending is None or self._clock() >= pending.expires_at:
                self._clear_pending(pid)
                return LoginResult(
                    success=False,
                    error=ChallengeExpiredError("two-factor login expired"),
                )
            try:
                accepted = self.two_factor.validate(pending.identity.username, code)
            except ChallengeExhaustedError as exc:
                self._clear_pending(pid)
                self.audit.emit("two_factor_exhausted", identity_id=pending.identity.id)
                return LoginResult(success=False, error=exc)
            except ChallengeExpiredError as exc:
                self._clear_pending(pid)
                return LoginResult(success=False, error=exc)

            if not accepted:
                self.audit.emit("two_factor_failed", identity_id=pending.identity.id)
                return LoginResult(
                    success=False,
                    error=InvalidCredentialsError("incorrect verification code"),
                    requires_two_factor=True,
                    pending_id=pid,
                )

            self._clear_pending(pid)
            identity = self.credentials.get_identity(pending.identity.id)
        except StoreError as exc:
            self._store_failure(exc, "two_factor_validate")

        if identity is None or not identity.enabled:
            self.audit.emit("login_failed", identity_id=pending.identity.id, reason="identity_unavailable")
            return LoginResult(
                success=False, error=InvalidCredentialsError("invalid username or password")
            )
        return self._complete_login(identity, pending.remember_me, two_factor=True)

    # -- session state -----------------------------------------------------

    def logout(self, reason: Optional[str] = None) -> None:
        """End the current session and any pending login. Idempotent."""
        with self._lock:
            session, self._session = self._session, None
            pending, self._pending_id = self._pending_id, None
        if pending:
            try:
                self.store.delete(self._pending_key(pending))
            except StoreError as exc:
                self.logger.error("pending_login_cleanup_failed", error=str(exc))
        if session is None:
            return
        try:
            self.sessions.expire(session, reason or "logout")
        except StoreError as exc:
            self.logger.error(
                "logout_store_failure", session_id=session.session_id, error=str(exc)
            )
            self.audit.emit("store_failure", operation="logout", error=type(exc).__name__)
        self.audit.emit(
            "logout",
            identity_id=session.identity.id,
            session_id=session.session_id,
            reason=reason or "user",
        )

    def _on_session_expired(self, session: Session, reason: str) -> None:
        current = self._session
        if current is not None and current.session_id == session.session_id:
            self.logout(reason)

    def is_authenticated(self) -> bool:
        session = self._session
        if session is None:
            return False
        try:
            if self.sessions.check(session):
                return True
        except SessionIntegrityError as exc:
            self._integrity_violation(session, exc)
            return False
        except StoreError as exc:
            self._store_failure(exc, "session_check")
        self.logout("expired")
        return False

    def has_permission(self, permission: str) -> bool:
        if not self.is_authenticated():
            return False
        session = self._session
        return session is not None and grants(session.identity.permissions, permission)

    def record_activity(self) -> bool:
        """Activity tick: slide the idle window of the current session."""
        session = self._session
        if session is None:
            return False
        try:
            if self.sessions.touch(session):
                return True
        except SessionIntegrityError as exc:
            self._integrity_violation(session, exc)
            return False
        except StoreError as exc:
            self._store_failure(exc, "record_activity")
        self.logout("expired")
        return False

    async def restore_session(self, session_id: str) -> bool:
        """Adopt a persisted session, e.g. one carried by an HTTP client."""
        try:
            session = self.sessions.load(session_id)
        except SessionIntegrityError:
            self.audit.emit("session_integrity_violation", session_id=session_id)
            return False
        except StoreError as exc:
            self._store_failure(exc, "session_restore")
        if session is None:
            return False
        if not self.sessions.validate(session):
            if self._clock() < session.expires_at:
                self._integrity_violation(session, SessionIntegrityError("session integrity check failed"))
            return False
        current = self._session
        if current is not None and current.session_id != session.session_id:
            self.logout("superseded")
        with self._lock:
            self._session = session
        self.sessions.attach(session, self._on_session_expired)
        return True

    # -- recovery ----------------------------------------------------------

    async def request_recovery(self, email: str) -> RecoveryResult:
        """Start password recovery. The response never depends on the email."""
        started = self.validator.started()
        try:
            await asyncio.to_thread(self.recovery.request, email)
        except StoreError as exc:
            self._store_failure(exc, "recovery_request")
        finally:
            await self.validator.pad(started)
        self.audit.emit("recovery_requested", email=redact_email(email if isinstance(email, str) else None))
        return RecoveryResult(success=True, message=RECOVERY_REQUESTED_MESSAGE)

    def validate_token(self, token: str) -> TokenValidationResult:
        try:
            email = self.recovery.validate(token)
        except (TokenExpiredError, TokenNotFoundError) as exc:
            return TokenValidationResult(valid=False, error=exc)
        except StoreError as exc:
            self._store_failure(exc, "token_validate")
        return TokenValidationResult(valid=True, email=email)

    async def reset_password(self, token: str, new_password: str) -> RecoveryResult:
        try:
            identity = await asyncio.to_thread(self.recovery.reset_password, token, new_password)
        except (WeakPasswordError, TokenExpiredError, TokenNotFoundError) as exc:
            self.audit.emit("password_reset_failed", reason=exc.error_code)
            return RecoveryResult(success=False, message=exc.message, error=exc)
        except StoreError as exc:
            self.audit.emit("password_reset_failed", reason="store_failure")
            self._store_failure(exc, "password_reset")
        try:
            revoked = self.sessions.revoke_identity(identity.id, "password_reset")
            self.lockout.record_success(identity.username)
        except StoreError as exc:
            self._store_failure(exc, "password_reset")
        self.audit.emit(
            "password_reset_completed", identity_id=identity.id, sessions_revoked=revoked
        )
        return RecoveryResult(success=True, message=PASSWORD_RESET_MESSAGE)

    # -- failure handling --------------------------------------------------

    def _integrity_violation(self, session: Session, exc: SessionIntegrityError) -> None:
        self.logger.warning(
            "session_integrity_violation", session_id=session.session_id, error=exc.message
        )
        self.audit.emit(
            "session_integrity_violation",
            identity_id=session.identity.id,
            session_id=session.session_id,
        )
        current = self._session
        self.logout("integrity_violation")
        if current is None or current.session_id != session.session_id:
            try:
                self.sessions.expire(session, "integrity_violation")
            except StoreError as store_exc:
                self.logger.error(
                    "integrity_cleanup_failed",
                    session_id=session.session_id,
                    error=str(store_exc),
                )

    def _store_failure(self, exc: StoreError, operation: str) -> NoReturn:
        self.logger.error(
            "auth_store_failure", operation=operation, error=str(exc), error_type=type(exc).__name__
        )
        self.audit.emit("store_failure", operation=operation, error=type(exc).__name__)
        self.logout("store_failure")
        raise ServerError("authentication store unavailable") from exc
