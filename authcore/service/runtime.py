from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.audit import AuditSink, LoggingAuditSink
from authcore.service.auth import AuthenticationFacade
from authcore.service.credentials import CredentialValidator
from authcore.service.email import EmailChannel, NotificationChannel
from authcore.service.hashing import Argon2Hasher, PasswordHasher
from authcore.service.lockout import LockoutGuard
from authcore.service.recovery import RecoveryTokenManager
from authcore.service.sessions import Scheduler, SessionManager
from authcore.service.two_factor import TwoFactorChallengeManager
from authcore.storage.common import Clock
from authcore.storage.memory import MemoryStore
from authcore.storage.models import utcnow
from authcore.storage.redis_store import RedisStore

logger = get_logger(__name__)

Store = Union[MemoryStore, RedisStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-wide container for the store and the shared auth components.

    Each caller context gets its own :class:`AuthenticationFacade` from
    :meth:`new_context`; lockout state, sessions and challenges are shared
    through the store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        hasher: Optional[PasswordHasher] = None,
        channel: Optional[NotificationChannel] = None,
        audit: Optional[AuditSink] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()

        self.hasher: PasswordHasher = hasher or Argon2Hasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.channel: NotificationChannel = channel or EmailChannel(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            code_ttl_minutes=self.settings.two_factor_code_ttl_minutes,
            token_ttl_minutes=self.settings.recovery_token_ttl_minutes,
        )
        self.audit: AuditSink = audit or LoggingAuditSink()

        self.validator = CredentialValidator(
            self.store,
            self.hasher,
            min_delay_seconds=self.settings.verify_min_delay_seconds,
            jitter_seconds=self.settings.verify_delay_jitter_seconds,
        )
        self.lockout = LockoutGuard(
            self.store,
            max_attempts=self.settings.max_failed_attempts,
            window_minutes=self.settings.lockout_window_minutes,
            clock=clock,
        )
        self.sessions = SessionManager(
            self.store,
            signing_key=self.settings.resolve_signing_key(),
            idle_timeout_minutes=self.settings.session_idle_timeout_minutes,
            remember_me_days=self.settings.remember_me_days,
            renew_threshold_minutes=self.settings.session_renew_threshold_minutes,
            sweep_interval_seconds=self.settings.session_sweep_interval_seconds,
            clock=clock,
            scheduler=scheduler,
            audit=self.audit,
        )
        self.two_factor = TwoFactorChallengeManager(
            self.store,
            self.channel,
            code_ttl_minutes=self.settings.two_factor_code_ttl_minutes,
            max_attempts=self.settings.two_factor_max_attempts,
            clock=clock,
        )
        self.recovery = RecoveryTokenManager(
            self.store,
            self.store,
            self.hasher,
            self.channel,
            token_length=self.settings.recovery_token_length,
            token_ttl_minutes=self.settings.recovery_token_ttl_minutes,
            cooldown_minutes=self.settings.recovery_cooldown_minutes,
            password_min_length=self.settings.password_min_length,
            password_max_length=self.settings.password_max_length,
            clock=clock,
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            delivery=type(self.channel).__name__,
        )

    def _build_store(self) -> Store:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore(clock=self.clock)
        if not self.settings.redis_url:
            raise RuntimeError(
                "REDIS_URL is required when USE_MEMORY_STORE is false"
            )
        try:
            store = RedisStore(self.settings.redis_url)
            store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="redis",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return store

    def new_context(self) -> AuthenticationFacade:
        """Create a facade for one execution context (request, worker, CLI)."""
        return AuthenticationFacade(
            credentials=self.store,
            store=self.store,
            validator=self.validator,
            lockout=self.lockout,
            sessions=self.sessions,
            two_factor=self.two_factor,
            recovery=self.recovery,
            audit=self.audit,
            two_factor_roles=self.settings.two_factor_roles,
            pending_ttl_minutes=self.settings.two_factor_pending_ttl_minutes,
            password_max_length=self.settings.password_max_length,
            clock=self.clock,
        )

    async def start(self) -> None:
        await self.sessions.start_sweeper()

    async def stop(self) -> None:
        await self.sessions.stop_sweeper()
        self.sessions.shutdown()

    def close(self) -> None:
        self.sessions.shutdown()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
