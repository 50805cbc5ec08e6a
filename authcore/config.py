from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SIGNING_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    state_dir: str = env_field("/srv/authcore", "STATE_DIR")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Sessions
    session_idle_timeout_minutes: int = env_field(
        30, "SESSION_IDLE_TIMEOUT_MINUTES", ge=1,
        description="Sliding idle timeout for ordinary sessions",
    )
    remember_me_days: int = env_field(
        7, "REMEMBER_ME_DAYS", ge=1,
        description="Absolute lifetime of remember-me sessions",
    )
    session_renew_threshold_minutes: int = env_field(
        5, "SESSION_RENEW_THRESHOLD_MINUTES", ge=1
    )
    session_sweep_interval_seconds: int = env_field(
        60, "SESSION_SWEEP_INTERVAL_SECONDS", ge=1
    )
    session_signing_key: str | None = env_field(None, "SESSION_SIGNING_KEY")

    # Lockout
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS", ge=1)
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES", ge=1)

    # Two-factor
    two_factor_code_ttl_minutes: int = env_field(5, "TWO_FACTOR_CODE_TTL_MINUTES", ge=1)
    two_factor_max_attempts: int = env_field(3, "TWO_FACTOR_MAX_ATTEMPTS", ge=1)
    two_factor_pending_ttl_minutes: int = env_field(
        10, "TWO_FACTOR_PENDING_TTL_MINUTES", ge=1,
        description="Upper bound on the whole two-factor login flow",
    )
    two_factor_roles: list[str] = env_field(
        ["admin", "manager"], "TWO_FACTOR_ROLES",
        description="Roles that must pass a two-factor challenge on login",
    )

    # Password recovery
    recovery_token_length: int = env_field(32, "RECOVERY_TOKEN_LENGTH", ge=32)
    recovery_token_ttl_minutes: int = env_field(30, "RECOVERY_TOKEN_TTL_MINUTES", ge=1)
    recovery_cooldown_minutes: int = env_field(5, "RECOVERY_COOLDOWN_MINUTES", ge=0)

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=8)

    # Verification timing equalization
    verify_min_delay_seconds: float = env_field(1.0, "VERIFY_MIN_DELAY_SECONDS", ge=0)
    verify_delay_jitter_seconds: float = env_field(
        0.25, "VERIFY_DELAY_JITTER_SECONDS", ge=0
    )

    # Argon2id cost parameters
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM", ge=1)

    # Delivery (SMTP); unset host means log-only delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("two_factor_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [role.strip().lower() for role in value.split(",") if role.strip()]
        return value

    @model_validator(mode="after")
    def _check_password_bounds(self) -> "Settings":
        if self.password_max_length < self.password_min_length:
            raise ValueError("password_max_length must be >= password_min_length")
        return self

    @field_validator("session_signing_key")
    @classmethod
    def _check_signing_key(cls, value: str | None) -> str | None:
        if value is not None and len(value) < _MIN_SIGNING_KEY_LENGTH:
            raise ValueError(
                f"session_signing_key must be at least {_MIN_SIGNING_KEY_LENGTH} characters"
            )
        return value

    def resolve_signing_key(self) -> bytes:
        """Return the HMAC key for session integrity tags.

        An explicit SESSION_SIGNING_KEY wins. Otherwise a key is generated once
        and persisted under STATE_DIR so persisted sessions stay verifiable
        across restarts.
        """
        if self.session_signing_key:
            return self.session_signing_key.encode()

        state_dir = Path(self.state_dir)
        key_path = state_dir / ".session_signing_key"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if len(persisted) >= _MIN_SIGNING_KEY_LENGTH:
                    return persisted.encode()
            except OSError as exc:
                logger.error(
                    "signing_key_read_failed", error=str(exc), path=str(key_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial key
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".session_signing_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "signing_key_persist_failed", error=str(exc), path=str(key_path)
            )
            raise RuntimeError(
                "Unable to persist session signing key; set SESSION_SIGNING_KEY "
                "or make STATE_DIR writable"
            ) from exc
        logger.info("signing_key_generated", path=str(key_path))
        return generated.encode()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
