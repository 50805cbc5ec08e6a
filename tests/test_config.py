import os
import stat

import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache


def test_defaults_match_policy():
    settings = Settings()
    assert settings.session_idle_timeout_minutes == 30
    assert settings.remember_me_days == 7
    assert settings.max_failed_attempts == 5
    assert settings.lockout_window_minutes == 15
    assert settings.two_factor_code_ttl_minutes == 5
    assert settings.two_factor_max_attempts == 3
    assert settings.recovery_token_ttl_minutes == 30
    assert settings.two_factor_roles == ["admin", "manager"]


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("MAX_FAILED_ATTEMPTS", "7")
    monkeypatch.setenv("TWO_FACTOR_ROLES", "Admin, owner ,")
    reset_settings_cache()
    settings = get_settings()
    assert settings.max_failed_attempts == 7
    assert settings.two_factor_roles == ["admin", "owner"]
    reset_settings_cache()


def test_short_signing_key_rejected():
    with pytest.raises(ValidationError):
        Settings(session_signing_key="short")


def test_recovery_token_length_floor():
    with pytest.raises(ValidationError):
        Settings(recovery_token_length=16)


def test_password_bounds_checked():
    with pytest.raises(ValidationError):
        Settings(password_min_length=20, password_max_length=10)


def test_explicit_signing_key_used(tmp_path):
    key = "k" * 40
    settings = Settings(state_dir=str(tmp_path), session_signing_key=key)
    assert settings.resolve_signing_key() == key.encode()
    assert not (tmp_path / ".session_signing_key").exists()


def test_generated_signing_key_persisted(tmp_path):
    settings = Settings(state_dir=str(tmp_path), session_signing_key=None)
    first = settings.resolve_signing_key()
    key_path = tmp_path / ".session_signing_key"
    assert key_path.exists()
    assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
    assert Settings(state_dir=str(tmp_path)).resolve_signing_key() == first
    assert len(first) >= 32
