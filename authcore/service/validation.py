from __future__ import annotations

import re

from authcore.service.errors import InputValidationError, WeakPasswordError

USERNAME_MAX_LENGTH = 50
_USERNAME_RE = re.compile(r"^[A-Za-z0-9._@-]+$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_login_input(username: str, password: str, *, password_max_length: int = 128) -> str:
    """Check login input shape and return the stripped username.

    The messages are identical for every field so they leak nothing about which
    part was rejected beyond its shape.
    """
    if not isinstance(username, str) or not isinstance(password, str):
        raise InputValidationError("username and password are required")
    cleaned = username.strip()
    if not cleaned or len(cleaned) > USERNAME_MAX_LENGTH or not _USERNAME_RE.match(cleaned):
        raise InputValidationError("invalid username format", detail={"field": "username"})
    if not password or len(password) > password_max_length:
        raise InputValidationError("invalid password format", detail={"field": "password"})
    return cleaned


def validate_email(email: str) -> str:
    if not isinstance(email, str):
        raise InputValidationError("invalid email format", detail={"field": "email"})
    cleaned = email.strip()
    if len(cleaned) > 254 or not _EMAIL_RE.match(cleaned):
        raise InputValidationError("invalid email format", detail={"field": "email"})
    return cleaned


def check_password_strength(password: str, *, min_length: int = 8, max_length: int = 128) -> None:
    """Raise WeakPasswordError unless the password has a letter, a digit and a sane length."""
    if not isinstance(password, str) or len(password) < min_length:
        raise WeakPasswordError(
            f"password must be at least {min_length} characters",
            detail={"min_length": min_length},
        )
    if len(password) > max_length:
        raise WeakPasswordError(
            f"password must be at most {max_length} characters",
            detail={"max_length": max_length},
        )
    if not any(ch.isalpha() for ch in password):
        raise WeakPasswordError("password must contain a letter")
    if not any(ch.isdigit() for ch in password):
        raise WeakPasswordError("password must contain a digit")
