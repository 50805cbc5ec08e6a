from __future__ import annotations

import secrets
import string
from datetime import timedelta
from typing import Any, Dict, Optional

from authcore.logging import get_logger, redact_email
from authcore.service.email import NotificationChannel
from authcore.service.errors import (
    InputValidationError,
    TokenExpiredError,
    TokenNotFoundError,
)
from authcore.service.hashing import PasswordHasher
from authcore.service.validation import check_password_strength, validate_email
from authcore.storage.common import Clock, CredentialStore, KeyValueStore, Record, normalize_key
from authcore.storage.models import Credential, Identity, RecoveryToken, utcnow

TOKEN_ALPHABET = string.ascii_letters + string.digits
# Expired tokens stay readable for an hour so callers can tell "expired" from "unknown"
RETENTION_GRACE_SECONDS = 3600


class RecoveryTokenManager:
    """Single-use password-reset tokens.

    ``request`` never reports whether the email belongs to an identity. Each
    email has at most one pending token; a new request invalidates the old
    one unless it falls inside the cooldown, in which case it is silently
    dropped.
    """

    TOKEN_PREFIX = "recovery:"
    EMAIL_PREFIX = "recovery_email:"

    def __init__(
        self,
        store: KeyValueStore,
        credentials: CredentialStore,
        hasher: PasswordHasher,
        channel: NotificationChannel,
        *,
        token_length: int = 32,
        token_ttl_minutes: int = 30,
        cooldown_minutes: int = 5,
        password_min_length: int = 8,
        password_max_length: int = 128,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.hasher = hasher
        self.channel = channel
        self.token_length = token_length
        self.token_ttl = timedelta(minutes=token_ttl_minutes)
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.password_min_length = password_min_length
        self.password_max_length = password_max_length
        self._clock = clock
        self.logger = get_logger(__name__)

    def _token_key(self, token: str) -> str:
        return f"{self.TOKEN_PREFIX}{token}"

    def _email_key(self, email: str) -> str:
        return f"{self.EMAIL_PREFIX}{normalize_key(email)}"

    def generate_token(self) -> str:
        return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(self.token_length))

    def request(self, email: str) -> None:
        try:
            cleaned = validate_email(email)
        except InputValidationError:
            self.logger.info("recovery_request_malformed")
            return
        identity = self.credentials.get_identity_by_email(cleaned)
        if identity is None or not identity.enabled:
            self.logger.info("recovery_request_ignored", email=redact_email(cleaned))
            return

        now = self._clock()
        token = self.generate_token()
        outcome: Dict[str, Any] = {"previous": None, "suppressed": False}

        def _rotate(current: Optional[Record]) -> Optional[Record]:
            if current is not None:
                issued_at = RecoveryToken.from_record(current).created_at
                if now - issued_at < self.cooldown:
                    outcome["suppressed"] = True
                    return current
                outcome["previous"] = current.get("token")
            outcome["suppressed"] = False
            return RecoveryToken(
                token=token,
                email=normalize_key(cleaned),
                expires_at=now + self.token_ttl,
                created_at=now,
            ).to_record()

        index_ttl = int(max(self.token_ttl, self.cooldown).total_seconds()) + RETENTION_GRACE_SECONDS
        self.store.update(self._email_key(cleaned), _rotate, ttl_seconds=index_ttl)
        if outcome["suppressed"]:
            self.logger.info("recovery_request_cooldown", email=redact_email(cleaned))
            return
        if outcome["previous"]:
            self.store.delete(self._token_key(outcome["previous"]))

        record = RecoveryToken(
            token=token,
            email=normalize_key(cleaned),
            expires_at=now + self.token_ttl,
            created_at=now,
        )
        self.store.put(
            self._token_key(token),
            record.to_record(),
            ttl_seconds=int(self.token_ttl.total_seconds()) + RETENTION_GRACE_SECONDS,
        )
        if not self.channel.send_recovery_token(identity, token):
            self.logger.warning("recovery_delivery_failed", identity_id=identity.id)
        self.logger.info("recovery_token_issued", identity_id=identity.id)

    def _check(self, record: Optional[Record]) -> RecoveryToken:
        if record is None:
            raise TokenNotFoundError("recovery token not found")
        parsed = RecoveryToken.from_record(record)
        if self._clock() >= parsed.expires_at:
            raise TokenExpiredError("recovery token expired")
        return parsed

    def validate(self, token: str) -> str:
        """Return the email bound to ``token`` without consuming it."""
        if not token:
            raise TokenNotFoundError("recovery token not found")
        return self._check(self.store.get(self._token_key(token))).email

    def redeem(self, token: str) -> str:
        """Atomically consume ``token`` and return its email.

        The token is removed before any other check, so an expired token is
        consumed too.
        """
        if not token:
            raise TokenNotFoundError("recovery token not found")
        record = self.store.pop(self._token_key(token))
        parsed = self._check(record)

        def _clear_index(current: Optional[Record]) -> Optional[Record]:
            if current is not None and current.get("token") == token:
                # Keep the cooldown marker but drop the consumed token reference
                current["token"] = ""
            return current

        self.store.update(self._email_key(parsed.email), _clear_index)
        return parsed.email

    def reset_password(self, token: str, new_password: str) -> Identity:
        """Check strength, redeem the token, then store a fresh credential.

        A failure after redemption does not restore the token.
        """
        check_password_strength(
            new_password,
            min_length=self.password_min_length,
            max_length=self.password_max_length,
        )
        email = self.redeem(token)
        identity = self.credentials.get_identity_by_email(email)
        if identity is None or not identity.enabled:
            self.logger.warning("recovery_identity_missing", email=redact_email(email))
            raise TokenNotFoundError("recovery token not found")
        salt = self.hasher.generate_salt()
        self.credentials.save_credential(
            Credential(
                identity_id=identity.id,
                password_hash=self.hasher.hash(new_password, salt),
                password_salt=salt,
                updated_at=self._clock(),
            )
        )
        self.logger.info("password_reset_completed", identity_id=identity.id)
        return identity
