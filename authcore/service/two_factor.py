from __future__ import annotations

import hmac
import secrets
from datetime import timedelta
from typing import Dict, Optional

from authcore.logging import get_logger
from authcore.service.email import NotificationChannel
from authcore.service.errors import ChallengeExhaustedError, ChallengeExpiredError
from authcore.storage.common import Clock, KeyValueStore, Record, normalize_key, ttl_from
from authcore.storage.models import Identity, TwoFactorChallenge, utcnow

CODE_DIGITS = 6


class TwoFactorChallengeManager:
    """Six-digit one-time codes with a short TTL and a small attempt budget.

    At most one challenge exists per identity; issuing a new one replaces the
    previous. A challenge is destroyed on success, on expiry and when its
    attempts run out.
    """

    KEY_PREFIX = "two_factor:"

    def __init__(
        self,
        store: KeyValueStore,
        channel: NotificationChannel,
        *,
        code_ttl_minutes: int = 5,
        max_attempts: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.channel = channel
        self.code_ttl = timedelta(minutes=code_ttl_minutes)
        self.max_attempts = max_attempts
        self._clock = clock
        self.logger = get_logger(__name__)

    def _key(self, identity_key: str) -> str:
        return f"{self.KEY_PREFIX}{normalize_key(identity_key)}"

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"

    def issue(self, identity_key: str) -> str:
        now = self._clock()
        code = self.generate_code()
        challenge = TwoFactorChallenge(
            identity_key=normalize_key(identity_key),
            code=code,
            expires_at=now + self.code_ttl,
            remaining_attempts=self.max_attempts,
        )
        self.store.put(
            self._key(identity_key),
            challenge.to_record(),
            ttl_seconds=ttl_from(challenge.expires_at, now),
        )
        self.logger.info("two_factor_issued", identity_key=challenge.identity_key)
        return code

    def deliver(self, identity: Identity, code: str) -> bool:
        delivered = self.channel.send_two_factor_code(identity, code)
        if not delivered:
            self.logger.warning("two_factor_delivery_failed", identity_id=identity.id)
        return delivered

    def validate(self, identity_key: str, code: str) -> bool:
        """Check ``code`` against the pending challenge.

        Returns True on a match (the challenge is consumed) and False on a
        mismatch with attempts left. Raises ChallengeExhaustedError when the
        last attempt is spent and ChallengeExpiredError when no live
        challenge exists.
        """
        now = self._clock()
        outcome: Dict[str, Optional[str]] = {"result": None}

        def _attempt(current: Optional[Record]) -> Optional[Record]:
            if current is None:
                outcome["result"] = "expired"
                return None
            challenge = TwoFactorChallenge.from_record(current)
            if now >= challenge.expires_at or challenge.remaining_attempts <= 0:
                outcome["result"] = "expired"
                return None
            if hmac.compare_digest(challenge.code, str(code or "")):
                outcome["result"] = "accepted"
                return None
            challenge.remaining_attempts -= 1
            if challenge.remaining_attempts <= 0:
                outcome["result"] = "exhausted"
                return None
            outcome["result"] = "rejected"
            return challenge.to_record()

        self.store.update(self._key(identity_key), _attempt)
        result = outcome["result"]
        key = normalize_key(identity_key)
        if result == "accepted":
            self.logger.info("two_factor_accepted", identity_key=key)
            return True
        if result == "rejected":
            self.logger.info("two_factor_rejected", identity_key=key)
            return False
        if result == "exhausted":
            self.logger.warning("two_factor_exhausted", identity_key=key)
            raise ChallengeExhaustedError("too many incorrect codes")
        raise ChallengeExpiredError("verification code expired or already used")

    def discard(self, identity_key: str) -> None:
        self.store.delete(self._key(identity_key))
