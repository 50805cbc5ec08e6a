from __future__ import annotations

import asyncio
import secrets
import time
from typing import Awaitable, Callable, Optional

from authcore.logging import get_logger
from authcore.service.hashing import PasswordHasher
from authcore.storage.common import CredentialStore
from authcore.storage.models import Identity

VerifiedIdentity = Identity

_rng = secrets.SystemRandom()


class CredentialValidator:
    """Verify a username/password pair in constant observable time.

    An unknown or disabled identity still pays for one hash computation, and
    every call is padded to ``min_delay_seconds`` plus up to
    ``jitter_seconds`` of random delay, so neither timing nor result reveals
    whether the username exists.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        *,
        min_delay_seconds: float = 1.0,
        jitter_seconds: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.min_delay_seconds = min_delay_seconds
        self.jitter_seconds = jitter_seconds
        self._sleep = sleep
        self._monotonic = monotonic
        self._dummy_salt = hasher.generate_salt()
        self._dummy_hash = hasher.hash(secrets.token_urlsafe(16), self._dummy_salt)
        self.logger = get_logger(__name__)

    async def verify(self, identity_key: str, plaintext: str) -> Optional[VerifiedIdentity]:
        started = self._monotonic()
        try:
            return await asyncio.to_thread(self._verify_sync, identity_key, plaintext)
        finally:
            await self.pad(started)

    def _verify_sync(self, identity_key: str, plaintext: str) -> Optional[VerifiedIdentity]:
        identity = self.store.get_identity_by_username(identity_key)
        credential = self.store.get_credential(identity.id) if identity else None
        if identity is None or not identity.enabled or credential is None:
            self.hasher.verify(plaintext, self._dummy_hash, self._dummy_salt)
            return None
        if not self.hasher.verify(plaintext, credential.password_hash, credential.password_salt):
            return None
        return identity

    def started(self) -> float:
        return self._monotonic()

    async def pad(self, started: float) -> None:
        """Sleep until ``started`` is at least the minimum delay plus jitter in the past."""
        target = self.min_delay_seconds
        if self.jitter_seconds > 0:
            target += _rng.uniform(0, self.jitter_seconds)
        remaining = target - (self._monotonic() - started)
        if remaining > 0:
            await self._sleep(remaining)
