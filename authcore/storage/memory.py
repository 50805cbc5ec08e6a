from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.common import Clock, Record, Updater, normalize_key
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Credential, Identity, utcnow


class MemoryStore:
    """In-process store implementing both KeyValueStore and CredentialStore.

    Expiry is evaluated lazily against the injected clock so tests can move
    time forward without sleeping. Writes also purge every lapsed record once
    per PURGE_INTERVAL, so keys that are never read again do not accumulate.
    """

    PURGE_INTERVAL = timedelta(seconds=60)

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._next_purge_at = clock() + self.PURGE_INTERVAL
        self._records: Dict[str, Tuple[Record, Optional[datetime]]] = {}
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, Credential] = {}
        # RLock so update() callbacks may read through the store
        self._data_lock = threading.RLock()

    # -- key-value ---------------------------------------------------------

    def _live(self, key: str) -> Optional[Record]:
        entry = self._records.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._records[key]
            return None
        return value

    def _purge_expired_locked(self) -> None:
        """Drop every lapsed record, at most once per PURGE_INTERVAL of clock time."""
        now = self._clock()
        if now < self._next_purge_at:
            return
        self._next_purge_at = now + self.PURGE_INTERVAL
        lapsed = [
            key
            for key, (_, expires_at) in self._records.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in lapsed:
            del self._records[key]
        if lapsed:
            self.logger.debug("memory_store_purged", count=len(lapsed))

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        return self._clock() + timedelta(seconds=ttl_seconds)

    def get(self, key: str) -> Optional[Record]:
        with self._data_lock:
            value = self._live(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: Record, ttl_seconds: Optional[int] = None) -> None:
        with self._data_lock:
            self._purge_expired_locked()
            self._records[key] = (copy.deepcopy(value), self._expiry(ttl_seconds))

    def delete(self, key: str) -> bool:
        with self._data_lock:
            return self._records.pop(key, None) is not None

    def pop(self, key: str) -> Optional[Record]:
        with self._data_lock:
            value = self._live(key)
            self._records.pop(key, None)
            return value

    def update(
        self, key: str, fn: Updater, ttl_seconds: Optional[int] = None
    ) -> Optional[Record]:
        with self._data_lock:
            self._purge_expired_locked()
            current = self._live(key)
            updated = fn(copy.deepcopy(current) if current is not None else None)
            if updated is None:
                self._records.pop(key, None)
                return None
            if ttl_seconds is None and key in self._records:
                expires_at = self._records[key][1]
            else:
                expires_at = self._expiry(ttl_seconds)
            self._records[key] = (copy.deepcopy(updated), expires_at)
            return copy.deepcopy(updated)

    def scan(self, prefix: str) -> List[str]:
        with self._data_lock:
            return [key for key in list(self._records) if key.startswith(prefix) and self._live(key) is not None]

    # -- identities --------------------------------------------------------

    def create_identity(
        self, identity: Identity, credential: Optional[Credential] = None
    ) -> Identity:
        with self._data_lock:
            username = normalize_key(identity.username)
            email = normalize_key(identity.email)
            for existing in self.identities.values():
                if existing.id == identity.id:
                    continue
                if normalize_key(existing.username) == username:
                    raise ConstraintViolation("username exists", {"field": "username"})
                if normalize_key(existing.email) == email:
                    raise ConstraintViolation("email exists", {"field": "email"})
            self.identities[identity.id] = copy.deepcopy(identity)
            if credential is not None:
                self.credentials[identity.id] = copy.deepcopy(credential)
            self.logger.info("identity_saved", identity_id=identity.id, role=identity.role)
            return copy.deepcopy(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        needle = normalize_key(username)
        with self._data_lock:
            for identity in self.identities.values():
                if normalize_key(identity.username) == needle:
                    return copy.deepcopy(identity)
        return None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        needle = normalize_key(email)
        with self._data_lock:
            for identity in self.identities.values():
                if normalize_key(identity.email) == needle:
                    return copy.deepcopy(identity)
        return None

    def get_credential(self, identity_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(identity_id)
            return copy.deepcopy(credential) if credential else None

    def save_credential(self, credential: Credential) -> None:
        with self._data_lock:
            self.credentials[credential.identity_id] = copy.deepcopy(credential)

    def close(self) -> None:
        return None
