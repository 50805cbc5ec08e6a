from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from authcore.storage.models import Credential, Identity

Record = Dict[str, Any]
Clock = Callable[[], datetime]
Updater = Callable[[Optional[Record]], Optional[Record]]


class KeyValueStore(Protocol):
    """Generic JSON-record store used for sessions, counters and tokens.

    ``update`` runs ``fn`` against the current record as one atomic
    read-modify-write; ``fn`` returning ``None`` deletes the key. ``pop`` is an
    atomic get-and-delete.
    """

    def get(self, key: str) -> Optional[Record]:
        ...

    def put(self, key: str, value: Record, ttl_seconds: Optional[int] = None) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def pop(self, key: str) -> Optional[Record]:
        ...

    def update(
        self, key: str, fn: Updater, ttl_seconds: Optional[int] = None
    ) -> Optional[Record]:
        ...

    def scan(self, prefix: str) -> List[str]:
        ...


class CredentialStore(Protocol):
    """Identity and credential lookups. Username and email match case-insensitively."""

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        ...

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        ...

    def get_credential(self, identity_id: str) -> Optional[Credential]:
        ...

    def save_credential(self, credential: Credential) -> None:
        ...

    def create_identity(
        self, identity: Identity, credential: Optional[Credential] = None
    ) -> Identity:
        ...


def ttl_from(expires_at: datetime, now: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least one second."""
    return max(1, int((expires_at - now).total_seconds()))


def normalize_key(value: str) -> str:
    return value.strip().lower()


__all__ = [
    "Record",
    "Clock",
    "Updater",
    "KeyValueStore",
    "CredentialStore",
    "ttl_from",
    "normalize_key",
]
