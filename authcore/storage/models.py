from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Identity:
    id: str
    username: str
    display_name: str
    email: str
    role: str = "viewer"
    enabled: bool = True

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "enabled": self.enabled,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Identity":
        return cls(
            id=record["id"],
            username=record["username"],
            display_name=record.get("display_name") or record["username"],
            email=record["email"],
            role=record.get("role", "viewer"),
            enabled=bool(record.get("enabled", True)),
        )


@dataclass
class Credential:
    identity_id: str
    password_hash: str
    password_salt: str
    updated_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "password_hash": self.password_hash,
            "password_salt": self.password_salt,
            "updated_at": format_ts(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Credential":
        return cls(
            identity_id=record["identity_id"],
            password_hash=record["password_hash"],
            password_salt=record["password_salt"],
            updated_at=parse_ts(record["updated_at"]) if record.get("updated_at") else utcnow(),
        )


@dataclass(frozen=True)
class IdentitySnapshot:
    """Identity fields captured at session issuance."""

    id: str
    username: str
    display_name: str
    email: str
    role: str
    permissions: tuple = ()

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "permissions": list(self.permissions),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "IdentitySnapshot":
        return cls(
            id=record["id"],
            username=record["username"],
            display_name=record.get("display_name", ""),
            email=record.get("email", ""),
            role=record.get("role", ""),
            permissions=tuple(record.get("permissions") or ()),
        )


@dataclass
class Session:
    session_id: str
    identity: IdentitySnapshot
    issued_at: datetime
    expires_at: datetime
    renewable: bool
    last_activity_at: datetime
    idle_timeout_seconds: int
    last_renewed_at: Optional[datetime] = None
    integrity_tag: str = ""

    def signing_payload(self) -> Dict[str, Any]:
        """Fields covered by the integrity tag: everything except the tag itself."""
        return {
            "session_id": self.session_id,
            "identity": self.identity.to_record(),
            "issued_at": format_ts(self.issued_at),
            "expires_at": format_ts(self.expires_at),
            "renewable": self.renewable,
            "last_activity_at": format_ts(self.last_activity_at),
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "last_renewed_at": format_ts(self.last_renewed_at) if self.last_renewed_at else None,
        }

    def to_record(self) -> Dict[str, Any]:
        record = self.signing_payload()
        record["integrity_tag"] = self.integrity_tag
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Session":
        issued_at = parse_ts(record["issued_at"])
        return cls(
            session_id=record["session_id"],
            identity=IdentitySnapshot.from_record(record["identity"]),
            issued_at=issued_at,
            expires_at=parse_ts(record["expires_at"]),
            renewable=bool(record.get("renewable", False)),
            last_activity_at=parse_ts(record.get("last_activity_at") or issued_at),
            idle_timeout_seconds=int(record.get("idle_timeout_seconds") or 0),
            last_renewed_at=parse_ts(record["last_renewed_at"]) if record.get("last_renewed_at") else None,
            integrity_tag=record.get("integrity_tag", ""),
        )


@dataclass
class FailedAttemptRecord:
    identity_key: str
    count: int
    last_attempt_at: datetime

    def to_record(self) -> Dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "count": self.count,
            "last_attempt_at": format_ts(self.last_attempt_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FailedAttemptRecord":
        return cls(
            identity_key=record["identity_key"],
            count=int(record.get("count", 0)),
            last_attempt_at=parse_ts(record["last_attempt_at"]),
        )


@dataclass
class TwoFactorChallenge:
    identity_key: str
    code: str
    expires_at: datetime
    remaining_attempts: int = 3

    def to_record(self) -> Dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "code": self.code,
            "expires_at": format_ts(self.expires_at),
            "remaining_attempts": self.remaining_attempts,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TwoFactorChallenge":
        return cls(
            identity_key=record["identity_key"],
            code=record["code"],
            expires_at=parse_ts(record["expires_at"]),
            remaining_attempts=int(record.get("remaining_attempts", 0)),
        )


@dataclass
class RecoveryToken:
    token: str
    email: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "email": self.email,
            "expires_at": format_ts(self.expires_at),
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RecoveryToken":
        return cls(
            token=record["token"],
            email=record["email"],
            expires_at=parse_ts(record["expires_at"]),
            created_at=parse_ts(record["created_at"]),
        )


@dataclass
class PendingLogin:
    pending_id: str
    identity: IdentitySnapshot
    remember_me: bool
    expires_at: datetime

    def to_record(self) -> Dict[str, Any]:
        return {
            "pending_id": self.pending_id,
            "identity": self.identity.to_record(),
            "remember_me": self.remember_me,
            "expires_at": format_ts(self.expires_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PendingLogin":
        return cls(
            pending_id=record["pending_id"],
            identity=IdentitySnapshot.from_record(record["identity"]),
            remember_me=bool(record.get("remember_me", False)),
            expires_at=parse_ts(record["expires_at"]),
        )


__all__: List[str] = [
    "utcnow",
    "format_ts",
    "parse_ts",
    "Identity",
    "Credential",
    "IdentitySnapshot",
    "Session",
    "FailedAttemptRecord",
    "TwoFactorChallenge",
    "RecoveryToken",
    "PendingLogin",
]
