from __future__ import annotations

import json
from typing import List, Optional

from redis import Redis
from redis.exceptions import RedisError, WatchError

from authcore.logging import get_logger
from authcore.storage.common import Record, Updater, normalize_key
from authcore.storage.errors import ConstraintViolation, StoreError
from authcore.storage.models import Credential, Identity

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed KeyValueStore and CredentialStore.

    Values are JSON strings. ``update`` is an optimistic WATCH/MULTI
    transaction retried on contention; ``pop`` uses GETDEL so two concurrent
    redemptions of the same key cannot both succeed.
    """

    MAX_TRANSACTION_RETRIES = 10
    _RECORD_PREFIX = "authcore:kv:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        socket_timeout: float = 5.0,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StoreError("redis unavailable", {"error": str(exc)}) from exc

    def _key(self, key: str) -> str:
        return f"{self._RECORD_PREFIX}{key}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Record]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("redis_record_corrupt")
            return None
        return data if isinstance(data, dict) else None

    # -- key-value ---------------------------------------------------------

    def get(self, key: str) -> Optional[Record]:
        try:
            return self._decode(self.client.get(self._key(key)))
        except RedisError as exc:
            raise StoreError("redis get failed", {"key": key}) from exc

    def put(self, key: str, value: Record, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(self._key(key), json.dumps(value), ex=ttl_seconds)
        except RedisError as exc:
            raise StoreError("redis set failed", {"key": key}) from exc

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(self._key(key)))
        except RedisError as exc:
            raise StoreError("redis delete failed", {"key": key}) from exc

    def pop(self, key: str) -> Optional[Record]:
        try:
            return self._decode(self.client.getdel(self._key(key)))
        except RedisError as exc:
            raise StoreError("redis getdel failed", {"key": key}) from exc

    def update(
        self, key: str, fn: Updater, ttl_seconds: Optional[int] = None
    ) -> Optional[Record]:
        full_key = self._key(key)
        pipe = self.client.pipeline()
        try:
            for _ in range(self.MAX_TRANSACTION_RETRIES):
                try:
                    pipe.watch(full_key)
                    current = self._decode(pipe.get(full_key))
                    updated = fn(current)
                    pipe.multi()
                    if updated is None:
                        pipe.delete(full_key)
                    elif ttl_seconds is not None:
                        pipe.set(full_key, json.dumps(updated), ex=ttl_seconds)
                    else:
                        pipe.set(full_key, json.dumps(updated), keepttl=True)
                    pipe.execute()
                    return updated
                except WatchError:
                    logger.debug("redis_update_retry", key=key)
                    continue
        except RedisError as exc:
            raise StoreError("redis update failed", {"key": key}) from exc
        finally:
            pipe.reset()
        raise StoreError("redis update contention", {"key": key})

    def scan(self, prefix: str) -> List[str]:
        strip = len(self._RECORD_PREFIX)
        try:
            return [
                raw_key[strip:]
                for raw_key in self.client.scan_iter(match=f"{self._key(prefix)}*")
            ]
        except RedisError as exc:
            raise StoreError("redis scan failed", {"prefix": prefix}) from exc

    # -- identities --------------------------------------------------------

    def create_identity(
        self, identity: Identity, credential: Optional[Credential] = None
    ) -> Identity:
        username_key = f"authcore:identity_username:{normalize_key(identity.username)}"
        email_key = f"authcore:identity_email:{normalize_key(identity.email)}"
        claimed: List[str] = []
        try:
            # SET NX claims each index key atomically; the loser of a race sees the owner
            for index_key, field_name in ((username_key, "username"), (email_key, "email")):
                if self.client.set(index_key, identity.id, nx=True):
                    claimed.append(index_key)
                    continue
                owner = self.client.get(index_key)
                if owner is not None and owner != identity.id:
                    if claimed:
                        self.client.delete(*claimed)
                    raise ConstraintViolation(f"{field_name} exists", {"field": field_name})
            pipe = self.client.pipeline()
            pipe.set(f"authcore:identity:{identity.id}", json.dumps(identity.to_record()))
            if credential is not None:
                pipe.set(
                    f"authcore:credential:{identity.id}",
                    json.dumps(credential.to_record()),
                )
            pipe.execute()
        except RedisError as exc:
            raise StoreError("redis identity write failed", {"identity_id": identity.id}) from exc
        logger.info("identity_saved", identity_id=identity.id, role=identity.role)
        return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        try:
            record = self._decode(self.client.get(f"authcore:identity:{identity_id}"))
        except RedisError as exc:
            raise StoreError("redis identity read failed", {"identity_id": identity_id}) from exc
        return Identity.from_record(record) if record else None

    def _identity_via_index(self, index_key: str) -> Optional[Identity]:
        try:
            identity_id = self.client.get(index_key)
        except RedisError as exc:
            raise StoreError("redis identity lookup failed") from exc
        return self.get_identity(identity_id) if identity_id else None

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        return self._identity_via_index(
            f"authcore:identity_username:{normalize_key(username)}"
        )

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._identity_via_index(f"authcore:identity_email:{normalize_key(email)}")

    def get_credential(self, identity_id: str) -> Optional[Credential]:
        try:
            record = self._decode(self.client.get(f"authcore:credential:{identity_id}"))
        except RedisError as exc:
            raise StoreError("redis credential read failed", {"identity_id": identity_id}) from exc
        return Credential.from_record(record) if record else None

    def save_credential(self, credential: Credential) -> None:
        try:
            self.client.set(
                f"authcore:credential:{credential.identity_id}",
                json.dumps(credential.to_record()),
            )
        except RedisError as exc:
            raise StoreError(
                "redis credential write failed", {"identity_id": credential.identity_id}
            ) from exc

    def close(self) -> None:
        self.client.close()
