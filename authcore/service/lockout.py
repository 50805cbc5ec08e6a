from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from authcore.logging import get_logger
from authcore.storage.common import Clock, KeyValueStore, Record, normalize_key
from authcore.storage.models import FailedAttemptRecord, utcnow


class LockoutGuard:
    """Failed-attempt counter with a sliding lockout window.

    A failure within ``window`` of the previous one increments the count; an
    older record restarts at 1. Once the count reaches ``max_attempts`` the
    identity is locked until ``window`` after the most recent failure.
    """

    KEY_PREFIX = "lockout:"

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_attempts: int = 5,
        window_minutes: int = 15,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)
        self._clock = clock
        self.logger = get_logger(__name__)

    def _key(self, identity_key: str) -> str:
        return f"{self.KEY_PREFIX}{normalize_key(identity_key)}"

    def _ttl_seconds(self) -> int:
        return int(self.window.total_seconds())

    def _load(self, identity_key: str) -> Optional[FailedAttemptRecord]:
        record = self.store.get(self._key(identity_key))
        return FailedAttemptRecord.from_record(record) if record else None

    def _locked_until(self, record: Optional[FailedAttemptRecord]) -> Optional[datetime]:
        if record is None or record.count < self.max_attempts:
            return None
        return record.last_attempt_at + self.window

    def is_locked(self, identity_key: str) -> bool:
        locked_until = self._locked_until(self._load(identity_key))
        return locked_until is not None and self._clock() < locked_until

    def retry_after(self, identity_key: str) -> int:
        """Whole seconds until the lock lifts, 0 when not locked."""
        locked_until = self._locked_until(self._load(identity_key))
        if locked_until is None:
            return 0
        remaining = (locked_until - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def record_failure(self, identity_key: str) -> FailedAttemptRecord:
        key = normalize_key(identity_key)
        now = self._clock()

        def _increment(current: Optional[Record]) -> Record:
            previous = FailedAttemptRecord.from_record(current) if current else None
            if previous is None or now - previous.last_attempt_at >= self.window:
                count = 1
            else:
                count = previous.count + 1
            return FailedAttemptRecord(identity_key=key, count=count, last_attempt_at=now).to_record()

        updated = FailedAttemptRecord.from_record(
            self.store.update(self._key(key), _increment, ttl_seconds=self._ttl_seconds())
        )
        if updated.count == self.max_attempts:
            self.logger.warning("lockout_triggered", identity_key=key, count=updated.count)
        return updated

    def record_success(self, identity_key: str) -> None:
        key = normalize_key(identity_key)
        now = self._clock()

        def _reset(current: Optional[Record]) -> Optional[Record]:
            if current is None:
                return None
            return FailedAttemptRecord(identity_key=key, count=0, last_attempt_at=now).to_record()

        self.store.update(self._key(key), _reset, ttl_seconds=self._ttl_seconds())
