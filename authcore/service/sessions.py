from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import secrets
import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.audit import AuditSink
from authcore.service.errors import SessionIntegrityError
from authcore.service.permissions import permissions_for_role
from authcore.storage.common import Clock, KeyValueStore, Record, ttl_from
from authcore.storage.models import Identity, IdentitySnapshot, Session, utcnow

ExpiryCallback = Callable[[Session, str], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class _UnscheduledHandle:
    def cancel(self) -> None:
        return None


class AsyncioScheduler:
    """Schedule idle timers on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop in this thread; expiry is still enforced by validate()
                return _UnscheduledHandle()
        return loop.call_later(max(0.0, delay), callback)


class SessionManager:
    """Issue, renew, validate and expire sessions.

    Sessions are persisted as signed records. The integrity tag is an
    HMAC-SHA256 over the canonical JSON of the identity snapshot and the
    expiry fields, so any edit to the stored record is detected by
    :meth:`validate`.

    Each session issued in this process owns one idle timer set for its
    ``expires_at``. When the timer fires, a session renewed in the meantime is
    rescheduled; otherwise its expiry callback runs. Activity and timer
    callbacks are serialized by ``_lock``.
    """

    KEY_PREFIX = "session:"
    INDEX_PREFIX = "session_index:"

    def __init__(
        self,
        store: KeyValueStore,
        *,
        signing_key: bytes,
        idle_timeout_minutes: int = 30,
        remember_me_days: int = 7,
        renew_threshold_minutes: int = 5,
        sweep_interval_seconds: int = 60,
        clock: Clock = utcnow,
        scheduler: Optional[Scheduler] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        if not signing_key:
            raise ValueError("signing_key is required")
        self.store = store
        self._signing_key = signing_key
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self.remember_me_lifetime = timedelta(days=remember_me_days)
        self.renew_threshold = timedelta(minutes=renew_threshold_minutes)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.audit = audit
        self.logger = get_logger(__name__)
        self._lock = threading.RLock()
        self._active: Dict[str, Tuple[Session, Optional[ExpiryCallback]]] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._sweeper_running = False
        self._sweeper_task: Optional[asyncio.Task] = None

    # -- integrity ---------------------------------------------------------

    def sign(self, session: Session) -> str:
        canonical = json.dumps(session.signing_payload(), sort_keys=True, separators=(",", ":"))
        return hmac.new(self._signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()

    def _has_valid_tag(self, session: Session) -> bool:
        return bool(session.integrity_tag) and hmac.compare_digest(
            session.integrity_tag, self.sign(session)
        )

    # -- persistence -------------------------------------------------------

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    def _persist(self, session: Session) -> None:
        self.store.put(
            self._key(session.session_id),
            session.to_record(),
            ttl_seconds=ttl_from(session.expires_at, self._clock()),
        )

    def _index_add(self, identity_id: str, session_id: str) -> None:
        def _add(current: Optional[Record]) -> Record:
            ids = list((current or {}).get("session_ids", []))
            if session_id not in ids:
                ids.append(session_id)
            return {"identity_id": identity_id, "session_ids": ids}

        self.store.update(f"{self.INDEX_PREFIX}{identity_id}", _add)

    def _index_remove(self, identity_id: str, session_id: str) -> None:
        def _remove(current: Optional[Record]) -> Optional[Record]:
            if current is None:
                return None
            ids = [sid for sid in current.get("session_ids", []) if sid != session_id]
            if not ids:
                return None
            return {"identity_id": identity_id, "session_ids": ids}

        self.store.update(f"{self.INDEX_PREFIX}{identity_id}", _remove)

    def load(self, session_id: str) -> Optional[Session]:
        """Read the persisted session record, or None when absent or expired."""
        record = self.store.get(self._key(session_id))
        if record is None:
            return None
        try:
            return Session.from_record(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionIntegrityError(
                "malformed session record", detail={"session_id": session_id}
            ) from exc

    # -- lifecycle ---------------------------------------------------------

    def issue(
        self,
        identity: Identity,
        remember_me: bool = False,
        *,
        on_expire: Optional[ExpiryCallback] = None,
    ) -> Session:
        now = self._clock()
        snapshot = IdentitySnapshot(
            id=identity.id,
            username=identity.username,
            display_name=identity.display_name,
            email=identity.email,
            role=identity.role,
            permissions=permissions_for_role(identity.role),
        )
        if remember_me:
            expires_at = now + self.remember_me_lifetime
            idle_seconds = 0
        else:
            expires_at = now + self.idle_timeout
            idle_seconds = int(self.idle_timeout.total_seconds())
        session = Session(
            session_id=secrets.token_urlsafe(32),
            identity=snapshot,
            issued_at=now,
            expires_at=expires_at,
            renewable=not remember_me,
            last_activity_at=now,
            idle_timeout_seconds=idle_seconds,
        )
        session.integrity_tag = self.sign(session)
        self._persist(session)
        self._index_add(identity.id, session.session_id)
        self.attach(session, on_expire)
        self.logger.info(
            "session_issued",
            session_id=session.session_id,
            identity_id=identity.id,
            renewable=session.renewable,
            expires_at=session.expires_at.isoformat(),
        )
        if self.audit:
            self.audit.emit(
                "session_issued",
                identity_id=identity.id,
                session_id=session.session_id,
                remember_me=remember_me,
            )
        return session

    def attach(self, session: Session, on_expire: Optional[ExpiryCallback] = None) -> None:
        """Track ``session`` in this process and arm its idle timer."""
        with self._lock:
            self._active[session.session_id] = (session, on_expire)
            self._schedule_locked(session)

    def validate(self, session: Session) -> bool:
        """True iff the session is unexpired and its integrity tag matches."""
        if self._clock() >= session.expires_at:
            return False
        return self._has_valid_tag(session)

    def check(self, session: Session) -> bool:
        """Validate the persisted copy of ``session`` and refresh the local one.

        Returns False when the record is gone or expired. Raises
        SessionIntegrityError when the persisted record or the local copy has
        been altered.
        """
        if not self._has_valid_tag(session):
            raise SessionIntegrityError(
                "session integrity check failed", detail={"session_id": session.session_id}
            )
        persisted = self.load(session.session_id)
        if persisted is None:
            return False
        if not self._has_valid_tag(persisted) or persisted.identity != session.identity:
            raise SessionIntegrityError(
                "session integrity check failed", detail={"session_id": session.session_id}
            )
        with self._lock:
            if persisted.expires_at > session.expires_at:
                self._adopt_locked(session, persisted)
        return self.validate(session)

    def _adopt_locked(self, target: Session, source: Session) -> None:
        # source carries a verified tag; the merged copy is re-signed
        target.expires_at = source.expires_at
        target.last_renewed_at = source.last_renewed_at
        target.last_activity_at = max(target.last_activity_at, source.last_activity_at)
        target.integrity_tag = self.sign(target)

    def touch(self, session: Session) -> bool:
        """Record activity. Touching an expired session is a no-op returning False."""
        with self._lock:
            if self._clock() >= session.expires_at:
                return False
            if not self._has_valid_tag(session):
                raise SessionIntegrityError(
                    "session integrity check failed", detail={"session_id": session.session_id}
                )
            session.last_activity_at = self._clock()
            session.integrity_tag = self.sign(session)
            self.renew_if_needed(session)
            self._persist(session)
            return True

    def renew_if_needed(self, session: Session) -> bool:
        """Slide the expiry of a renewable session close to its end.

        Renews only when less than the threshold remains and the session saw
        activity since its last extension; the new expiry is
        ``last_activity_at + idle_timeout``.
        """
        with self._lock:
            if not session.renewable or not self.validate(session):
                return False
            remaining = session.expires_at - self._clock()
            if remaining >= self.renew_threshold:
                return False
            return self._extend_locked(session)

    def _extend_locked(self, session: Session) -> bool:
        extended_from = session.last_renewed_at or session.issued_at
        if session.last_activity_at <= extended_from:
            return False
        idle = timedelta(seconds=session.idle_timeout_seconds) if session.idle_timeout_seconds else self.idle_timeout
        new_expiry = session.last_activity_at + idle
        if new_expiry <= session.expires_at:
            return False
        session.expires_at = new_expiry
        session.last_renewed_at = self._clock()
        session.integrity_tag = self.sign(session)
        self._persist(session)
        if session.session_id in self._active:
            self._schedule_locked(session)
        self.logger.info(
            "session_renewed",
            session_id=session.session_id,
            expires_at=new_expiry.isoformat(),
        )
        if self.audit:
            self.audit.emit(
                "session_renewed",
                identity_id=session.identity.id,
                session_id=session.session_id,
            )
        return True

    def expire(self, session: Session, reason: str = "logout") -> None:
        """Delete the session record and dispose of its timer. Idempotent."""
        with self._lock:
            self._cancel_timer_locked(session.session_id)
            self._active.pop(session.session_id, None)
        removed = self.store.delete(self._key(session.session_id))
        self._index_remove(session.identity.id, session.session_id)
        if removed:
            self.logger.info("session_expired", session_id=session.session_id, reason=reason)

    def revoke_identity(self, identity_id: str, reason: str = "revoked") -> int:
        """Expire every session of an identity; returns the number revoked."""
        index = self.store.get(f"{self.INDEX_PREFIX}{identity_id}") or {}
        revoked = 0
        for session_id in list(index.get("session_ids", [])):
            with self._lock:
                active = self._active.get(session_id)
            if active is not None:
                session, callback = active
                self.expire(session, reason)
                if callback:
                    callback(session, reason)
            elif self.store.delete(self._key(session_id)):
                self.logger.info("session_expired", session_id=session_id, reason=reason)
            revoked += 1
        self.store.delete(f"{self.INDEX_PREFIX}{identity_id}")
        return revoked

    # -- idle timers -------------------------------------------------------

    def _schedule_locked(self, session: Session) -> None:
        self._cancel_timer_locked(session.session_id)
        delay = (session.expires_at - self._clock()).total_seconds()
        session_id = session.session_id
        self._timers[session_id] = self.scheduler.call_later(
            delay, lambda: self._on_timer(session_id)
        )

    def _cancel_timer_locked(self, session_id: str) -> None:
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timer(self, session_id: str) -> None:
        with self._lock:
            self._timers.pop(session_id, None)
            active = self._active.get(session_id)
            if active is None:
                return
            session, callback = active
            if self._clock() < session.expires_at:
                self._schedule_locked(session)
                return
            if session.renewable and self._extend_at_expiry_locked(session):
                return
        self.logger.info("session_idle_timeout", session_id=session_id)
        if callback:
            callback(session, "idle_timeout")
        else:
            self.expire(session, "idle_timeout")

    def _extend_at_expiry_locked(self, session: Session) -> bool:
        # Activity recorded before the threshold window still counts when the timer fires
        if not self._has_valid_tag(session):
            return False
        idle = timedelta(seconds=session.idle_timeout_seconds or int(self.idle_timeout.total_seconds()))
        if session.last_activity_at + idle <= self._clock():
            return False
        return self._extend_locked(session)

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    # -- sweep -------------------------------------------------------------

    def sweep(self) -> List[str]:
        """Renew persisted sessions nearing expiry that saw activity.

        Returns the ids of renewed sessions.
        """
        renewed: List[str] = []
        for key in self.store.scan(self.KEY_PREFIX):
            session_id = key[len(self.KEY_PREFIX):]
            with self._lock:
                active = self._active.get(session_id)
            if active is not None:
                session = active[0]
            else:
                try:
                    session = self.load(session_id)
                except SessionIntegrityError:
                    self.logger.warning("session_sweep_malformed", session_id=session_id)
                    continue
                if session is None:
                    continue
                if not self._has_valid_tag(session):
                    self.logger.warning("session_sweep_tampered", session_id=session_id)
                    continue
            if self.renew_if_needed(session):
                renewed.append(session_id)
        if renewed:
            self.logger.info("session_sweep_renewed", count=len(renewed))
        return renewed

    async def start_sweeper(self) -> None:
        """Start the periodic renewal sweep."""
        if self._sweeper_running:
            self.logger.warning("session_sweeper_already_running")
            return
        self._sweeper_running = True
        self._sweeper_task = asyncio.create_task(self._run_sweeper())
        self.logger.info("session_sweeper_started", interval=self.sweep_interval_seconds)

    async def stop_sweeper(self) -> None:
        self._sweeper_running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        self.logger.info("session_sweeper_stopped")

    async def _run_sweeper(self) -> None:
        consecutive_errors = 0
        while self._sweeper_running:
            try:
                await asyncio.to_thread(self.sweep)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                self.logger.error(
                    "session_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(300, self.sweep_interval_seconds * (2 ** (consecutive_errors - 3)))
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.sweep_interval_seconds)

    def shutdown(self) -> None:
        """Cancel every idle timer owned by this process."""
        with self._lock:
            for session_id in list(self._timers):
                self._cancel_timer_locked(session_id)
            self._active.clear()
