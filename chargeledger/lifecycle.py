"""Charging session lifecycle.

    start ──> active ──pause──> disconnected ──resume──> active
                 │                   │
                 └──────stop─────────┴──> stopped
    any non-terminal state past expires_at ──(next command)──> expired

Each command validates its input, loads the session, applies lazy expiry,
checks the transition, then writes through a conditional store update. After
the write lands the transition is queued for the ledger and broadcast to
subscribers. The engine holds no lock of its own: two commands racing on one
session are settled by the store, and the loser gets ``PreconditionFailed``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from numbers import Real
from typing import Any, Callable, Dict

from . import config, tokens
from .errors import (
    InvalidResumeToken,
    InvalidSessionState,
    PreconditionFailed,
    SessionAlreadyActive,
    SessionExpired,
    SessionNotFound,
    SessionTerminal,
    StoreError,
    StoreUnavailable,
    ValidationFailed,
)
from .ledger_queue import LedgerQueue, QueueResult
from .models import ChargingSession, utc_now
from .notifier import Broadcaster
from .state_machine import (
    ACTIVE_STATES,
    NON_TERMINAL_STATES,
    RESUMABLE_STATES,
    EventType,
    SessionStatus,
    is_active,
    is_expired,
    is_resumable,
    is_terminal,
)
from .store import SessionStore


@dataclass
class CommandResult:
    session: ChargingSession
    queue: QueueResult
    resume_secret: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "ok": True,
            "session": self.session.snapshot(),
            # ledger confirmation is asynchronous; the tx id is not known yet
            "txId": "pending" if self.queue.queued else None,
            "eventKey": self.queue.event_key,
            "queueId": self.queue.queue_id,
            "queued": self.queue.queued,
        }
        if self.resume_secret is not None:
            body["resumeToken"] = self.resume_secret
        return body


def _require_str(value: Any, name: str) -> str:
    if not value or not isinstance(value, str):
        raise ValidationFailed(f"{name} is required")
    return value


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real) or value != value:
        raise ValidationFailed(f"{name} must be a number")
    return value


class SessionLifecycle:
    def __init__(
        self,
        store: SessionStore,
        queue: LedgerQueue,
        broadcaster: Broadcaster | None = None,
        default_hours: float = config.SESSION_HOURS,
        store_timeout: float = config.STORE_TIMEOUT_SEC,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.broadcaster = broadcaster
        self.default_hours = default_hours
        self.store_timeout = store_timeout
        self.clock = clock

    async def _store(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"Session store timed out after {self.store_timeout}s") from e
        except StoreError as e:
            raise StoreUnavailable(f"Session store error: {e}") from e

    def _emit(self, event_name: str, session: ChargingSession, queue: QueueResult, **extra) -> None:
        if self.broadcaster is None:
            return
        details = {
            "eventType": event_name,
            "sessionId": session.session_id,
            "evId": session.ev_id,
            "status": session.status,
            **extra,
            "queued": queue.queued,
            "queueId": queue.queue_id,
        }
        self.broadcaster.emit(event_name, details)

    async def _record(self, event_type: str, session: ChargingSession, payload: Dict[str, Any], **extra):
        queued = await self.queue.enqueue(session.session_id, session.ev_id, event_type, payload)
        self._emit(event_type, session, queued, **extra)
        return queued

    async def _load(self, ev_id: str, session_id: str) -> ChargingSession:
        session = await self._store(self.store.get_session(session_id, ev_id))
        if session is None:
            raise SessionNotFound()
        if is_terminal(session.status):
            raise SessionTerminal(session.status)
        if is_expired(session.expires_at, self.clock()):
            await self._expire(session)
        return session

    async def _expire(self, session: ChargingSession) -> None:
        """Apply the lazy ``expired`` transition, then report it to the caller."""
        expired = await self._store(
            self.store.terminate_session(
                session.session_id,
                session.ev_id,
                NON_TERMINAL_STATES,
                SessionStatus.EXPIRED,
                self.clock(),
            )
        )
        if expired is None:
            current = await self._store(self.store.get_session(session.session_id, session.ev_id))
            if current is not None and current.status == SessionStatus.EXPIRED:
                raise SessionExpired()
            raise PreconditionFailed("Session changed while expiring; retry the command")

        logging.info(f"[EXPIRE] {session.session_id} expired at {session.expires_at.isoformat()}")
        await self._record(EventType.SESSION_EXPIRED, expired, {"evId": expired.ev_id})
        raise SessionExpired()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self, ev_id: Any, power_required: Any, hours: Any = None) -> CommandResult:
        started = time.monotonic()
        ev_id = _require_str(ev_id, "evId")
        power_required = _require_number(power_required, "powerRequired")
        if hours is None:
            hours = self.default_hours
        hours = _require_number(hours, "hours")
        if hours < 0:
            raise ValidationFailed("hours must not be negative")

        now = self.clock()
        try:
            expires_at = now + timedelta(hours=hours)
        except OverflowError:
            raise ValidationFailed("hours is out of range") from None
        session = ChargingSession(
            session_id=str(uuid.uuid4()),
            ev_id=ev_id,
            power_required=power_required,
            status=SessionStatus.ACTIVE,
            expires_at=expires_at,
        )
        secret, token_hash = tokens.issue()
        created = await self._store(self.store.create_session(session, token_hash, now))

        expires_iso = created.snapshot()["expiresAt"]
        queued = await self._record(
            EventType.SESSION_STARTED,
            created,
            {
                "evId": ev_id,
                "powerRequired": power_required,
                "expiresAt": expires_iso,
                "tokenHash": token_hash,
            },
            powerRequired=power_required,
            expiresAt=expires_iso,
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        logging.info(f"[START] {created.session_id} completed in {duration_ms}ms (queued: {queued.queued})")
        return CommandResult(session=created, queue=queued, resume_secret=secret)

    async def pause(self, ev_id: Any, session_id: Any) -> CommandResult:
        ev_id = _require_str(ev_id, "evId")
        session_id = _require_str(session_id, "sessionId")
        session = await self._load(ev_id, session_id)
        if not is_active(session.status):
            raise InvalidSessionState(
                session.status, f"Session is {session.status} - already paused/disconnected"
            )

        updated = await self._store(
            self.store.update_session_status(
                session_id, ev_id, ACTIVE_STATES, SessionStatus.DISCONNECTED
            )
        )
        if updated is None:
            raise PreconditionFailed("Session is no longer active")

        queued = await self._record(EventType.SESSION_PAUSED, updated, {"evId": ev_id})
        logging.info(f"[PAUSE] {session_id} (queued: {queued.queued})")
        return CommandResult(session=updated, queue=queued)

    async def resume(self, ev_id: Any, session_id: Any, resume_secret: Any) -> CommandResult:
        ev_id = _require_str(ev_id, "evId")
        session_id = _require_str(session_id, "sessionId")
        resume_secret = _require_str(resume_secret, "resumeToken")
        session = await self._load(ev_id, session_id)
        if is_active(session.status):
            raise SessionAlreadyActive(session.status)
        if not is_resumable(session.status):
            raise InvalidSessionState(
                session.status, f'Session status "{session.status}" does not allow resumption'
            )

        token = await self._store(self.store.get_active_token(session_id))
        if token is None or not tokens.verify(resume_secret, token.token_hash):
            raise InvalidResumeToken()
        now = self.clock()
        if is_expired(token.expires_at, now):
            raise InvalidResumeToken()

        new_secret, new_hash = tokens.issue()
        updated = await self._store(
            self.store.resume_session(
                session_id,
                ev_id,
                RESUMABLE_STATES,
                token.token_id,
                new_hash,
                session.expires_at,
                now,
            )
        )
        if updated is None:
            raise PreconditionFailed("Session was resumed or changed concurrently")

        queued = await self._record(EventType.SESSION_RESUMED, updated, {"evId": ev_id})
        logging.info(f"[RESUME] {session_id} token rotated (queued: {queued.queued})")
        return CommandResult(session=updated, queue=queued, resume_secret=new_secret)

    async def stop(self, ev_id: Any, session_id: Any) -> CommandResult:
        ev_id = _require_str(ev_id, "evId")
        session_id = _require_str(session_id, "sessionId")
        await self._load(ev_id, session_id)

        updated = await self._store(
            self.store.terminate_session(
                session_id, ev_id, NON_TERMINAL_STATES, SessionStatus.STOPPED, self.clock()
            )
        )
        if updated is None:
            raise PreconditionFailed("Session was stopped or changed concurrently")

        queued = await self._record(
            EventType.SESSION_STOPPED, updated, {"evId": ev_id, "finalStatus": SessionStatus.STOPPED}
        )
        logging.info(f"[STOP] {session_id} (queued: {queued.queued})")
        return CommandResult(session=updated, queue=queued)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_session(self, ev_id: Any, session_id: Any) -> Dict[str, Any]:
        """Snapshot with the time left before expiry. Never changes state."""
        ev_id = _require_str(ev_id, "evId")
        session_id = _require_str(session_id, "sessionId")
        session = await self._store(self.store.get_session(session_id, ev_id))
        if session is None:
            raise SessionNotFound()
        snapshot = session.snapshot()
        if is_terminal(session.status):
            snapshot["remainingSecs"] = 0
        else:
            remaining = (session.expires_at - self.clock()).total_seconds()
            snapshot["remainingSecs"] = max(0, int(remaining))
        return snapshot
