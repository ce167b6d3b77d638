"""Session store adapter.

The lifecycle engine talks to persistence only through :class:`SessionStore`.
Every write that depends on the current lifecycle state is conditional: it
names the statuses it expects and returns ``None`` when the row no longer
matches, which is how concurrent commands against one session are linearized.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from . import config
from .state_machine import SessionStatus
from .models import (
    QUEUE_STATUSES,
    ChargingSession,
    QueuedLedgerEvent,
    QueueStatus,
    ResumeToken,
)


class SessionStore(ABC):
    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_session(
        self, session: ChargingSession, token_hash: str, now: datetime
    ) -> ChargingSession:
        """Insert a session together with its first resume token."""

    @abstractmethod
    async def get_session(self, session_id: str, ev_id: str) -> Optional[ChargingSession]:
        ...

    @abstractmethod
    async def update_session_status(
        self, session_id: str, ev_id: str, expected: Iterable[str], new_status: str
    ) -> Optional[ChargingSession]:
        ...

    @abstractmethod
    async def terminate_session(
        self,
        session_id: str,
        ev_id: str,
        expected: Iterable[str],
        new_status: str,
        now: datetime,
    ) -> Optional[ChargingSession]:
        """Move to a terminal status and revoke every live token in one step."""

    @abstractmethod
    async def resume_session(
        self,
        session_id: str,
        ev_id: str,
        expected: Iterable[str],
        old_token_id: int,
        new_token_hash: str,
        token_expires_at: datetime,
        now: datetime,
    ) -> Optional[ChargingSession]:
        """Reactivate the session and rotate ``old_token_id`` in one step.

        Applies only if the session status is in ``expected`` and the old token
        is still unrevoked.
        """

    @abstractmethod
    async def get_active_token(self, session_id: str) -> Optional[ResumeToken]:
        ...

    @abstractmethod
    async def list_tokens(self, session_id: str) -> List[ResumeToken]:
        ...

    # ------------------------------------------------------------------
    # Ledger queue rows
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_queue_event(
        self,
        session_id: str,
        ev_id: str,
        event_type: str,
        payload: Dict[str, Any],
        now: datetime,
    ) -> QueuedLedgerEvent:
        ...

    @abstractmethod
    async def fetch_due_events(
        self, now: datetime, max_attempts: int, limit: int
    ) -> List[QueuedLedgerEvent]:
        """Oldest-first pending/failed rows whose retry time has come."""

    @abstractmethod
    async def mark_processing(self, queue_id: int) -> Optional[QueuedLedgerEvent]:
        """Claim a pending/failed row and count the attempt."""

    @abstractmethod
    async def mark_confirmed(
        self, queue_id: int, tx_id: str | None, event_key: str | None, now: datetime
    ) -> None:
        ...

    @abstractmethod
    async def mark_failed(
        self, queue_id: int, status: str, error: str, next_retry_at: datetime
    ) -> None:
        ...

    @abstractmethod
    async def reset_dead_events(self, session_id: str | None, now: datetime) -> int:
        ...

    @abstractmethod
    async def reset_stalled_events(self, now: datetime) -> int:
        ...

    @abstractmethod
    async def count_queue_events(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def list_queue_events(self, session_id: str) -> List[QueuedLedgerEvent]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...


class MemorySessionStore(SessionStore):
    """Process-local store for tests and ``STORE_BACKEND=memory``."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.sessions: Dict[str, ChargingSession] = {}
        self.tokens: Dict[int, ResumeToken] = {}
        self.queue: Dict[int, QueuedLedgerEvent] = {}
        self._token_ids = itertools.count(1)
        self._queue_ids = itertools.count(1)

    def _find(self, session_id: str, ev_id: str) -> Optional[ChargingSession]:
        session = self.sessions.get(session_id)
        if session is None or session.ev_id != ev_id:
            return None
        return session

    def _live_tokens(self, session_id: str) -> List[ResumeToken]:
        return [t for t in self.tokens.values() if t.session_id == session_id and t.live]

    def _add_token(self, session_id: str, token_hash: str, expires_at: datetime, now: datetime):
        token_id = next(self._token_ids)
        self.tokens[token_id] = ResumeToken(
            token_id=token_id,
            session_id=session_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now,
        )

    async def create_session(self, session, token_hash, now):
        async with self._lock:
            stored = replace(session)
            self.sessions[stored.session_id] = stored
            self._add_token(stored.session_id, token_hash, stored.expires_at, now)
            return replace(stored)

    async def get_session(self, session_id, ev_id):
        async with self._lock:
            session = self._find(session_id, ev_id)
            return replace(session) if session else None

    async def update_session_status(self, session_id, ev_id, expected, new_status):
        async with self._lock:
            session = self._find(session_id, ev_id)
            if session is None or session.status not in tuple(expected):
                return None
            session.status = new_status
            return replace(session)

    async def terminate_session(self, session_id, ev_id, expected, new_status, now):
        async with self._lock:
            session = self._find(session_id, ev_id)
            if session is None or session.status not in tuple(expected):
                return None
            session.status = new_status
            for token in self._live_tokens(session_id):
                token.revoked_at = now
            return replace(session)

    async def resume_session(
        self, session_id, ev_id, expected, old_token_id, new_token_hash, token_expires_at, now
    ):
        async with self._lock:
            session = self._find(session_id, ev_id)
            old = self.tokens.get(old_token_id)
            if session is None or session.status not in tuple(expected):
                return None
            if old is None or old.session_id != session_id or not old.live:
                return None
            session.status = SessionStatus.ACTIVE
            old.revoked_at = now
            self._add_token(session_id, new_token_hash, token_expires_at, now)
            return replace(session)

    async def get_active_token(self, session_id):
        async with self._lock:
            live = self._live_tokens(session_id)
            return replace(live[-1]) if live else None

    async def list_tokens(self, session_id):
        async with self._lock:
            return [replace(t) for t in self.tokens.values() if t.session_id == session_id]

    async def insert_queue_event(self, session_id, ev_id, event_type, payload, now):
        async with self._lock:
            queue_id = next(self._queue_ids)
            row = QueuedLedgerEvent(
                queue_id=queue_id,
                session_id=session_id,
                ev_id=ev_id,
                event_type=event_type,
                payload=dict(payload),
                created_at=now,
                next_retry_at=now,
            )
            self.queue[queue_id] = row
            return replace(row)

    async def fetch_due_events(self, now, max_attempts, limit):
        async with self._lock:
            due = [
                row
                for row in self.queue.values()
                if row.status in (QueueStatus.PENDING, QueueStatus.FAILED)
                and row.next_retry_at <= now
                and row.attempts < max_attempts
            ]
            due.sort(key=lambda row: (row.created_at, row.queue_id))
            return [replace(row) for row in due[:limit]]

    async def mark_processing(self, queue_id):
        async with self._lock:
            row = self.queue.get(queue_id)
            if row is None or row.status not in (QueueStatus.PENDING, QueueStatus.FAILED):
                return None
            row.status = QueueStatus.PROCESSING
            row.attempts += 1
            return replace(row)

    async def mark_confirmed(self, queue_id, tx_id, event_key, now):
        async with self._lock:
            row = self.queue[queue_id]
            row.status = QueueStatus.CONFIRMED
            row.tx_id = tx_id
            row.event_key = event_key
            row.confirmed_at = now
            row.last_error = None

    async def mark_failed(self, queue_id, status, error, next_retry_at):
        async with self._lock:
            row = self.queue[queue_id]
            row.status = status
            row.last_error = error
            row.next_retry_at = next_retry_at

    async def reset_dead_events(self, session_id, now):
        async with self._lock:
            count = 0
            for row in self.queue.values():
                if row.status != QueueStatus.DEAD:
                    continue
                if session_id and row.session_id != session_id:
                    continue
                row.status = QueueStatus.PENDING
                row.attempts = 0
                row.next_retry_at = now
                row.last_error = None
                count += 1
            return count

    async def reset_stalled_events(self, now):
        async with self._lock:
            count = 0
            for row in self.queue.values():
                if row.status == QueueStatus.PROCESSING:
                    row.status = QueueStatus.FAILED
                    row.next_retry_at = now
                    count += 1
            return count

    async def count_queue_events(self):
        async with self._lock:
            counts = {status: 0 for status in QUEUE_STATUSES}
            for row in self.queue.values():
                counts[row.status] += 1
            return counts

    async def list_queue_events(self, session_id):
        async with self._lock:
            rows = [replace(r) for r in self.queue.values() if r.session_id == session_id]
            return sorted(rows, key=lambda r: r.queue_id)

    async def ping(self):
        return True


class SessionCache:
    """TTL side-cache for session reads, keyed by ``session_id:ev_id``.

    Each key carries a generation that :meth:`invalidate` bumps. A reader
    captures the generation before going to the store and passes it to
    :meth:`put`; if a write invalidated the key in between, the row it read
    may predate that write and is not cached.
    """

    def __init__(self, ttl: float = config.CACHE_TTL_SEC, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, ChargingSession]] = {}
        # key -> (generation, invalidated_at)
        self._generations: Dict[str, Tuple[int, float]] = {}
        self._seq = itertools.count(1)

    @staticmethod
    def key(session_id: str, ev_id: str) -> str:
        return f"{session_id}:{ev_id}"

    def generation(self, session_id: str, ev_id: str) -> int:
        with self._lock:
            return self._generations.get(self.key(session_id, ev_id), (0, 0.0))[0]

    def get(self, session_id: str, ev_id: str) -> Optional[ChargingSession]:
        k = self.key(session_id, ev_id)
        with self._lock:
            entry = self._entries.get(k)
            if entry is None:
                return None
            cached_at, session = entry
            if self._clock() - cached_at >= self.ttl:
                del self._entries[k]
                return None
            return replace(session)

    def put(self, session: ChargingSession, generation: int | None = None) -> bool:
        """Cache ``session``; refused when ``generation`` is no longer current."""
        k = self.key(session.session_id, session.ev_id)
        with self._lock:
            if generation is not None and self._generations.get(k, (0, 0.0))[0] != generation:
                return False
            self._entries[k] = (self._clock(), replace(session))
            return True

    def invalidate(self, session_id: str, ev_id: str) -> None:
        k = self.key(session_id, ev_id)
        with self._lock:
            self._entries.pop(k, None)
            self._generations[k] = (next(self._seq), self._clock())

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl]
            for k in stale:
                del self._entries[k]
            # no read outlives the ttl, so old generations can no longer be compared against
            for k in [k for k, (_, ts) in self._generations.items() if now - ts >= self.ttl]:
                del self._generations[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CachedSessionStore(SessionStore):
    """Read-through cache in front of another store.

    Session writes invalidate the cached entry before returning, whether or
    not the conditional write matched.
    """

    def __init__(self, inner: SessionStore, cache: SessionCache | None = None):
        self.inner = inner
        self.cache = cache or SessionCache()

    async def create_session(self, session, token_hash, now):
        created = await self.inner.create_session(session, token_hash, now)
        self.cache.invalidate(created.session_id, created.ev_id)
        return created

    async def get_session(self, session_id, ev_id):
        cached = self.cache.get(session_id, ev_id)
        if cached is not None:
            return cached
        generation = self.cache.generation(session_id, ev_id)
        session = await self.inner.get_session(session_id, ev_id)
        if session is not None:
            self.cache.put(session, generation=generation)
        return session

    async def update_session_status(self, session_id, ev_id, expected, new_status):
        try:
            return await self.inner.update_session_status(session_id, ev_id, expected, new_status)
        finally:
            self.cache.invalidate(session_id, ev_id)

    async def terminate_session(self, session_id, ev_id, expected, new_status, now):
        try:
            return await self.inner.terminate_session(session_id, ev_id, expected, new_status, now)
        finally:
            self.cache.invalidate(session_id, ev_id)

    async def resume_session(
        self, session_id, ev_id, expected, old_token_id, new_token_hash, token_expires_at, now
    ):
        try:
            return await self.inner.resume_session(
                session_id, ev_id, expected, old_token_id, new_token_hash, token_expires_at, now
            )
        finally:
            self.cache.invalidate(session_id, ev_id)

    async def get_active_token(self, session_id):
        return await self.inner.get_active_token(session_id)

    async def list_tokens(self, session_id):
        return await self.inner.list_tokens(session_id)

    async def insert_queue_event(self, session_id, ev_id, event_type, payload, now):
        return await self.inner.insert_queue_event(session_id, ev_id, event_type, payload, now)

    async def fetch_due_events(self, now, max_attempts, limit):
        return await self.inner.fetch_due_events(now, max_attempts, limit)

    async def mark_processing(self, queue_id):
        return await self.inner.mark_processing(queue_id)

    async def mark_confirmed(self, queue_id, tx_id, event_key, now):
        await self.inner.mark_confirmed(queue_id, tx_id, event_key, now)

    async def mark_failed(self, queue_id, status, error, next_retry_at):
        await self.inner.mark_failed(queue_id, status, error, next_retry_at)

    async def reset_dead_events(self, session_id, now):
        return await self.inner.reset_dead_events(session_id, now)

    async def reset_stalled_events(self, now):
        return await self.inner.reset_stalled_events(now)

    async def count_queue_events(self):
        return await self.inner.count_queue_events()

    async def list_queue_events(self, session_id):
        return await self.inner.list_queue_events(session_id)

    async def ping(self):
        return await self.inner.ping()
