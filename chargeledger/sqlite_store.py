"""SQLite implementation of the session store.

Each store operation runs as one transaction on a worker thread, so the
conditional writes (``UPDATE ... WHERE status IN (...)``) and the token
rotation that goes with them either all land or none do.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import config
from .errors import StoreError
from .models import (
    QUEUE_STATUSES,
    ChargingSession,
    QueuedLedgerEvent,
    QueueStatus,
    ResumeToken,
    iso,
    parse_ts,
)
from .state_machine import SessionStatus
from .store import SessionStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS charging_sessions (
    session_id TEXT PRIMARY KEY,
    ev_id TEXT NOT NULL,
    power_required REAL NOT NULL,
    power_consumed REAL NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_resume_tokens (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES charging_sessions(session_id),
    token_hash TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    revoked_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    ev_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    tx_id TEXT,
    event_key TEXT,
    last_error TEXT,
    confirmed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tokens_session ON session_resume_tokens(session_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_tokens_one_live
    ON session_resume_tokens(session_id) WHERE revoked_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_queue_due ON ledger_queue(status, next_retry_at);
CREATE INDEX IF NOT EXISTS idx_queue_session ON ledger_queue(session_id);
"""

SESSION_COLUMNS = "session_id, ev_id, power_required, power_consumed, cost, status, expires_at"


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


class SqliteSessionStore(SessionStore):
    def __init__(self, db_path: str = config.DB_PATH, timeout: float = config.STORE_TIMEOUT_SEC):
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path, timeout=timeout, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._local = threading.local()
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _tx(self):
        abandoned = getattr(self._local, "abandoned", None)
        with self._lock:
            try:
                if abandoned is not None and abandoned.is_set():
                    raise StoreError("store call abandoned before it started")
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                    if abandoned is not None and abandoned.is_set():
                        raise StoreError("store call abandoned; transaction rolled back")
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    def _call(self, abandoned: threading.Event, fn, args):
        self._local.abandoned = abandoned
        try:
            return fn(*args)
        finally:
            self._local.abandoned = None

    async def _run(self, fn, *args):
        """Run ``fn`` in a worker thread as one transaction.

        If the caller is cancelled (a store timeout), the transaction is told
        to roll back and the caller waits for the worker to finish, so a
        reported failure never leaves a committed write behind. When the
        worker had already committed, its result is returned instead.
        """
        abandoned = threading.Event()
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(None, functools.partial(self._call, abandoned, fn, args))
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            abandoned.set()
            try:
                return await fut
            except StoreError as e:
                logging.warning(f"Abandoned store call rolled back: {e}")
            raise

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _session(row) -> ChargingSession:
        return ChargingSession(
            session_id=row["session_id"],
            ev_id=row["ev_id"],
            power_required=row["power_required"],
            power_consumed=row["power_consumed"],
            cost=row["cost"],
            status=row["status"],
            expires_at=parse_ts(row["expires_at"]),
        )

    @staticmethod
    def _token(row) -> ResumeToken:
        return ResumeToken(
            token_id=row["id"],
            session_id=row["session_id"],
            token_hash=row["token_hash"],
            expires_at=parse_ts(row["expires_at"]),
            created_at=parse_ts(row["created_at"]),
            revoked_at=parse_ts(row["revoked_at"]) if row["revoked_at"] else None,
        )

    @staticmethod
    def _queue_row(row) -> QueuedLedgerEvent:
        return QueuedLedgerEvent(
            queue_id=row["id"],
            session_id=row["session_id"],
            ev_id=row["ev_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"]),
            status=row["status"],
            attempts=row["attempts"],
            next_retry_at=parse_ts(row["next_retry_at"]),
            created_at=parse_ts(row["created_at"]),
            tx_id=row["tx_id"],
            event_key=row["event_key"],
            last_error=row["last_error"],
            confirmed_at=parse_ts(row["confirmed_at"]) if row["confirmed_at"] else None,
        )

    def _select_session(self, conn, session_id: str, ev_id: str) -> Optional[ChargingSession]:
        row = conn.execute(
            f"SELECT {SESSION_COLUMNS} FROM charging_sessions WHERE session_id = ? AND ev_id = ?",
            (session_id, ev_id),
        ).fetchone()
        return self._session(row) if row else None

    def _set_status(self, conn, session_id, ev_id, expected, new_status) -> bool:
        expected = tuple(expected)
        cur = conn.execute(
            f"UPDATE charging_sessions SET status = ? WHERE session_id = ? AND ev_id = ? "
            f"AND status IN ({_placeholders(expected)})",
            (new_status, session_id, ev_id, *expected),
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    def _create_session(self, session: ChargingSession, token_hash: str, now: datetime):
        with self._tx() as conn:
            conn.execute(
                f"INSERT INTO charging_sessions ({SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session.session_id,
                    session.ev_id,
                    session.power_required,
                    session.power_consumed,
                    session.cost,
                    session.status,
                    iso(session.expires_at),
                ),
            )
            conn.execute(
                "INSERT INTO session_resume_tokens (session_id, token_hash, expires_at, created_at) "
                "VALUES (?, ?, ?, ?)",
                (session.session_id, token_hash, iso(session.expires_at), iso(now)),
            )
            return self._select_session(conn, session.session_id, session.ev_id)

    async def create_session(self, session, token_hash, now):
        return await self._run(self._create_session, session, token_hash, now)

    def _get_session(self, session_id, ev_id):
        with self._tx() as conn:
            return self._select_session(conn, session_id, ev_id)

    async def get_session(self, session_id, ev_id):
        return await self._run(self._get_session, session_id, ev_id)

    def _update_session_status(self, session_id, ev_id, expected, new_status):
        with self._tx() as conn:
            if not self._set_status(conn, session_id, ev_id, expected, new_status):
                return None
            return self._select_session(conn, session_id, ev_id)

    async def update_session_status(self, session_id, ev_id, expected, new_status):
        return await self._run(self._update_session_status, session_id, ev_id, tuple(expected), new_status)

    def _terminate_session(self, session_id, ev_id, expected, new_status, now):
        with self._tx() as conn:
            if not self._set_status(conn, session_id, ev_id, expected, new_status):
                return None
            conn.execute(
                "UPDATE session_resume_tokens SET revoked_at = ? "
                "WHERE session_id = ? AND revoked_at IS NULL",
                (iso(now), session_id),
            )
            return self._select_session(conn, session_id, ev_id)

    async def terminate_session(self, session_id, ev_id, expected, new_status, now):
        return await self._run(
            self._terminate_session, session_id, ev_id, tuple(expected), new_status, now
        )

    def _resume_session(
        self, session_id, ev_id, expected, old_token_id, new_token_hash, token_expires_at, now
    ):
        with self._tx() as conn:
            live = conn.execute(
                "SELECT id FROM session_resume_tokens "
                "WHERE id = ? AND session_id = ? AND revoked_at IS NULL",
                (old_token_id, session_id),
            ).fetchone()
            if live is None:
                return None
            if not self._set_status(conn, session_id, ev_id, expected, SessionStatus.ACTIVE):
                return None
            conn.execute(
                "UPDATE session_resume_tokens SET revoked_at = ? WHERE id = ?",
                (iso(now), old_token_id),
            )
            conn.execute(
                "INSERT INTO session_resume_tokens (session_id, token_hash, expires_at, created_at) "
                "VALUES (?, ?, ?, ?)",
                (session_id, new_token_hash, iso(token_expires_at), iso(now)),
            )
            return self._select_session(conn, session_id, ev_id)

    async def resume_session(
        self, session_id, ev_id, expected, old_token_id, new_token_hash, token_expires_at, now
    ):
        return await self._run(
            self._resume_session,
            session_id,
            ev_id,
            tuple(expected),
            old_token_id,
            new_token_hash,
            token_expires_at,
            now,
        )

    def _get_active_token(self, session_id):
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM session_resume_tokens WHERE session_id = ? AND revoked_at IS NULL "
                "ORDER BY id DESC LIMIT 1",
                (session_id,),
            ).fetchone()
            return self._token(row) if row else None

    async def get_active_token(self, session_id):
        return await self._run(self._get_active_token, session_id)

    def _list_tokens(self, session_id):
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM session_resume_tokens WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
            return [self._token(r) for r in rows]

    async def list_tokens(self, session_id):
        return await self._run(self._list_tokens, session_id)

    # ------------------------------------------------------------------
    # Ledger queue rows
    # ------------------------------------------------------------------

    def _insert_queue_event(self, session_id, ev_id, event_type, payload, now):
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO ledger_queue (session_id, ev_id, event_type, payload, status, attempts, "
                "next_retry_at, created_at) VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
                (
                    session_id,
                    ev_id,
                    event_type,
                    json.dumps(payload, sort_keys=True),
                    QueueStatus.PENDING,
                    iso(now),
                    iso(now),
                ),
            )
            row = conn.execute("SELECT * FROM ledger_queue WHERE id = ?", (cur.lastrowid,)).fetchone()
            return self._queue_row(row)

    async def insert_queue_event(self, session_id, ev_id, event_type, payload, now):
        return await self._run(self._insert_queue_event, session_id, ev_id, event_type, payload, now)

    def _fetch_due_events(self, now, max_attempts, limit):
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_queue WHERE status IN (?, ?) AND next_retry_at <= ? "
                "AND attempts < ? ORDER BY created_at ASC, id ASC LIMIT ?",
                (QueueStatus.PENDING, QueueStatus.FAILED, iso(now), max_attempts, limit),
            ).fetchall()
            return [self._queue_row(r) for r in rows]

    async def fetch_due_events(self, now, max_attempts, limit):
        return await self._run(self._fetch_due_events, now, max_attempts, limit)

    def _mark_processing(self, queue_id):
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE ledger_queue SET status = ?, attempts = attempts + 1 "
                "WHERE id = ? AND status IN (?, ?)",
                (QueueStatus.PROCESSING, queue_id, QueueStatus.PENDING, QueueStatus.FAILED),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM ledger_queue WHERE id = ?", (queue_id,)).fetchone()
            return self._queue_row(row)

    async def mark_processing(self, queue_id):
        return await self._run(self._mark_processing, queue_id)

    def _mark_confirmed(self, queue_id, tx_id, event_key, now):
        with self._tx() as conn:
            conn.execute(
                "UPDATE ledger_queue SET status = ?, tx_id = ?, event_key = ?, confirmed_at = ?, "
                "last_error = NULL WHERE id = ?",
                (QueueStatus.CONFIRMED, tx_id, event_key, iso(now), queue_id),
            )

    async def mark_confirmed(self, queue_id, tx_id, event_key, now):
        await self._run(self._mark_confirmed, queue_id, tx_id, event_key, now)

    def _mark_failed(self, queue_id, status, error, next_retry_at):
        with self._tx() as conn:
            conn.execute(
                "UPDATE ledger_queue SET status = ?, last_error = ?, next_retry_at = ? WHERE id = ?",
                (status, error, iso(next_retry_at), queue_id),
            )

    async def mark_failed(self, queue_id, status, error, next_retry_at):
        await self._run(self._mark_failed, queue_id, status, error, next_retry_at)

    def _reset_dead_events(self, session_id, now):
        sql = (
            "UPDATE ledger_queue SET status = ?, attempts = 0, next_retry_at = ?, last_error = NULL "
            "WHERE status = ?"
        )
        params: List[Any] = [QueueStatus.PENDING, iso(now), QueueStatus.DEAD]
        if session_id:
            sql += " AND session_id = ?"
            params.append(session_id)
        with self._tx() as conn:
            return conn.execute(sql, params).rowcount

    async def reset_dead_events(self, session_id, now):
        return await self._run(self._reset_dead_events, session_id, now)

    def _reset_stalled_events(self, now):
        with self._tx() as conn:
            return conn.execute(
                "UPDATE ledger_queue SET status = ?, next_retry_at = ? WHERE status = ?",
                (QueueStatus.FAILED, iso(now), QueueStatus.PROCESSING),
            ).rowcount

    async def reset_stalled_events(self, now):
        return await self._run(self._reset_stalled_events, now)

    def _count_queue_events(self) -> Dict[str, int]:
        counts = {status: 0 for status in QUEUE_STATUSES}
        with self._tx() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM ledger_queue GROUP BY status"):
                if row["status"] in counts:
                    counts[row["status"]] = row["n"]
        return counts

    async def count_queue_events(self):
        return await self._run(self._count_queue_events)

    def _list_queue_events(self, session_id):
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_queue WHERE session_id = ? ORDER BY id", (session_id,)
            ).fetchall()
            return [self._queue_row(r) for r in rows]

    async def list_queue_events(self, session_id):
        return await self._run(self._list_queue_events, session_id)

    def _ping(self) -> bool:
        try:
            with self._tx() as conn:
                conn.execute("SELECT 1 FROM charging_sessions LIMIT 1")
            return True
        except StoreError:
            return False

    async def ping(self):
        return await self._run(self._ping)
