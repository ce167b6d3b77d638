"""Ledger write queue.

Lifecycle commands record each transition as a row in the ``ledger_queue``
table and return immediately. A background task drains those rows to the
ledger, retrying with exponential backoff until the row is confirmed or has
used up its attempts and is marked dead. Dead rows only move again through
:meth:`LedgerQueue.retry_dead_events`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from . import config
from .ledger import LedgerHandle, derive_event_key
from .models import QueuedLedgerEvent, QueueStatus, utc_now
from .notifier import Broadcaster, transition_message
from .store import SessionStore


@dataclass(frozen=True)
class QueueResult:
    queued: bool
    queue_id: int | None = None
    event_key: str | None = None


class LedgerQueue:
    def __init__(
        self,
        store: SessionStore,
        ledger: LedgerHandle,
        broadcaster: Broadcaster | None = None,
        poll_interval: float = config.QUEUE_POLL_SEC,
        batch_size: int = config.QUEUE_BATCH_SIZE,
        max_attempts: int = config.QUEUE_MAX_ATTEMPTS,
        retry_delay: float = config.QUEUE_RETRY_DELAY_SEC,
        ledger_timeout: float = config.LEDGER_TIMEOUT_SEC,
        source: str = config.LEDGER_SOURCE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.ledger_timeout = ledger_timeout
        self.source = source
        self.clock = clock
        self.stats = {"queued": 0, "confirmed": 0, "failed": 0, "retried": 0}
        self._draining = False
        self._task: asyncio.Task | None = None
        self._kicks: set = set()

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        recovered = await self.store.reset_stalled_events(self.clock())
        if recovered:
            logging.warning(f"[LEDGER QUEUE] Recovered {recovered} events left in processing")
        self._task = asyncio.create_task(self._poll_loop())
        logging.info("[LEDGER QUEUE] Started background processor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        for t in [task, *self._kicks]:
            if t is not None:
                t.cancel()
        for t in [task, *self._kicks]:
            if t is None:
                continue
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._kicks.clear()
        if task is not None:
            logging.info("[LEDGER QUEUE] Stopped background processor")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.drain()

    def _kick(self) -> None:
        if not self.running:
            return
        task = asyncio.create_task(self.drain())
        self._kicks.add(task)
        task.add_done_callback(self._kicks.discard)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self, session_id: str, ev_id: str, event_type: str, payload: Dict[str, Any]
    ) -> QueueResult:
        """Record a transition for the ledger. Never raises."""
        body = {**payload, "sessionId": session_id, "evId": ev_id, "eventType": event_type}
        try:
            row = await self.store.insert_queue_event(session_id, ev_id, event_type, body, self.clock())
        except Exception as e:
            logging.error(f"[LEDGER QUEUE] Failed to queue {event_type} for session {session_id}: {e}")
            return QueueResult(queued=False)

        self.stats["queued"] += 1
        logging.info(f"[LEDGER QUEUE] Queued {event_type} for session {session_id}")
        self._kick()
        return QueueResult(
            queued=True,
            queue_id=row.queue_id,
            event_key=derive_event_key(session_id, event_type, row.queue_id),
        )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def drain(self) -> int:
        """Process one batch of due events; returns how many were attempted.

        Returns 0 without touching the store when another drain is running or
        the ledger is not available.
        """
        if self._draining:
            return 0
        self._draining = True
        try:
            if self.ledger.get() is None:
                return 0
            # no other drain runs, so any processing row was orphaned by a failed one
            recovered = await self.store.reset_stalled_events(self.clock())
            if recovered:
                logging.warning(f"[LEDGER QUEUE] Reclaimed {recovered} events left in processing")
            events = await self.store.fetch_due_events(self.clock(), self.max_attempts, self.batch_size)
            if not events:
                return 0
            logging.info(f"[LEDGER QUEUE] Processing {len(events)} events...")
            processed = 0
            for event in events:
                try:
                    if await self._process_event(event):
                        processed += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logging.error(f"[LEDGER QUEUE] Event {event.queue_id} left unrecorded: {e}")
            return processed
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logging.error(f"[LEDGER QUEUE] Processor error: {e}")
            return 0
        finally:
            self._draining = False

    async def _process_event(self, event: QueuedLedgerEvent) -> bool:
        claimed = await self.store.mark_processing(event.queue_id)
        if claimed is None:
            return False
        # backoff uses the attempt count from before this try
        prior_attempts = claimed.attempts - 1
        event_key = derive_event_key(claimed.session_id, claimed.event_type, claimed.queue_id)

        client = self.ledger.get()
        try:
            if client is None:
                raise RuntimeError("ledger connection lost")
            receipt = await asyncio.wait_for(
                client.append_session_event(
                    claimed.session_id,
                    claimed.ev_id,
                    claimed.event_type,
                    self.source,
                    json.dumps(claimed.payload, sort_keys=True),
                    event_key,
                ),
                timeout=self.ledger_timeout,
            )
        except asyncio.CancelledError:
            await self._record_failure(claimed, prior_attempts, "drain cancelled")
            raise
        except asyncio.TimeoutError:
            await self._record_failure(
                claimed, prior_attempts, f"ledger call timed out after {self.ledger_timeout}s"
            )
            return True
        except Exception as e:
            await self._record_failure(claimed, prior_attempts, str(e) or e.__class__.__name__)
            return True

        now = self.clock()
        try:
            await self.store.mark_confirmed(claimed.queue_id, receipt.tx_id, receipt.event_key, now)
        except Exception as e:
            # the ledger holds the entry; a retry with the same key confirms it again
            await self._record_failure(claimed, prior_attempts, f"could not record confirmation: {e}")
            return True
        self.stats["confirmed"] += 1
        logging.info(
            f"[LEDGER QUEUE] Confirmed {claimed.event_type} for {claimed.session_id} (txId: {receipt.tx_id})"
        )
        if self.broadcaster is not None and receipt.tx_id:
            name = f"{claimed.event_type}Confirmed"
            self.broadcaster.broadcast(
                transition_message(
                    name,
                    {
                        "eventType": name,
                        "sessionId": claimed.session_id,
                        "evId": claimed.ev_id,
                        "eventKey": receipt.event_key,
                        "confirmed": True,
                        "queueId": claimed.queue_id,
                    },
                    tx_id=receipt.tx_id,
                    now=now,
                )
            )
        return True

    async def _record_failure(self, event: QueuedLedgerEvent, prior_attempts: int, error: str) -> None:
        now = self.clock()
        self.stats["failed"] += 1
        logging.error(f"[LEDGER QUEUE] Failed {event.event_type} for {event.session_id}: {error}")

        next_retry = now + timedelta(seconds=self.retry_delay * (2 ** prior_attempts))
        dead = event.attempts >= self.max_attempts
        status = QueueStatus.DEAD if dead else QueueStatus.FAILED
        await self.store.mark_failed(event.queue_id, status, error, next_retry)

        if not dead:
            self.stats["retried"] += 1
            logging.info(f"[LEDGER QUEUE] Will retry {event.event_type} at {next_retry.isoformat()}")
            return

        logging.error(f"[LEDGER QUEUE] Event {event.queue_id} is DEAD after {event.attempts} attempts")
        if self.broadcaster is not None:
            name = f"{event.event_type}Failed"
            self.broadcaster.broadcast(
                transition_message(
                    name,
                    {
                        "eventType": name,
                        "sessionId": event.session_id,
                        "evId": event.ev_id,
                        "error": error,
                        "queueId": event.queue_id,
                    },
                    tx_id=None,
                    now=now,
                )
            )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def retry_dead_events(self, session_id: str | None = None) -> int:
        count = await self.store.reset_dead_events(session_id, self.clock())
        logging.info(f"[LEDGER QUEUE] Reset {count} dead events for retry")
        if count:
            self._kick()
        return count

    async def get_status(self) -> Dict[str, int]:
        return await self.store.count_queue_events()

    async def list_events(self, session_id: str) -> List[QueuedLedgerEvent]:
        return await self.store.list_queue_events(session_id)
