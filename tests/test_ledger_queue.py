import asyncio
import json
from datetime import timedelta

import pytest

from chargeledger.errors import StoreError
from chargeledger.ledger import InMemoryLedger, LedgerHandle, LedgerReceipt
from chargeledger.ledger_queue import LedgerQueue
from chargeledger.notifier import Broadcaster
from chargeledger.store import MemorySessionStore


class FlakyLedger(InMemoryLedger):
    """Fails the first ``failures`` calls, then behaves."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def append_session_event(self, session_id, ev_id, event_type, source, payload, event_key):
        if self.failures > 0:
            self.failures -= 1
            self.calls.append(event_key)
            raise RuntimeError("peer endorsement failed")
        return await super().append_session_event(session_id, ev_id, event_type, source, payload, event_key)


class LostAckLedger(InMemoryLedger):
    """Commits the first write but loses the acknowledgement."""

    def __init__(self):
        super().__init__()
        self.dropped = False

    async def append_session_event(self, session_id, ev_id, event_type, source, payload, event_key):
        receipt = await super().append_session_event(session_id, ev_id, event_type, source, payload, event_key)
        if not self.dropped:
            self.dropped = True
            raise ConnectionError("response lost")
        return receipt


class SlowLedger(InMemoryLedger):
    async def append_session_event(self, *args):
        await asyncio.sleep(1)
        return LedgerReceipt(tx_id="late", event_key="late")


class GatedLedger(InMemoryLedger):
    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def append_session_event(self, *args):
        self.entered.set()
        await self.release.wait()
        return await super().append_session_event(*args)


def make_queue(store, ledger, clock, **options):
    broadcaster = Broadcaster(clock=clock)
    queue = LedgerQueue(store, LedgerHandle(ledger), broadcaster, clock=clock, **options)
    return queue, broadcaster.subscribe()


def drain_messages(sub):
    messages = []
    while not sub.queue.empty():
        messages.append(sub.queue.get_nowait())
    return messages


@pytest.mark.asyncio
async def test_enqueue_inserts_pending_row(store, clock):
    queue, _ = make_queue(store, InMemoryLedger(), clock)
    result = await queue.enqueue("S1", "EV1", "SessionPaused", {"evId": "EV1"})

    assert result.queued is True
    assert result.event_key == f"S1:SessionPaused:{result.queue_id}"
    row = store.queue[result.queue_id]
    assert row.status == "pending"
    assert row.attempts == 0
    assert row.next_retry_at == clock.now
    assert row.payload == {"evId": "EV1", "sessionId": "S1", "eventType": "SessionPaused"}
    assert queue.stats["queued"] == 1


@pytest.mark.asyncio
async def test_drain_confirms_and_broadcasts(store, clock):
    ledger = InMemoryLedger()
    queue, sub = make_queue(store, ledger, clock)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {"powerRequired": 10})

    assert await queue.drain() == 1

    row = store.queue[result.queue_id]
    assert row.status == "confirmed"
    assert row.attempts == 1
    assert row.tx_id == ledger.entries[result.event_key]["txId"]
    assert row.event_key == result.event_key
    assert row.confirmed_at == clock.now
    entry = ledger.entries[result.event_key]
    assert entry["source"] == "SECC"
    assert json.loads(entry["payload"])["powerRequired"] == 10

    [message] = drain_messages(sub)
    assert message["eventName"] == "SessionStartedConfirmed"
    assert message["txId"] == row.tx_id
    assert message["payload"]["txId"] == row.tx_id
    details = json.loads(message["payload"]["payload"])
    assert details["confirmed"] is True
    assert details["queueId"] == result.queue_id
    assert queue.stats["confirmed"] == 1


@pytest.mark.asyncio
async def test_drain_skipped_without_ledger(store, clock):
    queue = LedgerQueue(store, LedgerHandle(), clock=clock)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {})

    assert await queue.drain() == 0
    assert store.queue[result.queue_id].status == "pending"
    assert store.queue[result.queue_id].attempts == 0


@pytest.mark.asyncio
async def test_failure_backs_off_then_succeeds_with_same_key(store, clock):
    ledger = FlakyLedger(failures=1)
    queue, _ = make_queue(store, ledger, clock, retry_delay=5)
    result = await queue.enqueue("S1", "EV1", "SessionStopped", {})

    await queue.drain()
    row = store.queue[result.queue_id]
    assert row.status == "failed"
    assert row.attempts == 1
    assert row.last_error == "peer endorsement failed"
    assert row.next_retry_at == clock.now + timedelta(seconds=5)

    # not due yet
    assert await queue.drain() == 0

    clock.advance(seconds=5)
    assert await queue.drain() == 1
    row = store.queue[result.queue_id]
    assert row.status == "confirmed"
    assert row.attempts == 2
    assert row.last_error is None
    assert ledger.calls == [result.event_key, result.event_key]
    assert queue.stats == {"queued": 1, "confirmed": 1, "failed": 1, "retried": 1}


@pytest.mark.asyncio
async def test_backoff_doubles_per_attempt(store, clock):
    queue, _ = make_queue(store, FlakyLedger(failures=10), clock, retry_delay=5)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {})

    await queue.drain()
    clock.advance(seconds=5)
    await queue.drain()
    row = store.queue[result.queue_id]
    assert row.attempts == 2
    assert row.next_retry_at == clock.now + timedelta(seconds=10)

    clock.advance(seconds=10)
    await queue.drain()
    assert store.queue[result.queue_id].next_retry_at == clock.now + timedelta(seconds=20)


@pytest.mark.asyncio
async def test_event_goes_dead_after_max_attempts(store, clock):
    queue, sub = make_queue(store, FlakyLedger(failures=100), clock, max_attempts=3, retry_delay=1)
    result = await queue.enqueue("S1", "EV1", "SessionResumed", {})

    for _ in range(3):
        await queue.drain()
        clock.advance(minutes=1)

    row = store.queue[result.queue_id]
    assert row.status == "dead"
    assert row.attempts == 3

    messages = drain_messages(sub)
    assert [m["eventName"] for m in messages] == ["SessionResumedFailed"]
    assert messages[0]["txId"] is None
    assert "txId" not in messages[0]["payload"]
    assert json.loads(messages[0]["payload"]["payload"])["error"] == "peer endorsement failed"

    # dead rows are never picked up again on their own
    clock.advance(hours=1)
    assert await queue.drain() == 0
    assert await queue.get_status() == {
        "pending": 0,
        "processing": 0,
        "confirmed": 0,
        "failed": 0,
        "dead": 1,
    }


@pytest.mark.asyncio
async def test_retry_dead_events_resets_rows(store, clock):
    ledger = FlakyLedger(failures=2)
    queue, _ = make_queue(store, ledger, clock, max_attempts=1)
    a = await queue.enqueue("S1", "EV1", "SessionStarted", {})
    b = await queue.enqueue("S2", "EV2", "SessionStarted", {})
    await queue.drain()
    assert store.queue[a.queue_id].status == "dead"
    assert store.queue[b.queue_id].status == "dead"

    assert await queue.retry_dead_events("S1") == 1
    row = store.queue[a.queue_id]
    assert row.status == "pending"
    assert row.attempts == 0
    assert row.last_error is None
    assert store.queue[b.queue_id].status == "dead"

    assert await queue.retry_dead_events() == 1
    assert await queue.drain() == 2
    assert store.queue[a.queue_id].status == "confirmed"
    assert store.queue[b.queue_id].status == "confirmed"


@pytest.mark.asyncio
async def test_timed_out_call_counts_as_attempt(store, clock):
    queue, _ = make_queue(store, SlowLedger(), clock, ledger_timeout=0.01)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {})

    await queue.drain()
    row = store.queue[result.queue_id]
    assert row.status == "failed"
    assert row.attempts == 1
    assert "timed out" in row.last_error


@pytest.mark.asyncio
async def test_lost_acknowledgement_does_not_duplicate(store, clock):
    ledger = LostAckLedger()
    queue, _ = make_queue(store, ledger, clock, retry_delay=1)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {})

    await queue.drain()
    assert store.queue[result.queue_id].status == "failed"
    first_tx = ledger.entries[result.event_key]["txId"]

    clock.advance(seconds=1)
    await queue.drain()
    row = store.queue[result.queue_id]
    assert row.status == "confirmed"
    assert row.tx_id == first_tx
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_drains_do_not_overlap(store, clock):
    ledger = GatedLedger()
    queue, _ = make_queue(store, ledger, clock)
    await queue.enqueue("S1", "EV1", "SessionStarted", {})

    first = asyncio.create_task(queue.drain())
    await asyncio.wait_for(ledger.entered.wait(), timeout=1)
    assert await queue.drain() == 0

    ledger.release.set()
    assert await first == 1
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_batches_are_fifo_and_bounded(store, clock):
    ledger = InMemoryLedger()
    queue, _ = make_queue(store, ledger, clock, batch_size=2)
    ids = []
    for n in range(3):
        ids.append((await queue.enqueue(f"S{n}", "EV1", "SessionStarted", {})).queue_id)
        clock.advance(seconds=1)

    assert await queue.drain() == 2
    assert [store.queue[i].status for i in ids] == ["confirmed", "confirmed", "pending"]
    assert await queue.drain() == 1


@pytest.mark.asyncio
async def test_start_recovers_stalled_rows(store, clock):
    queue, _ = make_queue(store, InMemoryLedger(), clock, poll_interval=3600)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {})
    await store.mark_processing(result.queue_id)

    await queue.start()
    try:
        row = store.queue[result.queue_id]
        assert row.status == "failed"
        assert row.next_retry_at == clock.now
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_background_loop_drains_on_its_own(store, clock):
    queue, _ = make_queue(store, InMemoryLedger(), clock, poll_interval=0.01)
    await queue.start()
    try:
        result = await queue.enqueue("S1", "EV1", "SessionStarted", {})
        for _ in range(100):
            if store.queue[result.queue_id].status == "confirmed":
                break
            await asyncio.sleep(0.01)
        assert store.queue[result.queue_id].status == "confirmed"
    finally:
        await queue.stop()
    assert queue.running is False


@pytest.mark.asyncio
async def test_every_command_queues_one_event_that_confirms(lifecycle, queue, store):
    started = await lifecycle.start("EV1", 10)
    sid = started.session.session_id
    await lifecycle.pause("EV1", sid)
    await lifecycle.resume("EV1", sid, started.resume_secret)
    await lifecycle.stop("EV1", sid)

    await queue.drain()
    events = await queue.list_events(sid)
    assert [e.event_type for e in events] == [
        "SessionStarted",
        "SessionPaused",
        "SessionResumed",
        "SessionStopped",
    ]
    assert all(e.status == "confirmed" for e in events)


class FlakyBookkeepingStore(MemorySessionStore):
    """Fails the next ``confirm_failures`` / ``fail_failures`` outcome writes."""

    def __init__(self, confirm_failures=0, fail_failures=0):
        super().__init__()
        self.confirm_failures = confirm_failures
        self.fail_failures = fail_failures

    async def mark_confirmed(self, *args):
        if self.confirm_failures:
            self.confirm_failures -= 1
            raise StoreError("disk I/O error")
        await super().mark_confirmed(*args)

    async def mark_failed(self, *args):
        if self.fail_failures:
            self.fail_failures -= 1
            raise StoreError("disk I/O error")
        await super().mark_failed(*args)


@pytest.mark.asyncio
async def test_unrecorded_confirmation_is_retried_and_batch_continues(clock):
    store = FlakyBookkeepingStore(confirm_failures=1)
    ledger = InMemoryLedger()
    queue, _ = make_queue(store, ledger, clock, retry_delay=5)
    first = await queue.enqueue("S1", "EV1", "SessionStopped", {})
    second = await queue.enqueue("S2", "EV2", "SessionStopped", {})

    assert await queue.drain() == 2
    row = store.queue[first.queue_id]
    assert row.status == "failed"
    assert "could not record confirmation" in row.last_error
    assert row.next_retry_at == clock.now + timedelta(seconds=5)
    assert store.queue[second.queue_id].status == "confirmed"

    clock.advance(seconds=5)
    await queue.drain()
    row = store.queue[first.queue_id]
    assert row.status == "confirmed"
    assert row.tx_id == ledger.entries[first.event_key]["txId"]
    assert len(ledger.entries) == 2


@pytest.mark.asyncio
async def test_orphaned_processing_row_is_reclaimed_by_next_drain(clock):
    store = FlakyBookkeepingStore(confirm_failures=1, fail_failures=1)
    ledger = InMemoryLedger()
    queue, _ = make_queue(store, ledger, clock)
    result = await queue.enqueue("S1", "EV1", "SessionStarted", {})

    await queue.drain()
    assert store.queue[result.queue_id].status == "processing"

    clock.advance(minutes=10)
    await queue.drain()
    row = store.queue[result.queue_id]
    assert row.status == "confirmed"
    assert row.attempts == 2
    assert len(ledger.entries) == 1
