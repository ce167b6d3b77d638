import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Set

from . import config
from .models import iso, utc_now

CONNECTED = "SSE_CONNECTED"
PING = "PING"


def transition_message(
    event_name: str, details: Dict[str, Any], tx_id: str | None = "pending", now: datetime | None = None
) -> Dict[str, Any]:
    """Build the wire shape every subscriber receives."""
    body: Dict[str, Any] = {
        "timestamp": iso(now or utc_now()),
        "payload": json.dumps(details),
    }
    if tx_id is not None:
        body["txId"] = tx_id
    return {"eventName": event_name, "txId": tx_id, "payload": body}


class Subscription:
    """Async iterator over the messages of one subscriber.

    Yields the synthetic connected message first and a PING whenever the
    channel has been idle for ``keepalive`` seconds.
    """

    def __init__(self, broadcaster: "Broadcaster", queue: asyncio.Queue, keepalive: float):
        self._broadcaster = broadcaster
        self.queue = queue
        self.keepalive = keepalive
        self._greeted = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if not self._greeted:
            self._greeted = True
            return {"eventName": CONNECTED, "ts": iso(self._broadcaster.clock())}
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=self.keepalive)
        except asyncio.TimeoutError:
            if self.closed:
                raise StopAsyncIteration
            return {"eventName": PING, "ts": iso(self._broadcaster.clock())}

    @property
    def closed(self) -> bool:
        return not self._broadcaster.is_subscribed(self)

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class Broadcaster:
    def __init__(
        self,
        keepalive: float = config.SSE_KEEPALIVE_SEC,
        queue_size: int = config.SUBSCRIBER_QUEUE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.keepalive = keepalive
        self.queue_size = queue_size
        self.clock = clock
        self._subscribers: Set[Subscription] = set()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, asyncio.Queue(maxsize=self.queue_size), self.keepalive)
        self._subscribers.add(sub)
        logging.info(f"Subscriber connected: {len(self._subscribers)}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            logging.info(f"Subscriber disconnected: {len(self._subscribers)}")

    def is_subscribed(self, sub: Subscription) -> bool:
        return sub in self._subscribers

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, message: Dict[str, Any]) -> int:
        """Fan ``message`` out without waiting; returns how many subscribers got it."""
        delivered = 0
        for sub in list(self._subscribers):
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logging.warning("Subscriber queue full; dropping subscriber")
                self.unsubscribe(sub)
        return delivered

    def emit(self, event_name: str, details: Dict[str, Any]) -> int:
        return self.broadcast(transition_message(event_name, details, now=self.clock()))
