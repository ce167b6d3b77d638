"""Ledger clients.

The ledger is an append-only external system of record. The queue reaches it
through :class:`LedgerHandle`, which is empty until a connection is
established; callers must treat an empty handle as "ledger not available yet"
and try again later.
"""

from __future__ import annotations

import itertools
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List

import httpx

from . import config
from .errors import LedgerError


def derive_event_key(session_id: str, event_type: str, queue_id: int) -> str:
    """Idempotency key of one queued event.

    Fixed per queue row, so every retry of the row presents the same key to
    the ledger.
    """
    return f"{session_id}:{event_type}:{queue_id}"


@dataclass(frozen=True)
class LedgerReceipt:
    tx_id: str | None
    event_key: str | None


class LedgerClient(ABC):
    @abstractmethod
    async def append_session_event(
        self,
        session_id: str,
        ev_id: str,
        event_type: str,
        source: str,
        payload: str,
        event_key: str,
    ) -> LedgerReceipt:
        """Append one session event. Repeating ``event_key`` must not add a second entry."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class LedgerHandle:
    """Holds the current ledger client, or nothing while it is unavailable."""

    def __init__(self, client: LedgerClient | None = None):
        self._client = client

    def get(self) -> LedgerClient | None:
        return self._client

    @property
    def available(self) -> bool:
        return self._client is not None

    def set(self, client: LedgerClient) -> None:
        self._client = client

    def clear(self) -> None:
        self._client = None


class InMemoryLedger(LedgerClient):
    """Process-local ledger used when no gateway is configured, and by tests."""

    def __init__(self):
        self.entries: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self._seq = itertools.count(1)

    async def append_session_event(self, session_id, ev_id, event_type, source, payload, event_key):
        self.calls.append(event_key)
        existing = self.entries.get(event_key)
        if existing is not None:
            return LedgerReceipt(tx_id=existing["txId"], event_key=event_key)
        tx_id = f"tx-{next(self._seq):06d}-{uuid.uuid4().hex[:8]}"
        self.entries[event_key] = {
            "txId": tx_id,
            "sessionId": session_id,
            "evId": ev_id,
            "eventType": event_type,
            "source": source,
            "payload": payload,
        }
        return LedgerReceipt(tx_id=tx_id, event_key=event_key)


class HttpLedgerClient(LedgerClient):
    """Client for a ledger gateway speaking JSON over HTTP.

    ``POST {base}/session-events`` appends an event and answers
    ``{"txId": ..., "eventKey": ...}``; ``GET {base}/health`` answers 200 when
    the gateway can reach its network.
    """

    def __init__(self, base_url: str, timeout: float = config.LEDGER_TIMEOUT_SEC, transport=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http: httpx.AsyncClient | None = None
        self._transport = transport

    async def connect(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        if self._http is None:
            raise LedgerError("Client is not connected")
        try:
            resp = await self._http.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise LedgerError(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise LedgerError(f"{method} {path} -> {resp.status_code} {resp.text}")
        if not resp.content:
            return {}
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise LedgerError(f"{method} {path} returned invalid JSON") from e

    async def ping(self) -> bool:
        try:
            await self.connect()
            await self._call("GET", "/health")
            return True
        except LedgerError as e:
            logging.warning(f"Ledger gateway health check failed: {e}")
            return False

    async def append_session_event(self, session_id, ev_id, event_type, source, payload, event_key):
        body = {
            "sessionId": session_id,
            "evId": ev_id,
            "eventType": event_type,
            "source": source,
            "payload": payload,
            "eventKey": event_key,
        }
        data = await self._call("POST", "/session-events", body)
        return LedgerReceipt(
            tx_id=data.get("txId") or data.get("transactionId"),
            event_key=data.get("eventKey") or event_key,
        )
