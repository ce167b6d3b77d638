from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    """Parse an ISO8601 timestamp written by :func:`iso`."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class QueueStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DEAD = "dead"


QUEUE_STATUSES = (
    QueueStatus.PENDING,
    QueueStatus.PROCESSING,
    QueueStatus.CONFIRMED,
    QueueStatus.FAILED,
    QueueStatus.DEAD,
)


@dataclass
class ChargingSession:
    """Authoritative lifecycle record of one charging session."""

    session_id: str
    ev_id: str
    power_required: float
    status: str
    expires_at: datetime
    power_consumed: float = 0
    cost: float = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "evId": self.ev_id,
            "sessionId": self.session_id,
            "powerRequired": self.power_required,
            "powerConsumed": self.power_consumed,
            "cost": self.cost,
            "status": self.status,
            "expiresAt": iso(self.expires_at),
        }


@dataclass
class ResumeToken:
    """One row of a session's token history. Only the hash is ever stored."""

    token_id: int
    session_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    revoked_at: datetime | None = None

    @property
    def live(self) -> bool:
        return self.revoked_at is None


@dataclass
class QueuedLedgerEvent:
    """Outbox row waiting to be written to the ledger."""

    queue_id: int
    session_id: str
    ev_id: str
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime
    next_retry_at: datetime
    status: str = QueueStatus.PENDING
    attempts: int = 0
    tx_id: str | None = None
    event_key: str | None = None
    last_error: str | None = None
    confirmed_at: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queueId": self.queue_id,
            "sessionId": self.session_id,
            "evId": self.ev_id,
            "eventType": self.event_type,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "nextRetryAt": iso(self.next_retry_at),
            "createdAt": iso(self.created_at),
            "txId": self.tx_id,
            "eventKey": self.event_key,
            "lastError": self.last_error,
            "confirmedAt": iso(self.confirmed_at),
        }
