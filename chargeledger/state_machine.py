from datetime import datetime


class SessionStatus:
    ACTIVE = "active"
    CHARGING = "charging"
    PAUSED = "paused"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"
    EXPIRED = "expired"


ALL_STATES = (
    SessionStatus.ACTIVE,
    SessionStatus.CHARGING,
    SessionStatus.PAUSED,
    SessionStatus.DISCONNECTED,
    SessionStatus.STOPPED,
    SessionStatus.EXPIRED,
)
ACTIVE_STATES = (SessionStatus.ACTIVE, SessionStatus.CHARGING)
RESUMABLE_STATES = (SessionStatus.PAUSED, SessionStatus.DISCONNECTED)
TERMINAL_STATES = (SessionStatus.STOPPED, SessionStatus.EXPIRED)
NON_TERMINAL_STATES = ACTIVE_STATES + RESUMABLE_STATES


class EventType:
    SESSION_STARTED = "SessionStarted"
    SESSION_PAUSED = "SessionPaused"
    SESSION_RESUMED = "SessionResumed"
    SESSION_STOPPED = "SessionStopped"
    SESSION_EXPIRED = "SessionExpired"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def is_resumable(status: str) -> bool:
    return status in RESUMABLE_STATES


def is_active(status: str) -> bool:
    return status in ACTIVE_STATES


def is_expired(expires_at: datetime, now: datetime) -> bool:
    """A session or token is expired from the instant ``now`` reaches ``expires_at``."""
    return now >= expires_at
