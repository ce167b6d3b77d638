class SessionError(Exception):
    """Base for every failure a lifecycle command reports to its caller."""

    kind = "session_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self):
        return {"ok": False, "kind": self.kind, "error": self.detail}


class ValidationFailed(SessionError):
    kind = "validation_error"
    status_code = 400


class SessionNotFound(SessionError):
    kind = "not_found"
    status_code = 404

    def __init__(self, detail: str = "Session not found"):
        super().__init__(detail)


class SessionTerminal(SessionError):
    kind = "session_terminal"
    status_code = 409

    def __init__(self, status: str):
        super().__init__(f"Session already {status}")
        self.status = status


class InvalidSessionState(SessionError):
    kind = "invalid_state"
    status_code = 409

    def __init__(self, status: str, detail: str):
        super().__init__(detail)
        self.status = status


class SessionAlreadyActive(InvalidSessionState):
    kind = "already_active"

    def __init__(self, status: str):
        super().__init__(status, f"Session is already {status} - no need to resume")


class PreconditionFailed(SessionError):
    """A conditional store write matched zero rows: another command won the race."""

    kind = "precondition_failed"
    status_code = 409


class InvalidResumeToken(SessionError):
    kind = "invalid_token"
    status_code = 401

    def __init__(self):
        super().__init__("Invalid or revoked token")


class SessionExpired(SessionError):
    kind = "session_expired"
    status_code = 410

    def __init__(self):
        super().__init__("Session expired")


class StoreUnavailable(SessionError):
    kind = "store_unavailable"
    status_code = 503


class StoreError(Exception):
    """Raised by store implementations when the backing database fails."""


class LedgerError(Exception):
    """Raised by ledger clients when a write is not confirmed."""
