"""Custom exception hierarchy for weighsync."""

from __future__ import annotations


class WeighsyncError(Exception):
    """Base exception for all weighsync errors."""


class ConfigError(WeighsyncError):
    """Invalid or unknown configuration category, key, or value."""


class TransportUnavailable(WeighsyncError):
    """Sensor hardware missing or unreachable.

    Ingestors catch this internally and fall back to simulated mode; it
    never reaches the caller of ``connect()``.
    """

    def __init__(self, message: str, *, channel: str = "") -> None:
        self.channel = channel
        super().__init__(message)


class ParseFailure(WeighsyncError):
    """Inbound payload could not be turned into a weight sample."""


class NoSampleAvailable(WeighsyncError):
    """Neither source has produced a sample yet.

    The reconciliation engine reports this condition through a sentinel
    ``ToleranceCheck`` rather than raising; the class exists so callers
    that need an exception can raise it from ``ToleranceCheck.is_sentinel``.
    """


class InvalidTransition(WeighsyncError):
    """Illegal session state change."""

    def __init__(self, message: str, *, session_id: str = "") -> None:
        self.session_id = session_id
        super().__init__(message)


class SessionNotFound(InvalidTransition):
    """The referenced session does not exist."""


class CaptureRejected(WeighsyncError):
    """Capture request malformed or blocked by the disagreement policy."""


class SyncFailure(WeighsyncError):
    """External delivery failed after exhausting retries."""

    def __init__(self, message: str, *, attempts: int = 0, status_code: int | None = None) -> None:
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(message)
