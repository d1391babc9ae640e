# spreadbot/exceptions.py
from typing import Optional


class VenueError(Exception):
    """
    Normalized remote failure returned by the REST client.
    `http_status` is None when no HTTP response was received (timeout, connection reset).
    """
    def __init__(self, message: str, http_status: Optional[int] = None,
                 code: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.code = code
        self.retry_after = retry_after

    def __repr__(self):
        return f"VenueError(http_status={self.http_status}, code={self.code}, message={self.message!r})"


class FatalVenueError(Exception):
    """Authorization/firewall rejection. Not retryable; the process must halt."""
    def __init__(self, step: str, error: VenueError):
        super().__init__(f"{step}: {error.message} (http={error.http_status}, code={error.code})")
        self.step = step
        self.error = error


class StepFailed(Exception):
    """A cycle step could not complete within its retry budget or was rejected outright."""
    def __init__(self, step: str, kind, error: Optional[VenueError] = None, exhausted: bool = False,
                 order=None):
        detail = error.message if error is not None else "no response"
        super().__init__(f"{step} failed [{kind.value}{' / budget exhausted' if exhausted else ''}]: {detail}")
        self.step = step
        self.kind = kind
        self.error = error
        self.exhausted = exhausted
        # Last known state of the order the step was about, when one was fetched
        self.order = order


class LockBusy(Exception):
    """The execution lock is held by another cycle."""


class ConfigError(Exception):
    """Invalid or incomplete configuration."""
