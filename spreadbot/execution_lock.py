# spreadbot/execution_lock.py
from contextlib import contextmanager
from typing import Optional

from .exceptions import LockBusy


class ExecutionLock:
    """
    Process-wide gate: at most one execution cycle in flight.

    The event loop is single threaded, so `try_acquire` is atomic as long as
    callers do not await between checking and acting on the result.
    """
    def __init__(self, logger=None):
        self.logger = logger
        self._owner: Optional[str] = None
        self.acquisitions = 0
        self.releases = 0

    @property
    def active(self) -> bool:
        return self._owner is not None

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def try_acquire(self, owner: str) -> bool:
        """FREE -> ACTIVE. Returns False (and changes nothing) when already ACTIVE."""
        if self._owner is not None:
            return False
        self._owner = owner
        self.acquisitions += 1
        if self.logger:
            self.logger.debug(f"🔒 Lock acquired by {owner}")
        return True

    def release(self, owner: Optional[str] = None):
        """
        ACTIVE -> FREE. Releasing a free lock is a no-op, and so is releasing
        on behalf of an owner that no longer holds it.
        """
        if self._owner is None or (owner is not None and owner != self._owner):
            return
        if self.logger:
            self.logger.debug(f"🔓 Lock released by {self._owner}")
        self._owner = None
        self.releases += 1

    @contextmanager
    def scope(self, owner: str):
        """
        Holds the lock for `owner` for the duration of the block and releases it on every exit path.
        Acquires it first if nobody holds it yet.
        """
        if self._owner != owner and not self.try_acquire(owner):
            raise LockBusy(f"execution lock held by {self._owner}, requested by {owner}")
        try:
            yield self
        finally:
            self.release(owner)
