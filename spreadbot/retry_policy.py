# spreadbot/retry_policy.py
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from .exceptions import FatalVenueError, StepFailed, VenueError
from .models import RetryBudget

T = TypeVar("T")
Request = Callable[[], Awaitable[Tuple[Optional[VenueError], Optional[T]]]]


class ErrorKind(Enum):
    RATE_LIMITED = "RATE_LIMITED"
    TRANSIENT = "TRANSIENT"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    FATAL = "FATAL"
    CLIENT_ERROR = "CLIENT_ERROR"


# Venue error codes
UNKNOWN_ORDER_SENT = -2011
ORDER_DOES_NOT_EXIST = -2013
INVALID_API_KEY = -2014
REJECTED_API_KEY = -2015
TOO_MANY_REQUESTS = -1003

FATAL_HTTP = {401, 403, 418}
FATAL_CODES = {INVALID_API_KEY, REJECTED_API_KEY}
TRANSIENT_CODES = {-1000, -1001, -1006, -1007, -1021}
RESOLVED_ON_CANCEL = {UNKNOWN_ORDER_SENT, ORDER_DOES_NOT_EXIST}


class _Resolved:
    def __repr__(self):
        return "ALREADY_RESOLVED"


# Returned instead of a result when a cancel finds the order already gone (filled)
ALREADY_RESOLVED = _Resolved()


def classify(error: VenueError, cancelling: bool = False) -> ErrorKind:
    """Maps a raw venue failure onto the closed error enumeration."""
    if error.http_status in FATAL_HTTP or error.code in FATAL_CODES:
        return ErrorKind.FATAL
    if error.http_status == 429 or error.code == TOO_MANY_REQUESTS:
        return ErrorKind.RATE_LIMITED
    if cancelling and error.code in RESOLVED_ON_CANCEL:
        return ErrorKind.ALREADY_RESOLVED
    # No status: timeout or connection error. 2xx here: the request landed but the reply was unreadable
    if error.http_status is None or error.http_status < 300 or error.http_status >= 500 \
            or error.code in TRANSIENT_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.CLIENT_ERROR


class RetryPolicy:
    """
    Runs one remote step and decides retry / wait / abandon / halt for every failure.
    """
    def __init__(self, config: dict, logger: logging.Logger, sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self.rate_limit_wait = config['execution'].get('rate_limit_default_wait_s', 1.0)
        self.logger = logger
        self._sleep = sleep

    async def execute(self, step: str, request: Request, budget: RetryBudget, cancelling: bool = False,
                      on_rate_limit: Optional[Callable[[], Awaitable[T]]] = None):
        """
        Returns the step result, or ALREADY_RESOLVED when a cancel finds the order already filled.

        Raises FatalVenueError on authorization/firewall failures and StepFailed when the step is
        rejected, exhausts `budget`, or is rate limited without a continuation.
        """
        while True:
            error, result = await request()
            if error is None:
                return result

            kind = classify(error, cancelling=cancelling)

            if kind is ErrorKind.ALREADY_RESOLVED:
                self.logger.info(f"{step}: order already resolved at venue ({error.code}), treating as filled")
                return ALREADY_RESOLVED

            if kind is ErrorKind.FATAL:
                self.logger.critical(f"⛔ {step}: authorization rejected by venue: {error.message}")
                raise FatalVenueError(step, error)

            if kind is ErrorKind.RATE_LIMITED:
                wait = error.retry_after if error.retry_after is not None else self.rate_limit_wait
                self.logger.warning(f"⏳ {step}: rate limited, waiting {wait:.2f}s")
                await self._sleep(wait)
                if on_rate_limit is None:
                    raise StepFailed(step, kind, error)
                if not budget.consume():
                    raise StepFailed(step, kind, error, exhausted=True)
                return await on_rate_limit()

            if kind is ErrorKind.CLIENT_ERROR:
                self.logger.error(f"{step}: rejected by venue: {error.message} (code={error.code})")
                raise StepFailed(step, kind, error)

            if not budget.consume():
                self.logger.warning(f"{step}: retries exhausted: {error.message}")
                raise StepFailed(step, kind, error, exhausted=True)
            self.logger.warning(f"{step}: {error.message}, retrying in {budget.delay:.2f}s "
                                f"({budget.attempts_remaining} left)")
            await self._sleep(budget.delay)
