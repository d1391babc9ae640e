# spreadbot/session.py
from dataclasses import dataclass, field

from .execution_lock import ExecutionLock
from .quote_cache import QuoteCache


@dataclass
class MarketSession:
    """
    The only state shared between the tick stream and the execution cycle.
    One instance per process, handed to the detector driver and the engine.
    """
    quotes: QuoteCache = field(default_factory=QuoteCache)
    lock: ExecutionLock = field(default_factory=ExecutionLock)
