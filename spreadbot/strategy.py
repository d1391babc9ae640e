# spreadbot/strategy.py
import asyncio
import time
from typing import Callable, Optional

from .detector import OpportunityDetector
from .exceptions import FatalVenueError
from .execution import ExecutionService
from .models import Opportunity, Quote
from .risk_engine import RiskEngine
from .session import MarketSession


class StrategyEngine:
    """
    Event-driven tick handler.
    Listens to quote events, refreshes the cache and starts a cycle when the detector finds
    an opportunity and the execution lock is free. Ticks arriving during a cycle are dropped.
    """
    def __init__(self, config: dict, session: MarketSession, detector: OpportunityDetector, risk: RiskEngine,
                 execution: ExecutionService, logger, clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.detector = detector
        self.risk = risk
        self.execution = execution
        self.logger = logger
        self.clock = clock

        self.dry_run = config['system'].get('dry_run', False)
        self.cooldown = config['execution'].get('cooldown_ms', 0) / 1000
        self._ready_at = 0.0
        self.halted = asyncio.Event()
        self.fatal_error: Optional[FatalVenueError] = None
        self.cycle_task: Optional[asyncio.Task] = None

        self.ticks = 0
        self.dropped_ticks = 0
        self.rejected_quotes = 0
        self.opportunities = 0

    async def on_ticker_update(self, quote: Quote):
        self.ticks += 1
        if not self.risk.validate_market_data(quote):
            self.rejected_quotes += 1
            return
        self.session.quotes.update(quote.symbol, quote)

        # Opportunities are transient: nothing is queued while a cycle is in flight
        if self.session.lock.active:
            self.dropped_ticks += 1
            return
        if self.risk.kill_switch or self.clock() < self._ready_at:
            return

        opp = self.detector.detect(self.session.quotes)
        if opp is None or not self.risk.pre_trade_check(opp):
            return
        self.opportunities += 1

        if self.dry_run:
            self.logger.info(f"🔵 DRY RUN: Buy {opp.quantity} {opp.buy_symbol} @ {opp.buy_price} -> "
                             f"Sell {opp.sell_symbol} @ {opp.sell_price} | Edge: {opp.edge:.4f}")
            self._ready_at = self.clock() + self.cooldown
            return

        # No await between the lock test above and this acquisition
        if not self.session.lock.try_acquire(opp.id):
            return
        self.logger.info(f"✨ FOUND: {opp.buy_symbol} -> {opp.sell_symbol} | Edge: {opp.edge:.4f} | Vol: {opp.quantity}")
        self.cycle_task = asyncio.create_task(self._run_cycle(opp))

    async def _run_cycle(self, opp: Opportunity):
        try:
            await self.execution.run_cycle(opp)
        except FatalVenueError as e:
            self.fatal_error = e
            self.risk.halt(f"fatal venue error: {e}")
            self.halted.set()
        except Exception as e:
            self.logger.exception(f"💀 Cycle task {opp.id} crashed")
            self.risk.halt(f"cycle {opp.id} crashed: {type(e).__name__}: {e}")
            self.halted.set()
        finally:
            # Covers a task cancelled before the engine took the lock scope
            self.session.lock.release(opp.id)
            self._ready_at = self.clock() + self.cooldown

    async def shutdown(self):
        if self.cycle_task is not None and not self.cycle_task.done():
            self.logger.warning("Shutdown requested while a cycle is in flight, cancelling it")
            self.cycle_task.cancel()
            await asyncio.gather(self.cycle_task, return_exceptions=True)
