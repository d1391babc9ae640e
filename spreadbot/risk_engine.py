# spreadbot/risk_engine.py
import logging
from typing import Optional

from .models import CycleReport, Opportunity, Quote, TradeStatus


class RiskEngine:
    """
    Validates quotes, gates new cycles and acts as a circuit breaker.
    Separates the decision 'Can we trade?' from the logic of finding the trade.
    """
    def __init__(self, config: dict, logger: logging.Logger):
        self.cfg = config['risk_compliance']
        self.logger = logger
        self.consecutive_fails = 0
        self.cycles = 0
        self.kill_switch = False
        self.halt_reason: Optional[str] = None
        self.last_status = "Waiting for market data"

    def validate_market_data(self, quote: Quote) -> bool:
        """
        Filters out stale or anomalous quotes before they reach the cache.
        """
        max_age = self.cfg.get('max_data_age_seconds')
        if max_age is not None and quote.age > max_age:
            return False
        if quote.bid_price <= 0 or quote.ask_price <= 0:
            return False
        # Crossed book
        if quote.bid_price > quote.ask_price:
            return False
        return True

    def pre_trade_check(self, opp: Opportunity) -> bool:
        """
        The Final Gatekeeper: can we start a cycle for this opportunity?
        """
        if self.kill_switch:
            return False

        max_notional = self.cfg.get('max_exposure_per_trade_usd')
        if max_notional is not None and opp.notional > max_notional:
            self.logger.warning(f"⛔ REJECTED: Trade size ${opp.notional:.2f} exceeds limit ${max_notional}")
            return False
        return True

    def halt(self, reason: str):
        self.kill_switch = True
        self.halt_reason = reason
        self.logger.critical(f"⛔ KILL SWITCH ACTIVATED: {reason}")

    def record_cycle(self, report: CycleReport):
        """
        Updates the internal state based on the outcome of a finished cycle.
        """
        self.cycles += 1
        self.last_status = f"{report.cycle_id}: {report.status.value} {report.reason}".strip()

        if report.status is TradeStatus.ORPHANED:
            self.halt(f"{report.cycle_id} left exposure at the venue (open {report.open_qty}) {report.reason}".strip())
            return

        if report.success:
            self.consecutive_fails = 0
        else:
            self.consecutive_fails += 1
            if self.consecutive_fails >= self.cfg.get('max_consecutive_failures', 5):
                self.halt(f"{self.consecutive_fails} consecutive failed cycles")
