# spreadbot/execution.py
import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .exceptions import FatalVenueError, StepFailed
from .models import (
    CycleReport, CycleState, Opportunity, Order, OrderSide, OrderStatus, OrderType, RetryBudget, TradeStatus,
)
from .retry_policy import ALREADY_RESOLVED, ErrorKind, RetryPolicy, classify

QTY_PRECISION = 8


class EntryDecision(Enum):
    FILLED = "FILLED"
    COMMIT_PARTIAL = "COMMIT_PARTIAL"
    WAIT = "WAIT"
    CLOSED = "CLOSED"


def entry_decision(order: Order, threshold: float) -> EntryDecision:
    """
    What to do with the entry order given its latest known state.
    A partial fill of at least `threshold` of the requested quantity is treated as a committed position.
    """
    if order.is_filled:
        return EntryDecision.FILLED
    if order.status is OrderStatus.CANCELED:
        return EntryDecision.CLOSED
    if order.executed_qty > 0 and order.executed_qty >= order.quantity * threshold:
        return EntryDecision.COMMIT_PARTIAL
    return EntryDecision.WAIT


def filled_quantity(order: Order) -> float:
    if order.executed_qty > 0:
        return order.executed_qty
    return order.quantity if order.is_filled else 0.0


@dataclass
class Cycle:
    """
    Bookkeeping for one opportunity, from entry post to resolution.

    entry_executed: base quantity bought so far
    exit_committed: quantity placed on the exit side (limit orders still working + market sells)
    """
    opportunity: Opportunity
    state: CycleState = CycleState.ENTRY_PENDING
    entry: Optional[Order] = None
    exit: Optional[Order] = None
    entry_executed: float = 0.0
    exit_committed: float = 0.0
    sold_qty: float = 0.0
    liquidated_qty: float = 0.0
    market_exit: bool = False
    reason: str = ""
    residual: Optional[asyncio.Task] = None
    left_working: Optional[Order] = None
    started_at: float = field(default_factory=time.time)

    @property
    def id(self) -> str:
        return self.opportunity.id

    @property
    def unexited(self) -> float:
        return max(round(self.entry_executed - self.exit_committed, QTY_PRECISION), 0.0)

    @property
    def exposure(self) -> float:
        return max(round(self.entry_executed - self.sold_qty - self.liquidated_qty, QTY_PRECISION), 0.0)

    def commit_entry(self, quantity: float):
        self.entry_executed = max(self.entry_executed, quantity)

    def commit_exit(self, quantity: float) -> float:
        # Exit side can never exceed what was bought
        quantity = min(quantity, self.unexited)
        self.exit_committed = round(self.exit_committed + quantity, QTY_PRECISION)
        return quantity


class ExecutionService:
    """
    Order lifecycle engine.

    Runs one cycle as an explicit state machine: each handler performs the remote
    work of its state and returns the next state. Every path that leaves the
    machine goes through the execution lock scope, so the lock is released
    exactly once per cycle whatever happens inside.
    """
    def __init__(self, client, session, policy: RetryPolicy, logger, config: dict,
                 risk=None, audit_logger=None, sleep=asyncio.sleep):
        cfg = config['execution']
        self.client = client
        self.session = session
        self.policy = policy
        self.logger = logger
        self.risk = risk
        self.audit_logger = audit_logger
        self._sleep = sleep

        self.entry_interval = cfg['entry_poll_interval_ms'] / 1000
        self.entry_attempts = math.ceil(cfg['entry_max_wait_s'] / self.entry_interval)
        self.exit_interval = cfg['exit_poll_interval_ms'] / 1000
        self.exit_attempts = math.ceil(cfg['exit_max_wait_s'] / self.exit_interval)
        self.partial_threshold = cfg.get('partial_fill_threshold', 0.5)
        self.exit_type = OrderType(str(cfg.get('exit_order_type', 'LIMIT')).upper())
        self.post_attempts = cfg.get('post_retry_attempts', 3)
        self.post_delay = cfg.get('post_retry_delay_ms', 250) / 1000
        self.settle_delay = cfg.get('settle_delay_ms', 250) / 1000
        self.client_id_prefix = cfg.get('client_order_prefix', 'sb')
        self.min_notional = config['strategy'].get('min_notional', 10.0)

        self.current: Optional[Cycle] = None
        self.last_report: Optional[CycleReport] = None
        self._handlers = {
            CycleState.ENTRY_PENDING: self._post_entry,
            CycleState.ENTRY_MONITORING: self._monitor_entry,
            CycleState.EXIT_PENDING: self._post_exit,
            CycleState.EXIT_MONITORING: self._monitor_exit,
        }

    async def run_cycle(self, opp: Opportunity) -> CycleReport:
        """
        Drives one cycle to RESOLVED or ABORTED and returns its report.
        Only FatalVenueError propagates, after the lock has been released.
        """
        cycle = Cycle(opportunity=opp)
        self.current = cycle
        fatal: Optional[FatalVenueError] = None
        self.logger.info(f"⚡ CYCLE {cycle.id}: Buy {opp.quantity} {opp.buy_symbol} @ {opp.buy_price} "
                         f"-> Sell {opp.sell_symbol} @ {opp.sell_price} | Edge: {opp.edge:.4f}")

        with self.session.lock.scope(cycle.id):
            try:
                while not cycle.state.is_terminal:
                    next_state = await self._handlers[cycle.state](cycle)
                    self._transition(cycle, next_state)
            except StepFailed as e:
                cycle.reason = str(e)
                self.logger.error(f"❌ CYCLE {cycle.id} aborted: {e}")
                self._transition(cycle, CycleState.ABORTED)
            except FatalVenueError as e:
                cycle.reason = str(e)
                fatal = e
                self._transition(cycle, CycleState.ABORTED)
            except Exception as e:
                cycle.reason = f"unexpected {type(e).__name__}: {e}"
                self.logger.exception(f"💀 CYCLE {cycle.id} crashed")
                self._transition(cycle, CycleState.ABORTED)
            finally:
                residual_fatal = await self._stop_residual(cycle)
                fatal = fatal or residual_fatal

        report = self._report(cycle)
        self.last_report = report
        self.current = None
        self.logger.info(f"🏁 CYCLE {cycle.id}: {report.status.value} | Bought: {report.entry_qty} | "
                         f"Sold: {report.sold_qty} | Liquidated: {report.liquidated_qty} | Open: {report.open_qty}")
        if self.risk is not None:
            self.risk.record_cycle(report)
        if self.audit_logger is not None:
            await self.audit_logger.log_cycle(report)

        if fatal is not None:
            raise fatal
        return report

    def _transition(self, cycle: Cycle, next_state: CycleState):
        if cycle.state is next_state:
            return
        self.logger.info(f"[{cycle.id}] {cycle.state.value} → {next_state.value}")
        cycle.state = next_state

    def _report(self, cycle: Cycle) -> CycleReport:
        open_qty = cycle.exposure
        stuck = open_qty > 0 and open_qty * cycle.opportunity.buy_price >= self.min_notional
        # An order still working at the venue counts as exposure whatever its size
        if stuck or cycle.left_working is not None:
            status = TradeStatus.ORPHANED
        elif cycle.state is CycleState.ABORTED:
            status = TradeStatus.FAILED
        elif cycle.entry_executed <= 0:
            status = TradeStatus.NO_FILL
        elif cycle.liquidated_qty > 0:
            status = TradeStatus.LIQUIDATED
        else:
            status = TradeStatus.FILLED
        if 0 < open_qty and status is not TradeStatus.ORPHANED:
            self.logger.warning(f"Dust left open after {cycle.id}: {open_qty}")
        return CycleReport(
            cycle_id=cycle.id,
            status=status,
            final_state=cycle.state,
            entry_qty=cycle.entry_executed,
            sold_qty=cycle.sold_qty,
            liquidated_qty=cycle.liquidated_qty,
            open_qty=open_qty,
            reason=cycle.reason,
            started_at=cycle.started_at,
        )

    # --- STATE HANDLERS ---

    async def _post_entry(self, cycle: Cycle) -> CycleState:
        opp = cycle.opportunity
        cycle.entry = await self._place(opp.buy_symbol, OrderSide.BUY, OrderType.LIMIT, opp.quantity, opp.buy_price)
        return CycleState.ENTRY_MONITORING

    async def _monitor_entry(self, cycle: Cycle) -> CycleState:
        budget = RetryBudget(self.entry_attempts, self.entry_interval)
        while True:
            order = cycle.entry
            decision = entry_decision(order, self.partial_threshold)

            if decision is EntryDecision.FILLED:
                self.logger.info(f"BUY order filled. Q: {filled_quantity(order)}")
                cycle.commit_entry(filled_quantity(order))
                return CycleState.EXIT_PENDING

            if decision is EntryDecision.COMMIT_PARTIAL:
                self.logger.info(f"BUY order partially filled ({order.executed_qty}/{order.quantity}), "
                                 f"committing and canceling the residual")
                cycle.commit_entry(order.executed_qty)
                cycle.residual = asyncio.create_task(self._cancel_residual(cycle))
                return CycleState.EXIT_PENDING

            if decision is EntryDecision.CLOSED:
                return self._after_entry_cancel(cycle, order)

            if not budget.consume():
                break
            await self._sleep(budget.delay)
            cycle.entry = await self._refresh(order)

        self.logger.info(f"BUY order {cycle.entry.order_id} not filled in time, canceling.")
        try:
            result = await self._cancel(cycle.entry)
        except StepFailed as e:
            # Entry keeps working at the venue: close whatever it already bought
            cycle.left_working = e.order or cycle.entry
            if e.order is not None:
                cycle.entry = e.order
                cycle.commit_entry(e.order.executed_qty)
            await self._liquidate(cycle, cycle.unexited)
            raise
        if result is ALREADY_RESOLVED:
            cycle.commit_entry(cycle.entry.quantity)
            return CycleState.EXIT_PENDING
        return self._after_entry_cancel(cycle, result)

    def _after_entry_cancel(self, cycle: Cycle, order: Order) -> CycleState:
        cycle.entry = order
        if order.executed_qty > 0:
            # Never leave a naked position: close whatever was bought at market
            cycle.commit_entry(order.executed_qty)
            cycle.market_exit = True
            return CycleState.EXIT_PENDING
        cycle.reason = "entry not filled"
        return CycleState.RESOLVED

    async def _cancel_residual(self, cycle: Cycle):
        entry = cycle.entry
        try:
            result = await self._cancel(entry)
        except StepFailed as e:
            self.logger.error(f"Residual cancel of BUY {entry.order_id} failed: {e}")
            cycle.left_working = e.order or entry
            cycle.reason = f"BUY {entry.order_id} left working at the venue"
            if e.order is not None:
                cycle.commit_entry(e.order.executed_qty)
            return
        if result is ALREADY_RESOLVED:
            cycle.commit_entry(entry.quantity)
        else:
            cycle.commit_entry(result.executed_qty)
        if cycle.unexited > 0:
            self.logger.info(f"Residual of BUY {entry.order_id} executed meanwhile, escalating {cycle.unexited} to exit")

    async def _stop_residual(self, cycle: Cycle) -> Optional[FatalVenueError]:
        task = cycle.residual
        cycle.residual = None
        if task is None:
            return None
        if not task.done():
            task.cancel()
        result = (await asyncio.gather(task, return_exceptions=True))[0]
        if isinstance(result, FatalVenueError):
            return result
        return None

    async def _post_exit(self, cycle: Cycle) -> CycleState:
        opp = cycle.opportunity
        # Funds from the entry need a moment before they can be sold
        await self._sleep(self.settle_delay)
        quantity = cycle.unexited

        if cycle.market_exit or self.exit_type is OrderType.MARKET:
            await self._liquidate(cycle, quantity)
            return await self._finish_exit(cycle)

        try:
            order = await self._place(opp.sell_symbol, OrderSide.SELL, OrderType.LIMIT, quantity, opp.sell_price)
        except StepFailed as e:
            self.logger.warning(f"SELL post failed ({e}), falling back to MARKET")
            await self._liquidate(cycle, quantity)
            return await self._finish_exit(cycle)

        cycle.exit = order
        cycle.commit_exit(order.quantity or quantity)
        return CycleState.EXIT_MONITORING

    async def _monitor_exit(self, cycle: Cycle) -> CycleState:
        budget = RetryBudget(self.exit_attempts, self.exit_interval)
        while not cycle.exit.is_filled:
            if cycle.exit.status is OrderStatus.CANCELED:
                return await self._finish_exit(self._after_exit_cancel(cycle, cycle.exit))
            if not budget.consume():
                return await self._cancel_exit(cycle)
            await self._sleep(budget.delay)
            cycle.exit = await self._refresh(cycle.exit)

        self.logger.info(f"SELL order filled. Q: {filled_quantity(cycle.exit)}")
        cycle.sold_qty += filled_quantity(cycle.exit)
        return await self._finish_exit(cycle)

    async def _cancel_exit(self, cycle: Cycle) -> CycleState:
        order = cycle.exit
        self.logger.info(f"SELL order {order.order_id} not filled in time, canceling.")
        try:
            result = await self._cancel(order)
        except StepFailed as e:
            cycle.left_working = e.order or order
            raise
        if result is ALREADY_RESOLVED:
            cycle.sold_qty += order.quantity
        else:
            self._after_exit_cancel(cycle, result)
        return await self._finish_exit(cycle)

    def _after_exit_cancel(self, cycle: Cycle, order: Order) -> Cycle:
        cycle.exit = order
        cycle.sold_qty += order.executed_qty
        # Unsold remainder goes back to the exit queue and is liquidated by _finish_exit
        cycle.exit_committed = round(cycle.exit_committed - order.remaining_qty, QTY_PRECISION)
        return cycle

    async def _finish_exit(self, cycle: Cycle) -> CycleState:
        task = cycle.residual
        if task is not None:
            cycle.residual = None
            await task
        if cycle.unexited > 0:
            await self._liquidate(cycle, cycle.unexited)
        return CycleState.RESOLVED

    # --- REMOTE STEPS ---

    async def _request(self, step: str, request, budget: RetryBudget, cancelling: bool = False):
        async def resume():
            return await self._request(step, request, budget, cancelling)
        return await self.policy.execute(step, request, budget, cancelling=cancelling, on_rate_limit=resume)

    async def _place(self, symbol: str, side: OrderSide, order_type: OrderType, quantity: float,
                     price: Optional[float] = None) -> Order:
        client_id = f"{self.client_id_prefix}{uuid.uuid4().hex[:20]}"
        step = f"post {side.value} {order_type.value} {symbol}"

        async def attempt():
            error, order = await self.client.place_order(symbol, side, order_type, quantity, price,
                                                         client_order_id=client_id)
            if error is not None and classify(error) is ErrorKind.TRANSIENT:
                # The request may still have reached the venue: look before posting again
                lookup_error, existing = await self.client.get_order(symbol, client_order_id=client_id)
                if lookup_error is None and existing is not None:
                    self.logger.info(f"{step}: adopting order {existing.order_id} from the previous attempt")
                    return None, existing
            return error, order

        return await self._request(step, attempt, RetryBudget(self.post_attempts, self.post_delay))

    async def _refresh(self, order: Order) -> Order:
        """Status query. A failed poll only burns the attempt; the last known state is kept."""
        step = f"query {order.side.value} {order.order_id}"
        try:
            fresh = await self.policy.execute(
                step, lambda: self.client.get_order(order.symbol, order_id=order.order_id), RetryBudget(0, 0))
        except StepFailed as e:
            self.logger.warning(f"{e}")
            return order
        return fresh if fresh is not None else order

    async def _cancel(self, order: Order):
        """Returns the canceled Order (with its executed quantity) or ALREADY_RESOLVED when it had filled."""
        step = f"cancel {order.side.value} {order.order_id}"
        budget = RetryBudget(self.post_attempts, self.post_delay)
        try:
            return await self._request(step, lambda: self.client.cancel_order(order.symbol, order.order_id),
                                       budget, cancelling=True)
        except StepFailed as e:
            # One last look: the order may have completed while the cancel kept failing
            final = await self._refresh(order)
            if final.is_filled:
                return ALREADY_RESOLVED
            if final.status is OrderStatus.CANCELED:
                return final
            self.logger.critical(f"💀 {step}: order left working at the venue, executed {final.executed_qty}")
            raise StepFailed(e.step, e.kind, e.error, e.exhausted, order=final) from e

    async def _liquidate(self, cycle: Cycle, quantity: float):
        quantity = min(quantity, cycle.unexited)
        if quantity <= 0:
            return
        symbol = cycle.opportunity.sell_symbol
        try:
            order = await self._place(symbol, OrderSide.SELL, OrderType.MARKET, quantity)
        except StepFailed as e:
            self.logger.critical(f"💀 CATASTROPHIC FAILURE: could not liquidate {quantity} {symbol}: {e}")
            return
        cycle.commit_exit(quantity)
        filled = filled_quantity(order)
        cycle.liquidated_qty = round(cycle.liquidated_qty + filled, QTY_PRECISION)
        self.logger.info(f"🏳️ MARKET SELL {filled} {symbol}")
