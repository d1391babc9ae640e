# spreadbot/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import time


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class OrderStatus(Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_venue(cls, raw: Optional[str]) -> "OrderStatus":
        """Maps a raw venue status string onto the closed set used by the engine."""
        value = str(raw or "").upper()
        if value in ("EXPIRED", "REJECTED", "EXPIRED_IN_MATCH"):
            return cls.CANCELED
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class CycleState(Enum):
    """
    Lifecycle states of one execution cycle.
    RESOLVED and ABORTED are terminal.
    """
    ENTRY_PENDING = "ENTRY_PENDING"
    ENTRY_MONITORING = "ENTRY_MONITORING"
    EXIT_PENDING = "EXIT_PENDING"
    EXIT_MONITORING = "EXIT_MONITORING"
    RESOLVED = "RESOLVED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in (CycleState.RESOLVED, CycleState.ABORTED)


class TradeStatus(Enum):
    """
    Final outcome of a cycle, as written to the audit trail.
    """
    FILLED = "FILLED"            # exit limit order filled
    LIQUIDATED = "LIQUIDATED"    # position closed (fully or partly) at market
    NO_FILL = "NO_FILL"          # entry canceled, no position taken
    FAILED = "FAILED"            # aborted
    ORPHANED = "ORPHANED"        # position could not be closed


@dataclass(slots=True, frozen=True)
class Quote:
    """
    Best bid/ask snapshot for one symbol.
    Replaced wholesale on every tick.
    """
    symbol: str
    bid_price: float
    bid_qty: float
    ask_price: float
    ask_qty: float
    timestamp: float

    @property
    def age(self) -> float:
        """Returns the age of the quote in seconds."""
        return time.time() - self.timestamp


@dataclass(slots=True)
class Opportunity:
    """
    A detected trade, valid only for the tick that produced it.
    """
    id: str
    buy_symbol: str
    buy_price: float
    sell_symbol: str
    sell_price: float
    quantity: float
    edge: float
    timestamp: float

    @property
    def notional(self) -> float:
        return self.quantity * self.buy_price


@dataclass(slots=True)
class Order:
    order_id: Optional[int]
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: float
    price: Optional[float] = None
    status: OrderStatus = OrderStatus.NEW
    executed_qty: float = 0.0
    client_order_id: Optional[str] = None

    @property
    def is_filled(self) -> bool:
        return self.status is OrderStatus.FILLED or (
            self.quantity > 0 and self.executed_qty >= self.quantity
        )

    @property
    def remaining_qty(self) -> float:
        return max(self.quantity - self.executed_qty, 0.0)

    @classmethod
    def from_venue(cls, data: Dict[str, Any]) -> "Order":
        """Builds an Order from a venue order payload (place/cancel/query responses share it)."""
        price = float(data.get("price") or 0.0)
        return cls(
            order_id=data.get("orderId"),
            symbol=data.get("symbol", ""),
            side=OrderSide(str(data.get("side", "BUY")).upper()),
            type=OrderType.MARKET if str(data.get("type", "")).upper() == "MARKET" else OrderType.LIMIT,
            quantity=float(data.get("origQty") or 0.0),
            price=price or None,
            status=OrderStatus.from_venue(data.get("status")),
            executed_qty=float(data.get("executedQty") or 0.0),
            client_order_id=data.get("clientOrderId"),
        )


@dataclass(slots=True)
class RetryBudget:
    """
    Attempts left for one pending step and the pause between attempts (seconds).
    """
    attempts_remaining: int
    delay: float

    def consume(self) -> bool:
        """Spends one attempt. Returns False once the budget is already at zero."""
        if self.attempts_remaining <= 0:
            return False
        self.attempts_remaining -= 1
        return True

    @property
    def exhausted(self) -> bool:
        return self.attempts_remaining <= 0


@dataclass(slots=True)
class CycleReport:
    cycle_id: str
    status: TradeStatus
    final_state: CycleState
    entry_qty: float
    sold_qty: float
    liquidated_qty: float
    open_qty: float
    reason: str = ""
    started_at: float = field(default_factory=time.time)
    finished_at: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.status in (TradeStatus.FILLED, TradeStatus.LIQUIDATED, TradeStatus.NO_FILL)
