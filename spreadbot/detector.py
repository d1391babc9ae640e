# spreadbot/detector.py
import time
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from .models import Opportunity, Quote
from .quote_cache import QuoteCache


def floor_to(value: float, decimals: int) -> float:
    """Truncates (never rounds up) to a fixed number of decimals."""
    step = Decimal(1).scaleb(-decimals)
    return float(Decimal(str(value)).quantize(step, rounding=ROUND_DOWN))


def arbitrage_opportunity(self_quote: Quote, peer_quote: Quote, target_delta: float, trade_notional: float,
                          min_notional: float, quantity_decimals: int,
                          exit_spread: Optional[float] = None) -> Optional[Opportunity]:
    """
    Compares two books quoting the same asset.

    diff_a: buy self at its ask, sell on peer at its bid.
    diff_b: buy peer at its ask, sell on self at its bid.
    The larger positive edge wins; diff_a wins a tie.
    """
    # --- ZERO PRICE PROTECTION ---
    if min(self_quote.ask_price, self_quote.bid_price, peer_quote.ask_price, peer_quote.bid_price) <= 0:
        return None

    diff_a = peer_quote.bid_price - self_quote.ask_price - target_delta
    diff_b = self_quote.bid_price - peer_quote.ask_price - target_delta
    if diff_a <= 0 and diff_b <= 0:
        return None

    if diff_a >= diff_b:
        buy, sell, edge = self_quote, peer_quote, diff_a
    else:
        buy, sell, edge = peer_quote, self_quote, diff_b

    entry_price = buy.ask_price

    # --- SMART SIZING ---
    # Never ask for more than either side of the book shows at the observed price
    target_qty = floor_to(trade_notional / entry_price, quantity_decimals)
    qty = floor_to(min(target_qty, sell.bid_qty, buy.ask_qty), quantity_decimals)

    # --- MIN NOTIONAL CHECK ---
    if qty <= 0 or qty * entry_price < min_notional:
        return None

    sell_price = sell.bid_price if exit_spread is None else entry_price + exit_spread
    now = time.time()
    return Opportunity(
        id=f"{buy.symbol}-{int(now * 1000)}",
        buy_symbol=buy.symbol,
        buy_price=entry_price,
        sell_symbol=sell.symbol,
        sell_price=sell_price,
        quantity=qty,
        edge=edge,
        timestamp=now,
    )


def momentum_opportunity(quote: Quote, exit_spread: float, trade_notional: float, min_notional: float,
                         price_decimals: int, quantity_decimals: int,
                         entry_offset: float = 0.0) -> Optional[Opportunity]:
    """
    Always buys the single symbol just inside the bid and targets a fixed spread above entry.
    entry_offset=0 joins the bid, 1 lifts the ask.
    """
    if quote.bid_price <= 0 or quote.ask_price <= 0:
        return None

    entry_price = floor_to(quote.bid_price + (quote.ask_price - quote.bid_price) * entry_offset, price_decimals)
    qty = floor_to(trade_notional / entry_price, quantity_decimals)
    if qty <= 0 or qty * entry_price < min_notional:
        return None

    now = time.time()
    return Opportunity(
        id=f"{quote.symbol}-{int(now * 1000)}",
        buy_symbol=quote.symbol,
        buy_price=entry_price,
        sell_symbol=quote.symbol,
        sell_price=floor_to(entry_price + exit_spread, price_decimals),
        quantity=qty,
        edge=exit_spread,
        timestamp=now,
    )


class OpportunityDetector:
    """
    Reads the quote cache and returns at most one Opportunity per call.
    Pure with respect to the cache: never mutates it, never touches the lock.
    """
    def __init__(self, config: dict):
        cfg = config['strategy']
        self.mode = cfg['mode']
        self.symbols = list(cfg['symbols'])
        self.target_delta = cfg.get('target_delta', 0.0)
        self.trade_notional = cfg['trade_notional']
        self.min_notional = cfg.get('min_notional', 10.0)
        self.price_decimals = cfg.get('price_decimals', 2)
        self.quantity_decimals = cfg.get('quantity_decimals', 6)
        self.exit_spread = cfg.get('exit_spread')
        self.entry_offset = cfg.get('entry_offset', 0.0)

    def set_min_notional(self, value: float):
        self.min_notional = value

    def detect(self, cache: QuoteCache) -> Optional[Opportunity]:
        if self.mode == 'momentum':
            quote = cache.get(self.symbols[0])
            if quote is None:
                return None
            return momentum_opportunity(quote, self.exit_spread, self.trade_notional, self.min_notional,
                                        self.price_decimals, self.quantity_decimals, self.entry_offset)

        self_quote = cache.get(self.symbols[0])
        peer_quote = cache.get(self.symbols[1])
        # A symbol that stopped ticking is simply never paired
        if self_quote is None or peer_quote is None:
            return None
        return arbitrage_opportunity(self_quote, peer_quote, self.target_delta, self.trade_notional,
                                     self.min_notional, self.quantity_decimals, self.exit_spread)
