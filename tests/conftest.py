"""
Shared fixtures: a scripted in-memory venue, a recording sleep and a fast config.
"""
import asyncio
import copy
import logging
import time
from collections import deque
from dataclasses import replace

import pytest

from spreadbot.config import DEFAULTS, validate
from spreadbot.exceptions import VenueError
from spreadbot.models import Opportunity, Order, OrderSide, OrderStatus, OrderType, Quote
from spreadbot.retry_policy import RetryPolicy
from spreadbot.session import MarketSession

DEFAULT = object()             # scripted slot that falls through to default venue behaviour
LANDED_BUT_TIMED_OUT = object()  # order reaches the book but the response is lost


def venue_error(code=None, http_status=400, retry_after=None, message="scripted"):
    return VenueError(message, http_status=http_status, code=code, retry_after=retry_after)


def timeout_error():
    return VenueError("timed out")


def fill(fraction=1.0):
    """Status hook: the queried order is filled up to `fraction` of its quantity."""
    def _apply(order: Order):
        order.executed_qty = round(order.quantity * fraction, 8)
        order.status = OrderStatus.FILLED if fraction >= 1.0 else OrderStatus.PARTIALLY_FILLED
    return _apply


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)
        await asyncio.sleep(0)


class FakeVenue:
    """
    In-memory venue with the same coroutine interface as BinanceRestClient.
    Scripts are consumed in call order; an empty script means default behaviour:
      place  -> LIMIT rests as NEW (or fills per `immediate_fill`), MARKET fills completely
      status -> current stored order
      cancel -> CANCELED, or code -2011 when the order is already filled
    """
    def __init__(self):
        self.orders = {}
        self.by_client_id = {}
        self.placed = []
        self.place_attempts = []
        self.cancels = []
        self.queries = []
        self.place_script = deque()
        self.status_script = deque()
        self.cancel_script = deque()
        self.immediate_fill = {}
        self._next_id = 1

    def _create(self, symbol, side, order_type, quantity, price, client_order_id):
        order = Order(order_id=self._next_id, symbol=symbol, side=side, type=order_type, quantity=quantity,
                      price=price, client_order_id=client_order_id)
        self._next_id += 1
        if order_type is OrderType.MARKET:
            fill()(order)
        elif side in self.immediate_fill:
            fill(self.immediate_fill[side])(order)
        self.orders[order.order_id] = order
        self.by_client_id[client_order_id] = order
        self.placed.append(order)
        return order

    async def place_order(self, symbol, side, order_type, quantity, price=None, client_order_id=None):
        self.place_attempts.append(client_order_id)
        step = self.place_script.popleft() if self.place_script else DEFAULT
        if isinstance(step, VenueError):
            return step, None
        order = self._create(symbol, side, order_type, quantity, price, client_order_id)
        if step is LANDED_BUT_TIMED_OUT:
            return timeout_error(), None
        return None, replace(order)

    async def get_order(self, symbol, order_id=None, client_order_id=None):
        self.queries.append(order_id if order_id is not None else client_order_id)
        if order_id is None:
            order = self.by_client_id.get(client_order_id)
            if order is None:
                return venue_error(code=-2013, message="Order does not exist."), None
            return None, replace(order)
        step = self.status_script.popleft() if self.status_script else DEFAULT
        if isinstance(step, VenueError):
            return step, None
        order = self.orders[order_id]
        if step is not DEFAULT:
            step(order)
        return None, replace(order)

    async def cancel_order(self, symbol, order_id):
        self.cancels.append(order_id)
        step = self.cancel_script.popleft() if self.cancel_script else DEFAULT
        if isinstance(step, VenueError):
            return step, None
        order = self.orders[order_id]
        if order.status is OrderStatus.FILLED:
            return venue_error(code=-2011, message="Unknown order sent."), None
        order.status = OrderStatus.CANCELED
        return None, replace(order)

    def sells(self):
        return [o for o in self.placed if o.side is OrderSide.SELL]

    def sold_quantity(self):
        """Executed quantity across every sell order the venue holds."""
        return round(sum(o.executed_qty for o in self.sells()), 8)


@pytest.fixture
def logger():
    return logging.getLogger("spreadbot-test")


@pytest.fixture
def config():
    cfg = copy.deepcopy(DEFAULTS)
    cfg['execution'].update(
        entry_poll_interval_ms=250,
        entry_max_wait_s=1,
        exit_poll_interval_ms=250,
        exit_max_wait_s=1,
        post_retry_attempts=2,
        post_retry_delay_ms=100,
        settle_delay_ms=0,
        cooldown_ms=0,
    )
    return validate(cfg)


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def session():
    return MarketSession()


@pytest.fixture
def policy(config, logger, sleep):
    return RetryPolicy(config, logger, sleep=sleep)


def make_quote(symbol, bid, ask, bid_qty=10.0, ask_qty=10.0, timestamp=None):
    return Quote(symbol=symbol, bid_price=bid, bid_qty=bid_qty, ask_price=ask, ask_qty=ask_qty,
                 timestamp=time.time() if timestamp is None else timestamp)


def make_opportunity(quantity=1.0, buy_price=98.0, sell_price=99.9, buy_symbol="BTCBUSD", sell_symbol="BTCUSD",
                     id="BTCBUSD-1"):
    return Opportunity(id=id, buy_symbol=buy_symbol, buy_price=buy_price, sell_symbol=sell_symbol,
                       sell_price=sell_price, quantity=quantity, edge=1.65, timestamp=0.0)
