# spreadbot/rest_client.py
import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .exceptions import VenueError
from .models import Order, OrderSide, OrderType
from .signing import sign_query

Outcome = Tuple[Optional[VenueError], Optional[Order]]


def _fmt(value: float) -> str:
    # Venue rejects exponent notation ("1e-05")
    return f"{value:.8f}".rstrip("0").rstrip(".")


def parse_error(http_status: Optional[int], body: str, headers: Optional[Dict[str, str]] = None) -> VenueError:
    """
    Builds a VenueError from a failed HTTP exchange.
    The venue answers errors with {"code": -2011, "msg": "..."}; WAF and proxy errors may carry no JSON.
    """
    code = None
    message = body or f"HTTP {http_status}"
    try:
        payload = json.loads(body) if body else {}
        if isinstance(payload, dict):
            code = payload.get("code")
            message = payload.get("msg", message)
    except ValueError:
        pass

    retry_after = None
    raw = (headers or {}).get("Retry-After")
    if raw:
        try:
            retry_after = float(raw)
        except ValueError:
            retry_after = None
    return VenueError(message, http_status=http_status, code=code, retry_after=retry_after)


class BinanceRestClient:
    """
    Signed REST access to the order endpoints.
    Every call returns an `(error, order)` pair; exceptions never leave this class.
    """
    def __init__(self, config: dict, api_key: str, api_secret: str, logger):
        venue = config['venue']
        self.base_url = venue['rest_url'].rstrip('/')
        self.recv_window = venue.get('recv_window_ms', 5000)
        self.timeout = aiohttp.ClientTimeout(total=venue.get('network_timeout_ms', 1000) / 1000)
        self.time_in_force = config['execution'].get('time_in_force', 'GTC')
        self.api_key = api_key
        self.api_secret = api_secret
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={'X-MBX-APIKEY': self.api_key},
                timeout=self.timeout,
            )

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _signed(self, method: str, path: str, params: Dict[str, Any]) -> Tuple[Optional[VenueError], Optional[Dict[str, Any]]]:
        params = dict(params)
        params['recvWindow'] = self.recv_window
        params['timestamp'] = int(time.time() * 1000)
        url = f"{self.base_url}{path}?{sign_query(params, self.api_secret)}"

        await self.start()
        try:
            async with self._session.request(method, url) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    return parse_error(resp.status, body, dict(resp.headers)), None
                try:
                    return None, json.loads(body)
                except ValueError:
                    # Proxies and maintenance pages can answer 200 with HTML
                    return VenueError(f"{method} {path} unreadable response: {body[:80]!r}",
                                      http_status=resp.status), None
        except asyncio.TimeoutError:
            return VenueError(f"{method} {path} timed out"), None
        except aiohttp.ClientError as e:
            return VenueError(f"{method} {path} connection error: {e}"), None

    async def place_order(self, symbol: str, side: OrderSide, order_type: OrderType, quantity: float,
                          price: Optional[float] = None, client_order_id: Optional[str] = None) -> Outcome:
        params: Dict[str, Any] = {
            'symbol': symbol,
            'side': side.value,
            'type': order_type.value,
            'quantity': _fmt(quantity),
        }
        if order_type is OrderType.LIMIT:
            params['timeInForce'] = self.time_in_force
            params['price'] = _fmt(price)
        if client_order_id:
            params['newClientOrderId'] = client_order_id
        # FULL response carries status and executedQty for immediately matched orders
        params['newOrderRespType'] = 'FULL'

        self.logger.info(f"{side.value} {order_type.value} posted. {symbol} Q: {_fmt(quantity)}" +
                         (f", P: {_fmt(price)}" if price is not None else ""))
        err, data = await self._signed('POST', '/api/v3/order', params)
        return err, Order.from_venue(data) if data else None

    async def cancel_order(self, symbol: str, order_id: int) -> Outcome:
        err, data = await self._signed('DELETE', '/api/v3/order', {'symbol': symbol, 'orderId': order_id})
        return err, Order.from_venue(data) if data else None

    async def get_order(self, symbol: str, order_id: Optional[int] = None,
                        client_order_id: Optional[str] = None) -> Outcome:
        params: Dict[str, Any] = {'symbol': symbol}
        if order_id is not None:
            params['orderId'] = order_id
        else:
            params['origClientOrderId'] = client_order_id
        err, data = await self._signed('GET', '/api/v3/order', params)
        return err, Order.from_venue(data) if data else None
