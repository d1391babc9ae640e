# spreadbot/websocket_engine.py
import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .models import Quote

QuoteCallback = Callable[[Quote], Awaitable[None]]


def parse_book_ticker(data: Dict[str, Any]) -> Optional[Quote]:
    """
    bookTicker payload: {"u": 400900217, "s": "BTCUSD", "b": "25.35", "B": "31.21", "a": "25.36", "A": "40.66"}
    Stamped with the venue event time ("E", ms) when the stream carries one, else on receipt.
    """
    try:
        event_ms = data.get("E")
        return Quote(
            symbol=data['s'].upper(),
            bid_price=float(data['b']),
            bid_qty=float(data['B']),
            ask_price=float(data['a']),
            ask_qty=float(data['A']),
            timestamp=event_ms / 1000 if event_ms else time.time(),
        )
    except (AttributeError, KeyError, TypeError, ValueError):
        return None


class BinanceStream:
    def __init__(self, ws_url: str, symbols: List[str], callback: QuoteCallback, logger):
        self.ws_url = ws_url.rstrip('/')
        self.symbols = symbols
        self.callback = callback
        self.logger = logger
        self.ws = None

    @property
    def url(self) -> str:
        # Format: btcusd@bookTicker/btcbusd@bookTicker
        streams = [f"{s.lower()}@bookTicker" for s in self.symbols]
        return f"{self.ws_url}/{'/'.join(streams)}"

    async def connect(self, session: aiohttp.ClientSession):
        async with session.ws_connect(self.url, heartbeat=30) as ws:
            self.ws = ws
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    quote = parse_book_ticker(json.loads(msg.data))
                    if quote is not None:
                        await self.callback(quote)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break


class WebSocketEngine:
    """
    Keeps the market data stream alive and forwards every tick, in arrival order, to the callback.
    """
    def __init__(self, config: dict, callback: QuoteCallback, logger):
        self.symbols = list(config['strategy']['symbols'])
        self.ws_url = config['venue']['ws_url']
        self.callback = callback
        self.logger = logger
        self.running = False
        self._session = None
        self.tasks = []

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()
        stream = BinanceStream(self.ws_url, self.symbols, self.callback, self.logger)
        self.logger.info(f"⚡ CONNECTING STREAM FOR {', '.join(self.symbols)}...")
        self.tasks = [asyncio.create_task(self._run_stream_forever(stream))]

    async def _run_stream_forever(self, stream: BinanceStream):
        while self.running:
            try:
                await stream.connect(self._session)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self.logger.error(f"WS Error: {e}")
            if self.running:
                await asyncio.sleep(2)

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        if self._session:
            await self._session.close()
