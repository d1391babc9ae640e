# spreadbot/quote_cache.py
from typing import Dict, List, Optional

from .models import Quote


class QuoteCache:
    """
    Latest best bid/ask per symbol (OrderBook Lite).
    One writer per symbol (the market stream); no expiry, no history.
    """
    def __init__(self):
        self._quotes: Dict[str, Quote] = {}

    def update(self, symbol: str, quote: Quote):
        self._quotes[symbol] = quote

    def get(self, symbol: str) -> Optional[Quote]:
        return self._quotes.get(symbol)

    def symbols(self) -> List[str]:
        return list(self._quotes.keys())

    def snapshot(self) -> Dict[str, Quote]:
        return dict(self._quotes)

    def __len__(self):
        return len(self._quotes)
