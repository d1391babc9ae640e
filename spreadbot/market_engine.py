# spreadbot/market_engine.py
from typing import Dict, Optional

import ccxt.async_support as ccxt


class MarketEngine:
    """
    Startup diagnostics against the venue through ccxt.
    Verifies connectivity and API key permissions, and reads the exchange filters
    (minimum order notional) for the traded symbols.
    """
    def __init__(self, config: dict, logger):
        self.cfg = config
        self.logger = logger
        self.client: Optional[ccxt.Exchange] = None
        self.min_notional: Dict[str, float] = {}

    def _build_client(self) -> ccxt.Exchange:
        venue = self.cfg['venue']
        ex_class = getattr(ccxt, venue.get('name', 'binanceus'))
        return ex_class({
            'apiKey': venue['api_key'],
            'secret': venue['api_secret'],
            'timeout': venue.get('network_timeout_ms', 1000) * 5,
            'enableRateLimit': True,
            'options': {'defaultType': 'spot'},
        })

    async def initialize(self) -> bool:
        """
        Returns False when the venue is unreachable or rejects the credentials.
        """
        name = self.cfg['venue'].get('name', 'binanceus').upper()
        self.logger.info("📡 TESTING EXCHANGE CONNECTION...")
        self.client = self._build_client()
        try:
            # --- DIAGNOSTIC PHASE 1: PUBLIC API ---
            await self.client.load_markets()
            # --- DIAGNOSTIC PHASE 2: PRIVATE API ---
            await self.client.fetch_balance()
        except ccxt.AuthenticationError:
            self.logger.critical(f"   ❌ {name:<10} | AUTH FAILED: Invalid API Key or Secret.")
            return False
        except ccxt.PermissionDenied:
            self.logger.critical(f"   ❌ {name:<10} | PERMISSION DENIED: Key missing 'Spot Trading' or 'IP Whitelist' permissions.")
            return False
        except ccxt.AccountSuspended:
            self.logger.critical(f"   ❌ {name:<10} | ACCOUNT SUSPENDED: Contact support immediately.")
            return False
        except ccxt.RequestTimeout:
            self.logger.error(f"   ❌ {name:<10} | TIMEOUT: Exchange API is slow or down.")
            return False
        except ccxt.ExchangeNotAvailable:
            self.logger.error(f"   ❌ {name:<10} | MAINTENANCE: Exchange is currently offline.")
            return False
        except ccxt.BaseError as e:
            self.logger.critical(f"   ❌ {name:<10} | UNKNOWN ERROR: {e}")
            return False

        self._load_filters()
        self.logger.info(f"   ✅ {name:<10} | Markets: {len(self.client.markets)} | Auth: OK")
        return True

    def _load_filters(self):
        by_id = {m['id']: m for m in self.client.markets.values()}
        for symbol in self.cfg['strategy']['symbols']:
            market = by_id.get(symbol)
            if market is None:
                self.logger.warning(f"   ⚠️ {symbol} not listed on venue")
                continue
            cost_min = ((market.get('limits') or {}).get('cost') or {}).get('min')
            if cost_min:
                self.min_notional[symbol] = float(cost_min)

    def venue_min_notional(self) -> Optional[float]:
        """Largest minimum notional among traded symbols, or None if the venue did not report any."""
        if not self.min_notional:
            return None
        return max(self.min_notional.values())

    async def shutdown(self):
        if self.client is not None:
            await self.client.close()
            self.client = None
