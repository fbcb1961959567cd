import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import requests

from margin_engine.core.cache import SimpleCache
from margin_engine.core.config import settings
from margin_engine.core.logging import get_logger

logger = get_logger(__name__)

# CoinGecko coin ids by asset symbol
COIN_IDS: Dict[str, str] = {
    "ETH": "ethereum",
    "BTC": "bitcoin",
    "USDC": "usd-coin",
    "USDT": "tether",
    "DAI": "dai",
    "SOL": "solana",
    "LTC": "litecoin",
    "DOGE": "dogecoin",
    "MATIC": "matic-network",
    "WBTC": "wrapped-bitcoin",
}


@dataclass
class CryptoPrice:
    """Spot USD price of an asset"""
    usd: float
    last_updated: datetime


class PriceService:
    """
    Cache-backed USD price lookup using the CoinGecko simple price API.

    Lookups never block on the network longer than the request timeout and
    return None when no sufficiently fresh price is known.
    """

    def __init__(self,
                 api_url: Optional[str] = None,
                 cache_seconds: Optional[float] = None,
                 max_age_seconds: Optional[float] = None,
                 request_timeout: Optional[float] = None,
                 http: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.api_url = api_url or settings.PRICE_API_URL
        self.cache_seconds = cache_seconds if cache_seconds is not None else settings.PRICE_CACHE_SECONDS
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.PRICE_MAX_AGE_SECONDS
        self.request_timeout = request_timeout if request_timeout is not None else settings.PRICE_REQUEST_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.clock = clock
        self.price_cache = SimpleCache(clock=clock)
        self.last_fetch_time = 0.0
        self._fetch_lock = threading.Lock()

    def fetch_live_prices(self) -> bool:
        """Refresh every known price; on failure the cached values are kept"""
        if not self._fetch_lock.acquire(blocking=False):
            return False
        try:
            coin_ids = ",".join(sorted(set(COIN_IDS.values())))
            response = self.http.get(
                self.api_url,
                params={"ids": coin_ids, "vs_currencies": "usd"},
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            data = response.json()

            now = self.clock()
            fetched_at = datetime.fromtimestamp(now, timezone.utc)
            prices = {}
            for symbol, coin_id in COIN_IDS.items():
                usd = (data.get(coin_id) or {}).get("usd")
                if usd is None:
                    continue
                prices[symbol] = CryptoPrice(usd=float(usd), last_updated=fetched_at)

            self.price_cache.update_prices(prices, ttl_seconds=self.max_age_seconds)
            self.last_fetch_time = now
            logger.info(f"Updated {len(prices)} live prices")
            return True
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Failed to fetch live prices, using cached values: {e}")
            return False
        finally:
            self._fetch_lock.release()

    def get_crypto_price(self, symbol: str) -> Optional[CryptoPrice]:
        """Current USD price for a symbol, or None if unavailable"""
        if self.clock() - self.last_fetch_time > self.cache_seconds:
            self.fetch_live_prices()

        return self.price_cache.get_price(symbol)


price_service = PriceService()
