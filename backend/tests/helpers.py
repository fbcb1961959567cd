import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from margin_engine.schemas.margin import MarginPositionCreate, UserLeverageSettings
from margin_engine.services.price_service import CryptoPrice


class FakeClock:
    """Settable clock usable both as a datetime source and a float (seconds) source"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def seconds(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakePriceFeed:
    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.errors: Dict[str, Exception] = {}
        self.calls = 0
        self._lock = threading.Lock()

    def get_crypto_price(self, symbol: str) -> Optional[CryptoPrice]:
        with self._lock:
            self.calls += 1
        if symbol in self.errors:
            raise self.errors[symbol]
        usd = self.prices.get(symbol.upper())
        if usd is None:
            return None
        return CryptoPrice(usd=usd, last_updated=datetime(2026, 1, 1))


def open_position(repository, user_id="user-1", trading_pair="ETH/USDT", side="long",
                  entry_price=2000.0, liquidation_price=1800.0, position_size=1.0,
                  collateral=200.0, leverage=10.0):
    return repository.create_margin_position(MarginPositionCreate(
        user_id=user_id,
        trading_pair=trading_pair,
        side=side,
        leverage=leverage,
        entry_price=entry_price,
        position_size=position_size,
        collateral=collateral,
        liquidation_price=liquidation_price,
    ))


def set_leverage_settings(repository, user_id="user-1", auto_deleverage=False, warnings=True):
    return repository.upsert_user_leverage_settings(UserLeverageSettings(
        user_id=user_id,
        auto_deleverage_enabled=auto_deleverage,
        liquidation_warning_enabled=warnings,
    ))
