import pytest
from sqlalchemy.orm import sessionmaker

from margin_engine.core.database import build_engine, init_db
from margin_engine.core.scheduler import ManualTicker
from margin_engine.services.alert_throttle import InMemoryAlertThrottle
from margin_engine.services.margin_risk_engine import MarginRiskEngine
from margin_engine.services.position_repository import SqlAlchemyPositionRepository

from tests.helpers import FakeClock, FakePriceFeed


@pytest.fixture
def repository(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'margin.db'}")
    init_db(bind=db_engine)
    session_factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    yield SqlAlchemyPositionRepository(session_factory)
    db_engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def price_feed():
    return FakePriceFeed({"ETH": 2500.0, "BTC": 45000.0})


@pytest.fixture
def throttle(clock):
    return InMemoryAlertThrottle(clock=clock.seconds)


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def make_engine(repository, price_feed, throttle, ticker, clock):
    engines = []

    def _make(**overrides):
        kwargs = dict(
            repository=repository,
            price_lookup=price_feed.get_crypto_price,
            throttle=throttle,
            ticker=ticker,
            clock=clock,
            interval_seconds=30,
            trading_pairs=["ETH/USDT", "BTC/USDT"],
            max_concurrent_users=1,
            call_timeout=5,
        )
        kwargs.update(overrides)
        engine = MarginRiskEngine(**kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


