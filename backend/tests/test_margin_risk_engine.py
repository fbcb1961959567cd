import threading
import time

import pytest

from margin_engine.core.exceptions import PositionNotFoundError
from margin_engine.models.alert import AlertType
from margin_engine.models.margin import PositionStatus
from margin_engine.schemas.margin import RiskLevel

from tests.helpers import open_position, set_leverage_settings


class FailingUserRepository:
    """Delegates to a real repository but fails position reads for chosen users"""

    def __init__(self, inner, failing_users=(), fail_enumeration=False):
        self.inner = inner
        self.failing_users = set(failing_users)
        self.fail_enumeration = fail_enumeration

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_user_margin_positions(self, user_id, status):
        if user_id in self.failing_users:
            raise RuntimeError(f"storage error for {user_id}")
        return self.inner.get_user_margin_positions(user_id, status)

    def get_margin_positions_by_pair(self, trading_pair, status):
        if self.fail_enumeration:
            raise RuntimeError("storage unavailable")
        return self.inner.get_margin_positions_by_pair(trading_pair, status)


# ---------------------------------------------------------------------- #
# Lifecycle
# ---------------------------------------------------------------------- #
def test_start_runs_immediate_tick_and_schedules(engine, ticker, repository):
    position = open_position(repository)

    engine.start()

    assert engine.is_running
    assert ticker.is_running
    assert ticker.interval == 30
    assert engine.last_tick is not None
    assert repository.get_margin_position(position.id).current_price == 2500.0


def test_start_is_idempotent(engine, price_feed, repository):
    open_position(repository)

    engine.start()
    calls_after_first_start = price_feed.calls
    engine.start()

    assert price_feed.calls == calls_after_first_start


def test_scheduled_ticks_run_until_stopped(engine, ticker, price_feed, repository):
    open_position(repository)
    engine.start()
    calls = price_feed.calls

    ticker.fire(times=2)
    assert price_feed.calls == calls + 2

    engine.stop()
    assert not engine.is_running
    ticker.fire()
    engine._scheduled_tick()
    assert price_feed.calls == calls + 2


def test_status(engine):
    status = engine.status()
    assert status.running is False
    assert status.interval_seconds == 30
    assert status.last_tick is None


# ---------------------------------------------------------------------- #
# Tick behaviour
# ---------------------------------------------------------------------- #
def test_tick_marks_open_positions_to_market(engine, repository, price_feed):
    long_eth = open_position(repository, entry_price=2000, liquidation_price=1800, position_size=2)
    short_btc = open_position(repository, user_id="user-2", trading_pair="BTC/USDT", side="short",
                              entry_price=46000, liquidation_price=50000, position_size=0.1)

    summary = engine.run_tick()

    assert summary.users_scanned == 2
    assert summary.positions_evaluated == 2
    eth = repository.get_margin_position(long_eth.id)
    assert eth.current_price == 2500.0
    assert eth.unrealized_pnl == pytest.approx(1000.0)
    btc = repository.get_margin_position(short_btc.id)
    assert btc.current_price == 45000.0
    assert btc.unrealized_pnl == pytest.approx(100.0)
    assert btc.status == PositionStatus.OPEN


def test_critical_position_is_liquidated_when_auto_deleverage_enabled(engine, repository, price_feed):
    set_leverage_settings(repository, auto_deleverage=True)
    position = open_position(repository, entry_price=2000, liquidation_price=1800, position_size=1, collateral=200)
    price_feed.prices["ETH"] = 1700.0

    summary = engine.run_tick()

    assert summary.liquidations == 1
    stored = repository.get_margin_position(position.id)
    assert stored.status == PositionStatus.LIQUIDATED
    assert stored.realized_pnl == pytest.approx(-200.0)
    [record] = repository.get_liquidation_records("user-1")
    assert record.loss_amount == pytest.approx(200.0)
    assert record.remaining_collateral == 0.0

    # the liquidated position is no longer part of later ticks
    summary = engine.run_tick()
    assert summary.users_scanned == 0
    assert len(repository.get_liquidation_records("user-1")) == 1


def test_critical_position_stays_open_when_auto_deleverage_disabled(engine, repository, price_feed):
    set_leverage_settings(repository, auto_deleverage=False)
    position = open_position(repository)
    price_feed.prices["ETH"] = 1700.0

    summary = engine.run_tick()

    assert summary.imminent_alerts_sent == 1
    assert summary.liquidations == 0
    assert repository.get_margin_position(position.id).status == PositionStatus.OPEN
    assert repository.get_liquidation_records("user-1") == []
    [alert] = repository.get_security_alerts("user-1")
    assert alert.alert_type == AlertType.LIQUIDATION_IMMINENT


def test_warning_is_sent_once_per_cooldown(engine, repository, price_feed, clock):
    set_leverage_settings(repository, warnings=True)
    open_position(repository, side="short", entry_price=2000, liquidation_price=2200)
    price_feed.prices["ETH"] = 2050.0

    sent = [engine.run_tick().warnings_sent for _ in range(3)]

    assert sent == [1, 0, 0]
    alerts = repository.get_security_alerts("user-1")
    assert [a.alert_type for a in alerts] == [AlertType.LIQUIDATION_WARNING]

    clock.advance(3600)
    assert engine.run_tick().warnings_sent == 1


def test_safe_position_raises_nothing(engine, repository):
    set_leverage_settings(repository, auto_deleverage=True, warnings=True)
    open_position(repository)

    summary = engine.run_tick()

    assert summary.positions_evaluated == 1
    assert summary.warnings_sent == summary.imminent_alerts_sent == summary.liquidations == 0
    assert repository.get_security_alerts("user-1") == []


def test_missing_price_skips_position_without_writing(engine, repository, price_feed):
    position = open_position(repository)
    del price_feed.prices["ETH"]

    summary = engine.run_tick()

    assert summary.positions_skipped == 1
    assert summary.positions_evaluated == 0
    assert summary.errors == []
    stored = repository.get_margin_position(position.id)
    assert stored.current_price is None
    assert stored.unrealized_pnl == 0.0


def test_failing_position_does_not_stop_others(engine, repository, price_feed):
    open_position(repository, trading_pair="BTC/USDT", liquidation_price=40000, entry_price=44000)
    eth = open_position(repository)
    price_feed.errors["BTC"] = RuntimeError("feed exploded")

    summary = engine.run_tick()

    assert summary.positions_evaluated == 1
    assert len(summary.errors) == 1
    assert repository.get_margin_position(eth.id).current_price == 2500.0


def test_failing_user_does_not_stop_others(make_engine, repository):
    open_position(repository, user_id="broken")
    healthy = open_position(repository, user_id="healthy")
    engine = make_engine(repository=FailingUserRepository(repository, failing_users={"broken"}))

    summary = engine.run_tick()

    assert summary.users_scanned == 2
    assert summary.positions_evaluated == 1
    assert len(summary.errors) == 1 and "broken" in summary.errors[0]
    assert repository.get_margin_position(healthy.id).current_price == 2500.0


def test_enumeration_failure_aborts_only_that_tick(make_engine, repository):
    position = open_position(repository)
    flaky = FailingUserRepository(repository, fail_enumeration=True)
    engine = make_engine(repository=flaky)

    summary = engine.run_tick()
    assert summary.users_scanned == 0
    assert len(summary.errors) == 1
    assert engine.last_tick is summary

    flaky.fail_enumeration = False
    summary = engine.run_tick()
    assert summary.positions_evaluated == 1
    assert repository.get_margin_position(position.id).current_price == 2500.0


def test_empty_pair_list_asks_repository_for_open_pairs(make_engine, repository, price_feed):
    price_feed.prices["SOL"] = 150.0
    position = open_position(repository, trading_pair="SOL/USDT", entry_price=140, liquidation_price=120)
    engine = make_engine(trading_pairs=[])

    summary = engine.run_tick()

    assert summary.positions_evaluated == 1
    assert repository.get_margin_position(position.id).current_price == 150.0


def test_pair_scan_ignores_unlisted_pairs(engine, repository, price_feed):
    price_feed.prices["SOL"] = 150.0
    open_position(repository, trading_pair="SOL/USDT", entry_price=140, liquidation_price=120)

    assert engine.run_tick().users_scanned == 0


def test_concurrent_users_are_all_evaluated(make_engine, repository):
    positions = [open_position(repository, user_id=f"user-{i}") for i in range(6)]
    engine = make_engine(max_concurrent_users=4)

    summary = engine.run_tick()

    assert summary.users_scanned == 6
    assert summary.positions_evaluated == 6
    assert all(repository.get_margin_position(p.id).current_price == 2500.0 for p in positions)


def test_ticks_do_not_overlap(make_engine, repository, price_feed):
    open_position(repository)
    entered = threading.Event()
    release = threading.Event()

    def blocking_lookup(symbol):
        entered.set()
        release.wait(5)
        return price_feed.get_crypto_price(symbol)

    engine = make_engine(price_lookup=blocking_lookup)
    first = threading.Thread(target=engine.run_tick)
    first.start()
    try:
        assert entered.wait(5)
        overlapping = engine.run_tick()
        assert overlapping.skipped_overlap is True
        assert overlapping.positions_evaluated == 0
    finally:
        release.set()
        first.join(5)

    assert engine.last_tick.positions_evaluated == 1
    assert engine.run_tick().skipped_overlap is False


def test_hung_price_lookup_times_out(make_engine, repository, price_feed):
    open_position(repository, trading_pair="BTC/USDT", entry_price=44000, liquidation_price=40000)
    eth = open_position(repository)

    def slow_btc(symbol):
        if symbol == "BTC":
            time.sleep(1)
        return price_feed.get_crypto_price(symbol)

    engine = make_engine(price_lookup=slow_btc, call_timeout=0.1)
    summary = engine.run_tick()

    assert summary.positions_skipped == 1
    assert summary.positions_evaluated == 1
    assert repository.get_margin_position(eth.id).current_price == 2500.0


def test_hung_lookup_does_not_starve_later_ticks(make_engine, repository, price_feed):
    price_feed.prices["SOL"] = 150.0
    open_position(repository, trading_pair="SOL/USDT", entry_price=140, liquidation_price=120)
    eth = open_position(repository)
    release = threading.Event()

    def sol_hangs(symbol):
        if symbol == "SOL":
            release.wait(10)
        return price_feed.get_crypto_price(symbol)

    engine = make_engine(price_lookup=sol_hangs, call_timeout=0.3, max_concurrent_users=1,
                         trading_pairs=["ETH/USDT", "SOL/USDT"])
    try:
        results = []
        for _ in range(4):
            summary = engine.run_tick()
            results.append((summary.positions_evaluated, summary.positions_skipped, len(summary.errors)))
    finally:
        release.set()

    assert results == [(1, 1, 0)] * 4
    assert repository.get_margin_position(eth.id).current_price == 2500.0


@pytest.mark.parametrize("payload", [{"price": 2500.0}, {"usd": None}, {"usd": 0}, {"usd": -5.0}])
def test_unusable_price_payload_is_treated_as_unavailable(make_engine, repository, payload):
    set_leverage_settings(repository, auto_deleverage=True)
    position = open_position(repository)
    engine = make_engine(price_lookup=lambda symbol: payload)

    summary = engine.run_tick()

    assert summary.positions_skipped == 1
    assert summary.errors == []
    assert repository.get_margin_position(position.id).status == PositionStatus.OPEN
    assert engine.check_position(position.id) is None


# ---------------------------------------------------------------------- #
# Queries
# ---------------------------------------------------------------------- #
def test_check_position_is_read_only(engine, repository, price_feed):
    set_leverage_settings(repository, auto_deleverage=True)
    position = open_position(repository)
    price_feed.prices["ETH"] = 1700.0

    assessment = engine.check_position(position.id)

    assert assessment.risk_level == RiskLevel.CRITICAL
    assert assessment.distance_to_liquidation < 0
    stored = repository.get_margin_position(position.id)
    assert stored.status == PositionStatus.OPEN
    assert stored.current_price is None
    assert repository.get_liquidation_records("user-1") == []
    assert repository.get_security_alerts("user-1") == []


def test_check_position_not_found(engine):
    with pytest.raises(PositionNotFoundError):
        engine.check_position("does-not-exist")


def test_check_position_without_price(engine, repository, price_feed):
    position = open_position(repository)
    del price_feed.prices["ETH"]

    assert engine.check_position(position.id) is None


def test_user_risk_metrics(engine, repository, price_feed):
    price_feed.prices["ETH"] = 2050.0
    open_position(repository, side="short", entry_price=2000, liquidation_price=2200)  # warning
    open_position(repository, side="short", entry_price=2000, liquidation_price=2100)  # critical
    open_position(repository, side="long", entry_price=2000, liquidation_price=1500)   # safe
    open_position(repository, user_id="someone-else")

    metrics = engine.get_user_risk_metrics("user-1")

    assert metrics.total_positions == 3
    assert metrics.critical_positions == 1
    assert metrics.warning_positions == 1
    assert metrics.safe_positions == 1
    assert metrics.critical_positions + metrics.warning_positions + metrics.safe_positions == metrics.total_positions
    assert len(repository.get_user_margin_positions("user-1", PositionStatus.OPEN)) == metrics.total_positions
    assert {a.user_id for a in metrics.positions} == {"user-1"}
    assert repository.get_security_alerts("user-1") == []


def test_user_risk_metrics_for_user_without_positions(engine):
    metrics = engine.get_user_risk_metrics("nobody")

    assert metrics.total_positions == 0
    assert metrics.positions == []
