import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from margin_engine.core.config import settings
from margin_engine.core.exceptions import CollaboratorTimeoutError, PositionNotFoundError
from margin_engine.core.logging import get_logger, log_risk_event
from margin_engine.core.scheduler import BaseTicker, ThreadTicker, utc_now
from margin_engine.models.margin import PositionStatus
from margin_engine.schemas.margin import (
    EngineStatus,
    MarginPosition,
    RiskAssessment,
    RiskLevel,
    TickSummary,
    UserRiskMetrics,
)
from margin_engine.services.alert_throttle import BaseAlertThrottle, build_alert_throttle
from margin_engine.services.call_guard import CallGuard, GuardedPositionRepository
from margin_engine.services.liquidation_executor import CriticalAction, LiquidationExecutor
from margin_engine.services.position_repository import BasePositionRepository
from margin_engine.services.risk_classifier import RiskClassifier
from margin_engine.services.warning_notifier import WarningNotifier

logger = get_logger(__name__)

PriceLookup = Callable[[str], Any]


class MarginRiskEngine:
    """
    Periodically evaluates every open margin position:
    1. Marks it to market (current price, unrealized P&L)
    2. Liquidates or raises an imminent alert when critical
    3. Raises a throttled warning when inside the warning band

    Ticks never overlap. Failures are isolated per user and per position.
    """

    def __init__(self,
                 repository: BasePositionRepository,
                 price_lookup: PriceLookup,
                 classifier: Optional[RiskClassifier] = None,
                 throttle: Optional[BaseAlertThrottle] = None,
                 ticker: Optional[BaseTicker] = None,
                 clock: Callable[[], datetime] = utc_now,
                 interval_seconds: Optional[float] = None,
                 trading_pairs: Optional[List[str]] = None,
                 max_concurrent_users: Optional[int] = None,
                 call_timeout: Optional[float] = None):
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.MONITOR_INTERVAL_SECONDS
        self.trading_pairs = list(trading_pairs if trading_pairs is not None else settings.MONITORED_TRADING_PAIRS)
        self.max_concurrent_users = max(1, max_concurrent_users or settings.MAX_CONCURRENT_USERS)
        self.clock = clock
        self.price_lookup = price_lookup
        self.ticker = ticker or ThreadTicker()

        self._guard = CallGuard(
            timeout=call_timeout if call_timeout is not None else settings.CALL_TIMEOUT_SECONDS,
        )
        self.repository = GuardedPositionRepository(repository, self._guard)
        self.classifier = classifier or RiskClassifier()
        throttle = throttle or build_alert_throttle()
        self.executor = LiquidationExecutor(self.repository, throttle=throttle, clock=clock)
        self.notifier = WarningNotifier(self.repository, throttle=throttle)

        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._running = False
        self.last_tick: Optional[TickSummary] = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                logger.warning("⚠️ Margin Risk Engine already running")
                return
            self._running = True

        logger.info("🛡️ Starting Margin Risk Engine...")
        self.run_tick()
        self.ticker.start(self._scheduled_tick, self.interval_seconds)
        logger.info(f"✅ Margin Risk Engine started - monitoring positions every {self.interval_seconds}s")

    def stop(self) -> None:
        with self._state_lock:
            if not self._running:
                return
            self._running = False
        self.ticker.stop()
        logger.info("🛑 Margin Risk Engine stopped")

    def close(self) -> None:
        self.stop()
        hung = self._guard.hung_calls()
        if hung:
            logger.warning(f"Closing with {len(hung)} hung collaborator calls", calls=hung)

    def status(self) -> EngineStatus:
        return EngineStatus(
            running=self._running,
            interval_seconds=self.interval_seconds,
            last_tick=self.last_tick,
        )

    def _scheduled_tick(self) -> None:
        if self._running:
            self.run_tick()

    # ------------------------------------------------------------------ #
    # Monitoring tick
    # ------------------------------------------------------------------ #
    def run_tick(self) -> TickSummary:
        """Evaluate all open positions once; returns immediately if a tick is already in flight"""
        summary = TickSummary(started_at=self.clock())
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous margin risk tick still running, skipping")
            summary.skipped_overlap = True
            summary.finished_at = self.clock()
            return summary

        try:
            try:
                user_ids = self._get_users_with_open_positions()
            except Exception as e:
                logger.error(f"❌ Error getting users with open positions: {e}", exc_info=True)
                summary.errors.append(f"enumerate users: {e}")
                return summary

            summary.users_scanned = len(user_ids)
            for user_id, result in self._check_users(user_ids):
                if "error" in result:
                    summary.errors.append(f"user {user_id}: {result['error']}")
                    continue
                summary.positions_evaluated += result["evaluated"]
                summary.positions_skipped += result["skipped"]
                summary.warnings_sent += result["warnings"]
                summary.imminent_alerts_sent += result["imminent_alerts"]
                summary.liquidations += result["liquidations"]
                summary.errors.extend(result["errors"])
            return summary
        finally:
            summary.finished_at = self.clock()
            self.last_tick = summary
            self._tick_lock.release()
            log_risk_event("tick_completed", summary.model_dump(mode="json"))

    def _get_users_with_open_positions(self) -> List[str]:
        pairs = self.trading_pairs or self.repository.get_open_trading_pairs()
        user_ids = set()
        for pair in pairs:
            positions = self.repository.get_margin_positions_by_pair(pair, PositionStatus.OPEN)
            user_ids.update(p.user_id for p in positions)
        return sorted(user_ids)

    def _check_users(self, user_ids: List[str]):
        if self.max_concurrent_users == 1 or len(user_ids) <= 1:
            for user_id in user_ids:
                yield user_id, self._check_user_safely(user_id)
            return

        with ThreadPoolExecutor(max_workers=self.max_concurrent_users,
                                thread_name_prefix="margin-risk-user") as pool:
            future_to_user = {
                pool.submit(self._check_user_safely, user_id): user_id
                for user_id in user_ids
            }
            for future in as_completed(future_to_user):
                yield future_to_user[future], future.result()

    def _check_user_safely(self, user_id: str) -> Dict[str, Any]:
        try:
            return self._check_user_positions(user_id)
        except Exception as e:
            logger.error(f"Error checking positions for user {user_id}: {e}", exc_info=True)
            return {"error": str(e)}

    def _check_user_positions(self, user_id: str) -> Dict[str, Any]:
        result = {
            "evaluated": 0,
            "skipped": 0,
            "warnings": 0,
            "imminent_alerts": 0,
            "liquidations": 0,
            "errors": [],
        }
        positions = self.repository.get_user_margin_positions(user_id, PositionStatus.OPEN)

        for position in positions:
            try:
                self._evaluate_position(position, result)
            except Exception as e:
                logger.error(f"Error evaluating position {position.id}: {e}", exc_info=True)
                result["errors"].append(f"position {position.id}: {e}")

        return result

    def _evaluate_position(self, position: MarginPosition, result: Dict[str, Any]) -> None:
        assessment = self.classifier.classify(position, self._get_price(position.base_asset))
        if assessment is None:
            logger.warning(f"⚠️ Could not get price for {position.base_asset}, skipping position {position.id}")
            result["skipped"] += 1
            return

        marked = self.repository.update_margin_position(
            position.id,
            self.classifier.mark_to_market(position, assessment.current_price),
            expected_status=PositionStatus.OPEN,
        )
        if not marked:
            logger.info(f"Position {position.id} closed during tick, skipping")
            result["skipped"] += 1
            return
        result["evaluated"] += 1

        if assessment.risk_level == RiskLevel.CRITICAL:
            action = self.executor.handle_critical(position, assessment)
            if action == CriticalAction.LIQUIDATED:
                result["liquidations"] += 1
            elif action == CriticalAction.ALERTED:
                result["imminent_alerts"] += 1
        elif assessment.risk_level == RiskLevel.WARNING:
            if self.notifier.notify(position, assessment):
                result["warnings"] += 1

    def _get_price(self, symbol: str) -> Optional[float]:
        try:
            price = self._guard.call("get_crypto_price", self.price_lookup, symbol,
                                     key=f"get_crypto_price:{symbol}")
        except CollaboratorTimeoutError:
            return None
        if price is None:
            return None
        usd = price.get("usd") if isinstance(price, dict) else getattr(price, "usd", None)
        if usd is None or float(usd) <= 0:
            logger.warning(f"⚠️ Ignoring unusable price for {symbol}: {usd!r}")
            return None
        return float(usd)

    # ------------------------------------------------------------------ #
    # Read-only queries
    # ------------------------------------------------------------------ #
    def check_position(self, position_id: str) -> Optional[RiskAssessment]:
        """
        Classify one position on demand. Raises PositionNotFoundError for an
        unknown id; returns None if no price is available. Never writes or alerts.
        """
        position = self.repository.get_margin_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return self.classifier.classify(position, self._get_price(position.base_asset))

    def get_user_risk_metrics(self, user_id: str) -> UserRiskMetrics:
        positions = self.repository.get_user_margin_positions(user_id, PositionStatus.OPEN)
        assessments: List[RiskAssessment] = []

        for position in positions:
            try:
                assessment = self.classifier.classify(position, self._get_price(position.base_asset))
            except Exception as e:
                logger.error(f"Error analyzing position {position.id}: {e}")
                continue
            if assessment is not None:
                assessments.append(assessment)

        def count(level: RiskLevel) -> int:
            return sum(1 for a in assessments if a.risk_level == level)

        return UserRiskMetrics(
            total_positions=len(assessments),
            critical_positions=count(RiskLevel.CRITICAL),
            warning_positions=count(RiskLevel.WARNING),
            safe_positions=count(RiskLevel.SAFE),
            positions=assessments,
        )


_default_engine: Optional[MarginRiskEngine] = None
_default_engine_lock = threading.Lock()


def get_margin_risk_engine() -> MarginRiskEngine:
    """Process-wide engine wired to the configured database and price feed"""
    global _default_engine
    with _default_engine_lock:
        if _default_engine is None:
            from margin_engine.core.database import get_session_maker
            from margin_engine.services.position_repository import SqlAlchemyPositionRepository
            from margin_engine.services.price_service import price_service

            _default_engine = MarginRiskEngine(
                repository=SqlAlchemyPositionRepository(get_session_maker()),
                price_lookup=price_service.get_crypto_price,
            )
        return _default_engine
