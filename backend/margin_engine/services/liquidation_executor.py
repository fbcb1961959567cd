import enum
import threading
import zlib
from datetime import datetime
from typing import Callable, List, Optional

from margin_engine.core.config import settings
from margin_engine.core.logging import get_logger, log_risk_event
from margin_engine.core.scheduler import utc_now
from margin_engine.models.alert import AlertSeverity, AlertType
from margin_engine.models.margin import LiquidationType, PositionSide, PositionStatus
from margin_engine.schemas.margin import (
    LiquidationRecordCreate,
    MarginPosition,
    RiskAssessment,
    SecurityAlertCreate,
)
from margin_engine.services.alert_throttle import BaseAlertThrottle, InMemoryAlertThrottle
from margin_engine.services.position_repository import BasePositionRepository

logger = get_logger(__name__)


class CriticalAction(str, enum.Enum):
    LIQUIDATED = "liquidated"
    ALERTED = "alerted"
    THROTTLED = "throttled"
    NONE = "none"


def liquidation_loss(position: MarginPosition) -> float:
    """Loss realised when a position is closed at its liquidation price"""
    if PositionSide(position.side) == PositionSide.LONG:
        return (position.entry_price - position.liquidation_price) * position.position_size
    return (position.liquidation_price - position.entry_price) * position.position_size


class LiquidationExecutor:
    """
    Force-closes critical positions for users with auto-deleverage enabled,
    otherwise raises a liquidation_imminent alert and leaves the position open.
    """

    LOCK_STRIPES = 64

    def __init__(self,
                 repository: BasePositionRepository,
                 throttle: Optional[BaseAlertThrottle] = None,
                 clock: Callable[[], datetime] = utc_now,
                 imminent_cooldown_seconds: Optional[float] = None):
        self.repository = repository
        self.throttle = throttle or InMemoryAlertThrottle()
        self.clock = clock
        self.imminent_cooldown_seconds = (
            imminent_cooldown_seconds if imminent_cooldown_seconds is not None
            else settings.IMMINENT_ALERT_COOLDOWN_SECONDS
        )
        # liquidation of one position is serialized on its stripe
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(self.LOCK_STRIPES)]

    def handle_critical(self, position: MarginPosition, assessment: RiskAssessment) -> CriticalAction:
        logger.warning(f"🚨 CRITICAL: Position {position.id} at liquidation threshold",
                       user_id=position.user_id, trading_pair=position.trading_pair,
                       current_price=assessment.current_price)

        user_settings = self.repository.get_user_leverage_settings(position.user_id)

        if user_settings is not None and user_settings.auto_deleverage_enabled:
            record = self.liquidate(position.id, LiquidationType.AUTO)
            return CriticalAction.LIQUIDATED if record else CriticalAction.NONE

        return self.send_liquidation_alert(position, assessment)

    def liquidate(self, position_id: str,
                  liquidation_type: LiquidationType = LiquidationType.AUTO) -> Optional[LiquidationRecordCreate]:
        """Close the position at its liquidation price; no-op unless it is still open"""
        with self._lock_for(position_id):
            position = self.repository.get_margin_position(position_id)
            if position is None or position.status != PositionStatus.OPEN:
                logger.info(f"Skipping liquidation of position {position_id}: no longer open")
                return None

            loss_amount = liquidation_loss(position)
            remaining_collateral = max(0.0, position.collateral - loss_amount)

            record = LiquidationRecordCreate(
                position_id=position.id,
                user_id=position.user_id,
                trading_pair=position.trading_pair,
                side=position.side,
                leverage=position.leverage,
                entry_price=position.entry_price,
                liquidation_price=position.liquidation_price,
                position_size=position.position_size,
                loss_amount=loss_amount,
                remaining_collateral=remaining_collateral,
                liquidation_type=liquidation_type,
            )
            applied = self.repository.record_liquidation(record, {
                "status": PositionStatus.LIQUIDATED,
                "closed_at": self.clock(),
                "realized_pnl": -loss_amount,
            })
            if not applied:
                logger.info(f"Position {position_id} was closed concurrently, liquidation not applied")
                return None

        logger.warning(f"⚡ Position {position_id} liquidated ({liquidation_type.value}) - Loss: {loss_amount:.2f}")
        log_risk_event("position_liquidated", record.model_dump(mode="json"), user_id=position.user_id)
        return record

    def send_liquidation_alert(self, position: MarginPosition, assessment: RiskAssessment) -> CriticalAction:
        key = f"{AlertType.LIQUIDATION_IMMINENT.value}:{position.id}"
        if not self.throttle.acquire(key, self.imminent_cooldown_seconds):
            return CriticalAction.THROTTLED

        alert = SecurityAlertCreate(
            wallet_address=position.user_id,
            alert_type=AlertType.LIQUIDATION_IMMINENT,
            severity=AlertSeverity.CRITICAL,
            title="Liquidation imminent",
            description=(
                f"Position {position.id} ({position.trading_pair}) at critical liquidation threshold. "
                f"Auto-deleverage is disabled - manual action required!"
            ),
            metadata={
                "position_id": position.id,
                "trading_pair": position.trading_pair,
                "current_price": assessment.current_price,
                "liquidation_price": assessment.liquidation_price,
                "distance_to_liquidation": assessment.distance_to_liquidation,
            },
        )
        try:
            self.repository.create_security_alert(alert)
        except Exception:
            self.throttle.release(key)
            raise

        logger.warning(f"🚨 LIQUIDATION ALERT for position {position.id} - AUTO-DELEVERAGE DISABLED")
        log_risk_event("liquidation_imminent", alert.metadata, user_id=position.user_id)
        return CriticalAction.ALERTED

    def _lock_for(self, position_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(position_id.encode()) % self.LOCK_STRIPES]
