from typing import Optional

from margin_engine.core.config import settings
from margin_engine.core.logging import get_logger, log_risk_event
from margin_engine.models.alert import AlertSeverity, AlertType
from margin_engine.schemas.margin import MarginPosition, RiskAssessment, SecurityAlertCreate
from margin_engine.services.alert_throttle import BaseAlertThrottle, InMemoryAlertThrottle
from margin_engine.services.position_repository import BasePositionRepository

logger = get_logger(__name__)


class WarningNotifier:
    """Raises liquidation_warning alerts for opted-in users, at most once per position per cooldown"""

    def __init__(self,
                 repository: BasePositionRepository,
                 throttle: Optional[BaseAlertThrottle] = None,
                 cooldown_seconds: Optional[float] = None):
        self.repository = repository
        self.throttle = throttle or InMemoryAlertThrottle()
        self.cooldown_seconds = cooldown_seconds if cooldown_seconds is not None else settings.WARNING_COOLDOWN_SECONDS

    def notify(self, position: MarginPosition, assessment: RiskAssessment) -> bool:
        user_settings = self.repository.get_user_leverage_settings(position.user_id)
        if user_settings is None or not user_settings.liquidation_warning_enabled:
            return False

        key = f"{AlertType.LIQUIDATION_WARNING.value}:{position.id}"
        if not self.throttle.acquire(key, self.cooldown_seconds):
            return False

        alert = SecurityAlertCreate(
            wallet_address=position.user_id,
            alert_type=AlertType.LIQUIDATION_WARNING,
            severity=AlertSeverity.HIGH,
            title="Liquidation warning",
            description=(
                f"Position {position.id} ({assessment.trading_pair}) approaching liquidation. "
                f"Current: ${assessment.current_price:.2f}, Liquidation: ${assessment.liquidation_price:.2f}"
            ),
            metadata=assessment.model_dump(mode="json"),
        )
        try:
            self.repository.create_security_alert(alert)
        except Exception:
            self.throttle.release(key)
            raise

        logger.info(
            f"⚠️ LIQUIDATION WARNING for position {position.id}",
            trading_pair=assessment.trading_pair,
            current_price=assessment.current_price,
            liquidation_price=assessment.liquidation_price,
            distance=round(assessment.distance_to_liquidation, 2),
        )
        log_risk_event("liquidation_warning", alert.metadata, user_id=position.user_id)
        return True
