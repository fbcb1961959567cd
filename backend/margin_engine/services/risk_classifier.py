"""
Risk classification for leveraged positions.

All functions here are pure: they take a position snapshot and a price and
return numbers. Persisting the mark-to-market values is the monitor's job.

Thresholds are fractions of the liquidation price:

- long:  critical when price <= liq * LIQUIDATION_THRESHOLD
- short: critical when price >= liq * LIQUIDATION_THRESHOLD,
         warning when price >= liq * WARNING_THRESHOLD

The long warning band has two formulas (LONG_WARNING_FORMULA):

- "source":   price <= liq * (1 + (1 - WARNING_THRESHOLD)), i.e. within
              (1 - WARNING_THRESHOLD) of the liquidation price measured as
              distance-to-liquidation, the same band the short side uses.
- "mirrored": liq / price >= WARNING_THRESHOLD, the ratio reflection of the
              short rule price / liq >= WARNING_THRESHOLD.
"""

from typing import Optional

from margin_engine.core.config import settings
from margin_engine.models.margin import PositionSide
from margin_engine.schemas.margin import MarginPosition, RiskAssessment, RiskLevel

LONG_WARNING_SOURCE = "source"
LONG_WARNING_MIRRORED = "mirrored"


def distance_to_liquidation(side: PositionSide, current_price: float, liquidation_price: float) -> float:
    """Signed percent distance; positive on the safe side, negative past the liquidation line"""
    if liquidation_price <= 0:
        raise ValueError(f"liquidation price must be positive, got {liquidation_price}")
    if PositionSide(side) == PositionSide.LONG:
        return (current_price - liquidation_price) / liquidation_price * 100
    return (liquidation_price - current_price) / liquidation_price * 100


def unrealized_pnl(side: PositionSide, entry_price: float, current_price: float, position_size: float) -> float:
    if PositionSide(side) == PositionSide.LONG:
        return (current_price - entry_price) * position_size
    return (entry_price - current_price) * position_size


def classify_risk_level(side: PositionSide,
                        current_price: float,
                        liquidation_price: float,
                        liquidation_threshold: float,
                        warning_threshold: float,
                        long_warning_formula: str = LONG_WARNING_SOURCE) -> RiskLevel:
    if PositionSide(side) == PositionSide.LONG:
        if current_price <= liquidation_price * liquidation_threshold:
            return RiskLevel.CRITICAL
        if long_warning_formula == LONG_WARNING_MIRRORED:
            in_warning_band = liquidation_price / current_price >= warning_threshold
        else:
            in_warning_band = current_price <= liquidation_price * (1 + (1 - warning_threshold))
        return RiskLevel.WARNING if in_warning_band else RiskLevel.SAFE

    if current_price >= liquidation_price * liquidation_threshold:
        return RiskLevel.CRITICAL
    if current_price >= liquidation_price * warning_threshold:
        return RiskLevel.WARNING
    return RiskLevel.SAFE


class RiskClassifier:
    """Maps (position, current price) to a RiskAssessment"""

    def __init__(self,
                 liquidation_threshold: Optional[float] = None,
                 warning_threshold: Optional[float] = None,
                 long_warning_formula: Optional[str] = None):
        self.liquidation_threshold = liquidation_threshold if liquidation_threshold is not None else settings.LIQUIDATION_THRESHOLD
        self.warning_threshold = warning_threshold if warning_threshold is not None else settings.WARNING_THRESHOLD
        self.long_warning_formula = long_warning_formula or settings.LONG_WARNING_FORMULA

        if not 0 < self.warning_threshold < self.liquidation_threshold <= 1:
            raise ValueError("thresholds must satisfy 0 < warning < liquidation <= 1")
        if self.long_warning_formula not in (LONG_WARNING_SOURCE, LONG_WARNING_MIRRORED):
            raise ValueError(f"unknown long warning formula: {self.long_warning_formula}")

    def classify(self, position: MarginPosition, current_price: Optional[float]) -> Optional[RiskAssessment]:
        """Returns None when no price is available for the position's base asset"""
        if current_price is None:
            return None
        if current_price <= 0:
            raise ValueError(f"price for {position.base_asset} must be positive, got {current_price}")

        return RiskAssessment(
            position_id=position.id,
            user_id=position.user_id,
            trading_pair=position.trading_pair,
            current_price=current_price,
            liquidation_price=position.liquidation_price,
            risk_level=classify_risk_level(
                position.side,
                current_price,
                position.liquidation_price,
                self.liquidation_threshold,
                self.warning_threshold,
                self.long_warning_formula,
            ),
            distance_to_liquidation=distance_to_liquidation(
                position.side, current_price, position.liquidation_price
            ),
        )

    def mark_to_market(self, position: MarginPosition, current_price: float) -> dict:
        """Live fields to write back for an open position"""
        return {
            "current_price": current_price,
            "unrealized_pnl": unrealized_pnl(
                position.side, position.entry_price, current_price, position.position_size
            ),
        }
