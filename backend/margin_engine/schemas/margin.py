from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import enum

from margin_engine.models.margin import PositionSide, PositionStatus, LiquidationType
from margin_engine.models.alert import AlertType, AlertSeverity


class RiskLevel(str, enum.Enum):
    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"


class MarginPosition(BaseModel):
    """Detached snapshot of a margin position"""
    id: str
    user_id: str
    trading_pair: str
    side: PositionSide
    leverage: float
    entry_price: float
    position_size: float
    collateral: float
    liquidation_price: float
    current_price: Optional[float] = None
    unrealized_pnl: Optional[float] = 0.0
    status: PositionStatus = PositionStatus.OPEN
    realized_pnl: Optional[float] = None
    closed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def base_asset(self) -> str:
        return self.trading_pair.split("/")[0].upper()

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


class MarginPositionCreate(BaseModel):
    user_id: str
    trading_pair: str
    side: PositionSide
    leverage: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    position_size: float = Field(gt=0)
    collateral: float = Field(ge=0)
    liquidation_price: float = Field(gt=0)


class UserLeverageSettings(BaseModel):
    user_id: str
    auto_deleverage_enabled: bool = False
    liquidation_warning_enabled: bool = True

    model_config = ConfigDict(from_attributes=True)


class LiquidationRecordCreate(BaseModel):
    position_id: str
    user_id: str
    trading_pair: str
    side: PositionSide
    leverage: float
    entry_price: float
    liquidation_price: float
    position_size: float
    loss_amount: float
    remaining_collateral: float
    liquidation_type: LiquidationType = LiquidationType.AUTO


class LiquidationRecord(LiquidationRecordCreate):
    id: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SecurityAlertCreate(BaseModel):
    wallet_address: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    description: str
    metadata: Dict[str, Any] = {}


class SecurityAlert(SecurityAlertCreate):
    id: str
    is_read: bool = False
    created_at: Optional[datetime] = None


class RiskAssessment(BaseModel):
    """Per-tick risk view of one position; never persisted as its own record"""
    position_id: str
    user_id: str
    trading_pair: str
    current_price: float
    liquidation_price: float
    risk_level: RiskLevel
    distance_to_liquidation: float  # percent, positive on the safe side


class UserRiskMetrics(BaseModel):
    total_positions: int
    critical_positions: int
    warning_positions: int
    safe_positions: int
    positions: List[RiskAssessment]


class TickSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped_overlap: bool = False
    users_scanned: int = 0
    positions_evaluated: int = 0
    positions_skipped: int = 0
    warnings_sent: int = 0
    imminent_alerts_sent: int = 0
    liquidations: int = 0
    errors: List[str] = []


class EngineStatus(BaseModel):
    running: bool
    interval_seconds: float
    last_tick: Optional[TickSummary] = None
