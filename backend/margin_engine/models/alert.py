from sqlalchemy import Column, String, DateTime, Text, Boolean
from sqlalchemy.sql import func
import enum

from margin_engine.models.base_class import Base
from margin_engine.models.margin import generate_uuid


class AlertType(str, enum.Enum):
    LIQUIDATION_WARNING = "liquidation_warning"
    LIQUIDATION_IMMINENT = "liquidation_imminent"


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityAlert(Base):
    """Append-only user notification record"""
    
    __tablename__ = "security_alerts"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    wallet_address = Column(String(255), nullable=False, index=True)  # target user/wallet
    alert_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(10), nullable=False, default=AlertSeverity.MEDIUM.value)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    alert_metadata = Column("metadata", Text)  # JSON string
    is_read = Column(Boolean, default=False)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now())
