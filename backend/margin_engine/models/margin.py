from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, CheckConstraint, Index
from sqlalchemy.sql import func
import enum
import uuid

from margin_engine.models.base_class import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


class PositionSide(str, enum.Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, enum.Enum):
    OPEN = "open"
    LIQUIDATED = "liquidated"
    CLOSED = "closed"


class LiquidationType(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


class MarginPosition(Base):
    """Leveraged margin position"""
    
    __tablename__ = "margin_positions"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    
    # Position details
    trading_pair = Column(String(20), nullable=False)  # ETH/USDT, BTC/USDT, etc.
    side = Column(String(5), nullable=False)  # long, short
    leverage = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    position_size = Column(Float, nullable=False)  # base-asset units
    collateral = Column(Float, nullable=False)  # quote-currency margin
    liquidation_price = Column(Float, nullable=False)  # fixed when the position is opened
    
    # Live state, refreshed every monitoring tick while open
    current_price = Column(Float)
    unrealized_pnl = Column(Float, default=0.0)
    
    # Set once on liquidation/close
    status = Column(String(12), nullable=False, default=PositionStatus.OPEN.value)
    realized_pnl = Column(Float, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    
    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    
    __table_args__ = (
        CheckConstraint(side.in_(['long', 'short']), name='valid_margin_side'),
        CheckConstraint(status.in_(['open', 'liquidated', 'closed']), name='valid_margin_status'),
        CheckConstraint('leverage > 0', name='positive_leverage'),
        Index('ix_margin_positions_pair_status', 'trading_pair', 'status'),
    )


class LiquidationRecord(Base):
    """Append-only audit entry, one per liquidation event"""
    
    __tablename__ = "liquidation_records"
    
    id = Column(String(36), primary_key=True, default=generate_uuid)
    position_id = Column(String(36), nullable=False, unique=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    trading_pair = Column(String(20), nullable=False)
    side = Column(String(5), nullable=False)
    leverage = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    liquidation_price = Column(Float, nullable=False)
    position_size = Column(Float, nullable=False)
    loss_amount = Column(Float, nullable=False)
    remaining_collateral = Column(Float, nullable=False)
    liquidation_type = Column(String(10), nullable=False, default=LiquidationType.AUTO.value)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    
    __table_args__ = (
        CheckConstraint(liquidation_type.in_(['auto', 'manual']), name='valid_liquidation_type'),
    )


class UserLeverageSettings(Base):
    """Per-user leverage opt-in flags"""
    
    __tablename__ = "user_leverage_settings"
    
    user_id = Column(String(255), primary_key=True)
    auto_deleverage_enabled = Column(Boolean, nullable=False, default=False)
    liquidation_warning_enabled = Column(Boolean, nullable=False, default=True)
    
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
