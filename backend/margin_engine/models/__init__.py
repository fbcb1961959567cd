# Database models package

from .base_class import Base
from .margin import MarginPosition, LiquidationRecord, UserLeverageSettings
from .alert import SecurityAlert

__all__ = [
    "Base",
    "MarginPosition",
    "LiquidationRecord",
    "UserLeverageSettings",
    "SecurityAlert",
]
