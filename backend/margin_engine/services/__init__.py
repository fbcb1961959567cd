# Business logic services package
from .risk_classifier import RiskClassifier
from .liquidation_executor import LiquidationExecutor
from .warning_notifier import WarningNotifier
from .margin_risk_engine import MarginRiskEngine, get_margin_risk_engine

__all__ = [
    "RiskClassifier",
    "LiquidationExecutor",
    "WarningNotifier",
    "MarginRiskEngine",
    "get_margin_risk_engine",
]
