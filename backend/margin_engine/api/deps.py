from margin_engine.services.margin_risk_engine import MarginRiskEngine, get_margin_risk_engine


def get_engine() -> MarginRiskEngine:
    return get_margin_risk_engine()
