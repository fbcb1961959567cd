"""
Margin Risk API Endpoints
On-demand risk checks and lifecycle control for the margin risk engine
"""

from fastapi import APIRouter, Depends, HTTPException

from margin_engine.api import deps
from margin_engine.core.exceptions import CollaboratorTimeoutError, PositionNotFoundError
from margin_engine.core.logging import get_logger
from margin_engine.schemas.margin import EngineStatus, RiskAssessment, TickSummary, UserRiskMetrics
from margin_engine.services.margin_risk_engine import MarginRiskEngine

logger = get_logger(__name__)
router = APIRouter()


@router.get("/positions/{position_id}", response_model=RiskAssessment, summary="Check a single position")
def check_position(
    position_id: str,
    engine: MarginRiskEngine = Depends(deps.get_engine)
):
    """Classify one position against the current price without side effects"""
    try:
        assessment = engine.check_position(position_id)
    except PositionNotFoundError:
        raise HTTPException(status_code=404, detail="Position not found")
    except CollaboratorTimeoutError as e:
        logger.warning(f"Position check timed out for {position_id}: {e}")
        raise HTTPException(status_code=503, detail="Position store did not respond in time")

    if assessment is None:
        raise HTTPException(status_code=503, detail="Price unavailable for this position's asset")
    return assessment


@router.get("/users/{user_id}/metrics", response_model=UserRiskMetrics, summary="Get a user's risk metrics")
def get_user_risk_metrics(
    user_id: str,
    engine: MarginRiskEngine = Depends(deps.get_engine)
):
    try:
        return engine.get_user_risk_metrics(user_id)
    except Exception as e:
        logger.error(f"❌ Error getting risk metrics for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@router.get("/status", response_model=EngineStatus, summary="Margin risk engine status")
def get_status(engine: MarginRiskEngine = Depends(deps.get_engine)):
    return engine.status()


@router.post("/start", response_model=EngineStatus)
def start_engine(engine: MarginRiskEngine = Depends(deps.get_engine)):
    engine.start()
    return engine.status()


@router.post("/stop", response_model=EngineStatus)
def stop_engine(engine: MarginRiskEngine = Depends(deps.get_engine)):
    engine.stop()
    return engine.status()


@router.post("/ticks", response_model=TickSummary, summary="Run one monitoring tick now")
def run_tick(engine: MarginRiskEngine = Depends(deps.get_engine)):
    summary = engine.run_tick()
    if summary.skipped_overlap:
        raise HTTPException(status_code=409, detail="A monitoring tick is already running")
    return summary
