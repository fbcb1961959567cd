"""
Celery tasks driving the margin risk engine from a worker instead of the
in-process ticker.
"""

from typing import Any, Dict

from margin_engine.core.celery import celery_app
from margin_engine.core.exceptions import PositionNotFoundError
from margin_engine.core.logging import get_logger
from margin_engine.core.scheduler import utc_now
from margin_engine.services.margin_risk_engine import get_margin_risk_engine

logger = get_logger(__name__)


@celery_app.task(name="tasks.run_margin_risk_tick")
def run_margin_risk_tick() -> Dict[str, Any]:
    """
    Scheduled task that evaluates every open margin position once
    """
    engine = get_margin_risk_engine()
    summary = engine.run_tick()

    if summary.skipped_overlap:
        logger.warning("Margin risk tick skipped, previous tick still running")
    else:
        logger.info(
            "🛡️ Margin risk tick completed",
            users_scanned=summary.users_scanned,
            positions_evaluated=summary.positions_evaluated,
            liquidations=summary.liquidations,
            warnings_sent=summary.warnings_sent,
            errors_count=len(summary.errors),
        )

    return summary.model_dump(mode="json")


@celery_app.task(name="tasks.check_margin_position")
def check_margin_position(position_id: str) -> Dict[str, Any]:
    """
    Classify a single position on demand (read-only)
    """
    try:
        assessment = get_margin_risk_engine().check_position(position_id)
    except PositionNotFoundError:
        logger.error(f"Position not found: {position_id}")
        return {"status": "position_not_found", "position_id": position_id}

    if assessment is None:
        return {
            "status": "price_unavailable",
            "position_id": position_id,
            "timestamp": utc_now().isoformat(),
        }

    return {
        "status": "ok",
        "position_id": position_id,
        "assessment": assessment.model_dump(mode="json"),
        "timestamp": utc_now().isoformat(),
    }
