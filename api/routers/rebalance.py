from fastapi import APIRouter, Depends

from api.dependencies import get_rebalance_scheduler
from core.logging import get_api_logger_safe
from services.rebalancer.models import RebalanceRunSummary
from services.rebalancer.scheduler import RebalanceScheduler

router = APIRouter(prefix="/rebalance", tags=["Rebalance"])
logger = get_api_logger_safe("api.routers.rebalance")


@router.post("/run", response_model=RebalanceRunSummary)
async def run_rebalance(scheduler: RebalanceScheduler = Depends(get_rebalance_scheduler)):
    """Evaluate every active portfolio once and rebalance the ones that are due or drifted."""
    summary = await scheduler.run_all()
    logger.info(
        "Rebalance run triggered via API",
        success=summary.success,
        rebalanced=summary.rebalanced_count,
        failed=len(summary.errors),
    )
    return summary
