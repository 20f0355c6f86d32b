"""
Pipeline statistics endpoint
"""
from fastapi import APIRouter, Depends, Request
import logging

from api.dependencies import get_orchestrator
from pipeline.orchestrator import PipelineOrchestrator
from schemas.api import StatsResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """
    Get pipeline statistics.

    Returns:
    - Job counts by state
    - Average execution time and total records processed
    - Execution success rate (%)
    - Live worker pool usage
    """
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] GET /stats")

    stats = await orchestrator.get_pipeline_stats()

    logger.info(
        f"[{request_id}] Stats: {stats.total_jobs} jobs, "
        f"{stats.running_jobs} running, success rate {stats.success_rate}%"
    )

    return StatsResponse(
        **stats.model_dump(),
        active_workers=orchestrator.engine.running_count,
        max_workers=orchestrator.engine.max_workers
    )
