"""
Health check endpoint with data store and scheduler status
"""

from fastapi import APIRouter, Depends
import logging

from api.dependencies import get_orchestrator
from pipeline.orchestrator import PipelineOrchestrator
from schemas.api import HealthCheckResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """
    Health check endpoint.

    Returns:
    - Data store connectivity
    - Scheduler state
    - Running/queued/failed job counts
    """
    health = await orchestrator.health()
    if not health["store_connected"]:
        logger.error("Health check: data store unreachable")

    # Overall status is derived by the response model
    return HealthCheckResponse(**health)
