"""
Job management endpoints
"""

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from typing import Any, Dict, Optional
import logging

from api.dependencies import get_orchestrator
from core.exceptions import NotFoundError
from models.base import JobStatus, PipelineType
from pipeline.orchestrator import PipelineOrchestrator
from schemas.api import (
    CancelResponse,
    ExecuteResponse,
    ExecutionListResponse,
    JobCreatedResponse,
    JobListResponse,
    JobStatusResponse,
    PaginationMetadata,
)
from schemas.job import Job, JobDefinition

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    request: Request,
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    job_type: Optional[PipelineType] = Query(None, alias="type", description="Filter by pipeline type"),
    limit: int = Query(50, ge=1, le=500, description="Items per page"),
    offset: int = Query(0, ge=0, description="Items to skip"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """List jobs in creation order with optional status/type filters"""
    jobs, total = orchestrator.list_jobs(status=status, job_type=job_type, limit=limit, offset=offset)

    filters_applied: Dict[str, Any] = {}
    if status:
        filters_applied["status"] = status.value
    if job_type:
        filters_applied["type"] = job_type.value

    logger.info(f"[{_request_id(request)}] GET /jobs - {len(jobs)}/{total} jobs")
    return JobListResponse(
        items=jobs,
        pagination=PaginationMetadata(
            total_items=total,
            limit=limit,
            offset=offset,
            has_next=offset + len(jobs) < total,
            has_previous=offset > 0
        ),
        filters_applied=filters_applied
    )


@router.post("", response_model=JobCreatedResponse, status_code=201)
async def create_job(
    request: Request,
    definition: JobDefinition,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    job_id = await orchestrator.create_job(definition)
    logger.info(f"[{_request_id(request)}] POST /jobs - created {job_id}")
    return JobCreatedResponse(id=job_id, status=orchestrator.get_job_status(job_id))


@router.get("/{job_id}", response_model=Job)
async def get_job(job_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_job(job_id)


@router.patch("/{job_id}", response_model=Job)
async def update_job(
    request: Request,
    job_id: str,
    partial_update: Dict[str, Any] = Body(..., description="Fields to merge into the job definition"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    job = await orchestrator.update_job(job_id, partial_update)
    logger.info(f"[{_request_id(request)}] PATCH /jobs/{job_id} - fields: {sorted(partial_update)}")
    return job


@router.delete("/{job_id}", status_code=204)
async def delete_job(
    request: Request,
    job_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.delete_job(job_id)
    logger.info(f"[{_request_id(request)}] DELETE /jobs/{job_id}")
    return Response(status_code=204)


@router.get("/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status(job_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.get_job_status(job_id)
    if status is None:
        raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
    return JobStatusResponse(job_id=job_id, status=status)


@router.post("/{job_id}/execute", response_model=ExecuteResponse, status_code=202)
async def execute_job(
    request: Request,
    job_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Queue a job for immediate execution on the worker pool"""
    execution = await orchestrator.execute_job(job_id)
    logger.info(f"[{_request_id(request)}] POST /jobs/{job_id}/execute - {execution.id}")
    return ExecuteResponse(
        job_id=job_id,
        execution_id=execution.id,
        status=orchestrator.get_job_status(job_id) or JobStatus.SCHEDULED
    )


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    request: Request,
    job_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.cancel_job(job_id)
    logger.info(f"[{_request_id(request)}] POST /jobs/{job_id}/cancel")
    return CancelResponse(job_id=job_id)


@router.get("/{job_id}/executions", response_model=ExecutionListResponse)
async def list_job_executions(
    job_id: str,
    limit: int = Query(10, ge=1, le=100, description="Number of executions to return"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Execution history for a job, newest first"""
    executions = await orchestrator.get_job_executions(job_id, limit=limit)
    return ExecutionListResponse(job_id=job_id, items=executions)
