"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from core.clock import utcnow
from models.base import JobStatus
from schemas.execution import Execution, PipelineStats
from schemas.job import Job


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    store_connected: bool
    scheduler_running: bool
    running_jobs: int = 0
    queued_jobs: int = 0
    failed_jobs: int = 0
    total_jobs: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.store_connected:
            self.status = "unhealthy"
        elif self.total_jobs and self.failed_jobs == self.total_jobs:
            self.status = "unhealthy"
        elif self.failed_jobs:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "store_connected": True,
                "scheduler_running": True,
                "running_jobs": 2,
                "queued_jobs": 0,
                "failed_jobs": 0,
                "total_jobs": 12
            }
        }


# ============================================================================
# Job Schemas
# ============================================================================

class JobCreatedResponse(BaseModel):
    id: str
    status: JobStatus = JobStatus.PENDING


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobStatus


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    limit: int
    offset: int
    has_next: bool
    has_previous: bool


class JobListResponse(BaseModel):
    """Paginated job listing"""
    items: List[Job]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class ExecuteResponse(BaseModel):
    job_id: str
    execution_id: str
    status: JobStatus

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "job_3f9c2a1b7d4e",
                "execution_id": "exec_a1b2c3d4e5f6",
                "status": "scheduled"
            }
        }


class CancelResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.CANCELLED


class ExecutionListResponse(BaseModel):
    job_id: str
    items: List[Execution]


# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(PipelineStats):
    """Pipeline statistics plus live engine counters"""
    active_workers: int = 0
    max_workers: int = 0


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error_type: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "error_type": "NotFoundError",
                "message": "Job job_missing not found",
                "context": {"job_id": "job_missing"},
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
