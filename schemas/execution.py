"""
Pydantic schemas for executions, their logs/metrics, and pipeline statistics
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from core.clock import utcnow
from models.base import JobStatus, LogLevel
from schemas.job import as_utc


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str
    context: Optional[Dict[str, Any]] = None


class ResourceUsage(BaseModel):
    """Process resource snapshot taken when an execution finishes"""
    cpu_percent: float = 0.0
    memory_mb: float = 0.0


class QualityMetrics(BaseModel):
    """Data quality ratios (0..1) over the records of one execution"""
    completeness: float = 0.0
    accuracy: float = 0.0
    consistency: float = 0.0


class ExecutionMetrics(BaseModel):
    throughput: float = Field(0.0, description="Successfully written records per second")
    error_rate: float = Field(0.0, description="Failed records as a percentage of processed")
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    data_quality: QualityMetrics = Field(default_factory=QualityMetrics)
    stage_durations_ms: Dict[str, float] = Field(default_factory=dict)


class Execution(BaseModel):
    """
    One attempt to run a job.

    Record counters satisfy ``records_success + records_failed <=
    records_processed``; ``records_skipped`` counts records dropped by the
    validation ``skip`` policy before the Load stage.
    """
    id: str = Field(default_factory=new_execution_id)
    job_id: str
    status: JobStatus = JobStatus.PENDING
    attempt: int = Field(0, ge=0, description="Job retry_count when this execution started")
    trigger: str = "manual"
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None

    records_processed: int = 0
    records_success: int = 0
    records_failed: int = 0
    records_skipped: int = 0

    error_message: Optional[str] = None
    error_type: Optional[str] = None

    logs: List[LogEntry] = Field(default_factory=list)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timestamps(cls, v):
        return as_utc(v)

    def add_log(
        self,
        level: LogLevel,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> LogEntry:
        entry = LogEntry(
            timestamp=timestamp or utcnow(),
            level=level,
            message=message,
            context=context,
        )
        self.logs.append(entry)
        return entry


class PipelineStats(BaseModel):
    """Aggregate counters across all jobs and recorded executions"""
    total_jobs: int = 0
    running_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    avg_execution_time_ms: float = 0.0
    total_records_processed: int = 0
    success_rate: float = Field(0.0, ge=0, le=100, description="Completed executions as a percentage of finished ones")
    last_updated: datetime = Field(default_factory=utcnow)
