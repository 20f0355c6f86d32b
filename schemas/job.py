"""
Pydantic schemas for job definitions with validation.

Transformation steps and validation rules are tagged variants: one model per
kind, discriminated on ``type``. The stage runner dispatches on the concrete
model class, so a kind without a handler is caught at definition time rather
than silently skipped at run time.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import re
import uuid

from pydantic import BaseModel, Field, field_validator, model_validator

from core.config import settings
from models.base import JobPriority, JobStatus, LogLevel, PipelineType, ScheduleKind, WriteMode


def _new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:8]}"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and normalize aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# Source / Target
# ============================================================================

FilterOperator = Literal["==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains"]


class FilterCondition(BaseModel):
    """Single field/operator/value predicate"""
    field: str = Field(..., min_length=1)
    operator: FilterOperator = "=="
    value: Any = None


class OrderBy(BaseModel):
    field: str = Field(..., min_length=1)
    direction: Literal["asc", "desc"] = "asc"


class SourceConfig(BaseModel):
    """Query against a named collection with optional filters/ordering/limit"""
    collection: str = Field(..., min_length=1, max_length=200)
    filters: List[FilterCondition] = Field(default_factory=list)
    order_by: List[OrderBy] = Field(default_factory=list)
    limit: Optional[int] = Field(None, ge=1)


class TargetConfig(BaseModel):
    """
    Collection the Load stage writes to.

    ``max_failures`` aborts the Load stage once that many record writes have
    failed; when unset, the load is best-effort.
    """
    collection: str = Field(..., min_length=1, max_length=200)
    write_mode: WriteMode = WriteMode.APPEND
    max_failures: Optional[int] = Field(None, ge=1)


# ============================================================================
# Validation Rules
# ============================================================================

class _RuleBase(BaseModel):
    field: str = Field(..., min_length=1, description="Dotted field path")
    message: Optional[str] = None


class RequiredRule(_RuleBase):
    type: Literal["required"] = "required"


class TypeRule(_RuleBase):
    type: Literal["type"] = "type"
    constraint: Literal["string", "number", "integer", "boolean", "object", "array"]


class RangeConstraint(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("range min must not exceed max")
        return self


class RangeRule(_RuleBase):
    type: Literal["range"] = "range"
    constraint: RangeConstraint


class RegexRule(_RuleBase):
    type: Literal["regex"] = "regex"
    constraint: str

    @field_validator("constraint")
    @classmethod
    def check_pattern(cls, v):
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression: {e}")
        return v


class CustomConstraint(BaseModel):
    name: str = Field(..., min_length=1, description="Registered custom validator name")
    params: Dict[str, Any] = Field(default_factory=dict)


class CustomRule(_RuleBase):
    type: Literal["custom"] = "custom"
    constraint: CustomConstraint


ValidationRule = Annotated[
    Union[RequiredRule, TypeRule, RangeRule, RegexRule, CustomRule],
    Field(discriminator="type"),
]


class ValidationConfig(BaseModel):
    enabled: bool = False
    rules: List[ValidationRule] = Field(default_factory=list)
    on_failure: Literal["skip", "fail", "warn"] = "skip"


# ============================================================================
# Transformation Steps
# ============================================================================

class _StepBase(BaseModel):
    id: str = Field(default_factory=_new_step_id)
    name: str = Field(..., min_length=1)
    enabled: bool = True


class FilterStepConfig(BaseModel):
    field: str = Field(..., min_length=1)
    operator: FilterOperator = "=="
    value: Any = None


class FilterStep(_StepBase):
    type: Literal["filter"] = "filter"
    config: FilterStepConfig


class MapStepConfig(BaseModel):
    mappings: Dict[str, str] = Field(..., min_length=1, description="source field -> target field")


class MapStep(_StepBase):
    type: Literal["map"] = "map"
    config: MapStepConfig


class AggregateStepConfig(BaseModel):
    group_by: List[str] = Field(default_factory=list)
    aggregations: Dict[str, Literal["sum", "avg", "count"]] = Field(..., min_length=1)


class AggregateStep(_StepBase):
    type: Literal["aggregate"] = "aggregate"
    config: AggregateStepConfig


class JoinStepConfig(BaseModel):
    """Lookup join against inline reference records (first match wins)"""
    on: str = Field(..., min_length=1)
    right_on: Optional[str] = None
    lookup: List[Dict[str, Any]] = Field(default_factory=list)
    how: Literal["inner", "left"] = "left"
    prefix: str = ""


class JoinStep(_StepBase):
    type: Literal["join"] = "join"
    config: JoinStepConfig


class EnrichStepConfig(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    timestamp_field: Optional[str] = None
    overwrite: bool = False


class EnrichStep(_StepBase):
    type: Literal["enrich"] = "enrich"
    config: EnrichStepConfig


class ValidateStepConfig(BaseModel):
    rules: List[ValidationRule] = Field(..., min_length=1)


class ValidateStep(_StepBase):
    type: Literal["validate"] = "validate"
    config: ValidateStepConfig


class NormalizeStepConfig(BaseModel):
    fields: List[str] = Field(..., min_length=1)
    operations: List[Literal["strip", "lower", "upper"]] = Field(default_factory=lambda: ["strip"])


class NormalizeStep(_StepBase):
    type: Literal["normalize"] = "normalize"
    config: NormalizeStepConfig


class AnonymizeStepConfig(BaseModel):
    fields: List[str] = Field(..., min_length=1)
    method: Literal["hash", "mask", "drop"] = "hash"
    salt: str = ""


class AnonymizeStep(_StepBase):
    type: Literal["anonymize"] = "anonymize"
    config: AnonymizeStepConfig


TransformationStep = Annotated[
    Union[
        FilterStep,
        MapStep,
        AggregateStep,
        JoinStep,
        EnrichStep,
        ValidateStep,
        NormalizeStep,
        AnonymizeStep,
    ],
    Field(discriminator="type"),
]


# ============================================================================
# Error Handling & Monitoring
# ============================================================================

class RetryPolicy(BaseModel):
    max_retries: int = Field(3, ge=0)
    backoff_strategy: Literal["fixed", "linear", "exponential"] = "exponential"
    base_delay_ms: int = Field(1000, ge=1)
    max_delay_ms: int = Field(60000, ge=1)

    @model_validator(mode="after")
    def check_delays(self):
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return self


class ErrorHandlingConfig(BaseModel):
    retry_policy: Optional[RetryPolicy] = None
    dead_letter_queue: bool = False


class LoggingConfig(BaseModel):
    level: LogLevel = LogLevel.INFO
    retention_days: int = Field(30, ge=1)
    structured: bool = True


DEFAULT_METRICS = ["duration_ms", "throughput", "error_rate", "records_processed"]


class MonitoringConfig(BaseModel):
    metrics: List[str] = Field(default_factory=lambda: list(DEFAULT_METRICS))
    sampling: float = Field(1.0, ge=0.0, le=1.0)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    timeout_ms: Optional[int] = Field(None, ge=1, description="Advisory only, never cancels")


class PipelineConfig(BaseModel):
    source: SourceConfig
    target: TargetConfig
    transformations: List[TransformationStep] = Field(default_factory=list)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("transformations")
    @classmethod
    def unique_step_ids(cls, v):
        ids = [step.id for step in v]
        if len(ids) != len(set(ids)):
            raise ValueError("transformation step ids must be unique within a job")
        return v


# ============================================================================
# Schedule
# ============================================================================

class Schedule(BaseModel):
    kind: ScheduleKind
    interval_minutes: Optional[float] = Field(None, gt=0)
    cron: Optional[str] = None
    timezone: str = "UTC"
    enabled: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {v}")
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def check_kind(self):
        if self.kind == ScheduleKind.INTERVAL and not self.interval_minutes:
            raise ValueError("interval schedules require interval_minutes")
        if self.kind == ScheduleKind.CRON:
            if not self.cron or len(self.cron.split()) != 5:
                raise ValueError("cron schedules require a 5-field cron expression")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


# ============================================================================
# Job
# ============================================================================

class JobDefinition(BaseModel):
    """
    Schema for creating jobs.

    Ensures:
    - Name is non-empty after stripping
    - Source and target configuration are present
    - max_retries falls back to the retry policy, then to settings
    """
    name: str = Field(..., min_length=1, max_length=200)
    type: PipelineType = PipelineType.PROCESSING
    priority: JobPriority = JobPriority.MEDIUM
    schedule: Schedule
    config: PipelineConfig
    dependencies: List[str] = Field(default_factory=list)
    max_retries: Optional[int] = Field(None, ge=0)

    @field_validator("name")
    @classmethod
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Job name cannot be empty")
        return v

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v):
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def default_max_retries(self):
        if self.max_retries is None:
            policy = self.config.error_handling.retry_policy
            self.max_retries = policy.max_retries if policy else settings.MAX_RETRIES
        return self


class Job(JobDefinition):
    """Persisted job with server-managed state"""
    id: str
    status: JobStatus = JobStatus.PENDING
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    duration_ms: Optional[int] = None
    retry_count: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime

    @field_validator("last_run", "next_run", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v):
        return as_utc(v)

    def definition(self) -> JobDefinition:
        """The user-supplied part of the job"""
        return JobDefinition.model_validate(
            self.model_dump(include=set(JobDefinition.model_fields))
        )
