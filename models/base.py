from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class PipelineType(str, enum.Enum):
    """Kind of work a job performs"""
    INGESTION = "ingestion"
    PROCESSING = "processing"
    TRANSFORMATION = "transformation"
    AGGREGATION = "aggregation"
    COMPUTATION = "computation"
    REPORT = "report"
    QUALITY_CHECK = "quality_check"
    ARCHIVAL = "archival"
    MAINTENANCE = "maintenance"


class JobStatus(str, enum.Enum):
    """Job and execution status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"
    SCHEDULED = "scheduled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobPriority(str, enum.Enum):
    """Dispatch priority, highest first"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.MEDIUM: 1,
    JobPriority.HIGH: 2,
    JobPriority.CRITICAL: 3,
}


class ScheduleKind(str, enum.Enum):
    """Schedule trigger kinds"""
    ONCE = "once"
    INTERVAL = "interval"
    CRON = "cron"


class WriteMode(str, enum.Enum):
    """Data store write modes"""
    APPEND = "append"
    OVERWRITE = "overwrite"
    UPSERT = "upsert"


class LogLevel(str, enum.Enum):
    """Execution log levels"""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _LEVEL_SEVERITY[self]


_LEVEL_SEVERITY = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}
