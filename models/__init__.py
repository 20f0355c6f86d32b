"""
SQLAlchemy ORM models and shared enums.

Models:
    base: Base declarative class and shared enums (JobStatus, PipelineType,
          JobPriority, ScheduleKind, WriteMode, LogLevel)
    document: Generic document table backing every data store collection

Database Schema:
    Jobs, executions and pipeline data all live in ``pipeline_documents``,
    partitioned by collection name. The payload column uses JSONB on
    PostgreSQL and plain JSON on other dialects (SQLite in tests).

Usage:
    from models.base import JobStatus, WriteMode
    from models.document import StoredDocument
"""

__all__ = [
    "Base",
    "PipelineType",
    "JobStatus",
    "JobPriority",
    "ScheduleKind",
    "WriteMode",
    "LogLevel",
    "StoredDocument",
]
