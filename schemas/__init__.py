"""
Pydantic schemas for data validation and serialization.

Schemas:
    job: Job definitions, schedules, pipeline configuration, tagged
         transformation step and validation rule variants
    execution: Execution records, log entries, metrics and pipeline stats
    api: API endpoint request/response schemas

Usage:
    from schemas.job import JobDefinition, Job
    from schemas.execution import Execution
    from schemas.api import JobListResponse

Example:
    definition = JobDefinition(
        name="nightly-orders",
        schedule={"kind": "interval", "interval_minutes": 60},
        config={
            "source": {"collection": "raw_orders"},
            "target": {"collection": "orders", "write_mode": "upsert"},
            "transformations": [
                {"type": "map", "name": "rename", "config": {"mappings": {"amt": "amount"}}}
            ],
        },
    )

    # Step configs are validated per kind
    assert definition.config.transformations[0].type == "map"
"""

__all__ = [
    "JobDefinition",
    "Job",
    "Schedule",
    "PipelineConfig",
    "TransformationStep",
    "ValidationRule",
    "RetryPolicy",
    "Execution",
    "LogEntry",
    "ExecutionMetrics",
    "PipelineStats",
]
