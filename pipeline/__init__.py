"""
Job-scheduling ETL pipeline orchestrator.

This package contains every component that defines, schedules, executes and
tracks pipeline jobs:

Modules:
    registry: Job Registry (Data Store backed, in-memory index)
    scheduler: Tick loop and due-job detection (APScheduler)
    engine: Bounded worker pool and job/execution state machine
    runner: Pipeline Stage Runner (extract, transform, validate, load)
    retry: Retry & Backoff Controller
    ledger: Execution Ledger (history, logs, metrics, archival)
    cron: Pluggable cron evaluator and next-run computation
    query: Field/operator/value filtering and ordering
    orchestrator: Facade wiring the components together

Subpackages:
    stores: Data Store interface with memory and SQLAlchemy implementations
    extractors: Extract stage (collection queries)
    transformers: Transformation steps and record validation
    loaders: Load stage (per-record writes with write modes)

Architecture:
    Scheduler → Execution Engine (worker slot) → Stage Runner
        1. Extract   - query the source collection
        2. Transform - apply each enabled step in order
        3. Validate  - route invalid records by the skip/fail/warn policy
        4. Load      - write records to the target collection
    Outcomes update the Job Registry and the Execution Ledger; failures go
    through the Retry Controller, which reschedules via next_run.

Usage:
    from pipeline.orchestrator import PipelineOrchestrator
    from pipeline.stores.sql import SQLAlchemyDataStore

Example:
    orchestrator = PipelineOrchestrator(SQLAlchemyDataStore.from_url())
    await orchestrator.initialize()

    job_id = await orchestrator.create_job({
        "name": "orders-rollup",
        "schedule": {"kind": "interval", "interval_minutes": 30},
        "config": {
            "source": {"collection": "orders"},
            "target": {"collection": "order_totals", "write_mode": "overwrite"},
        },
    })
    await orchestrator.execute_job(job_id)
"""

__all__ = [
    "PipelineOrchestrator",
    "JobRegistry",
    "PipelineScheduler",
    "ExecutionEngine",
    "StageRunner",
    "RetryController",
    "ExecutionLedger",
]
