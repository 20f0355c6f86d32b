"""
Pipeline Orchestrator - lifecycle and job-management surface.

Wires the Job Registry, Execution Ledger, Stage Runner, Execution Engine and
Scheduler around one Data Store, and exposes the operations consumed by the
HTTP API and the standalone runner.

Lifecycle:
    initialize(): rebuild the registry index from the store, recover state
                  left by a crash, start the scheduler
    shutdown():   stop the scheduler first, then drain in-flight workers
"""

from typing import Any, Dict, List, Optional, Tuple, Union
import logging

from core.clock import Clock, SystemClock
from core.config import settings
from core.exceptions import NotFoundError
from core.observability import ObservabilitySink, ensure_safe
from models.base import JobStatus, PipelineType
from pipeline.cron import CronEvaluator, CronTriggerEvaluator
from pipeline.engine import ExecutionEngine
from pipeline.ledger import ExecutionLedger
from pipeline.registry import JobRegistry
from pipeline.retry import RetryController
from pipeline.runner import StageRunner
from pipeline.scheduler import PipelineScheduler
from pipeline.stores.base import DataStore
from pipeline.transformers.validator import CustomValidator
from schemas.execution import Execution, PipelineStats
from schemas.job import Job, JobDefinition

logger = logging.getLogger(__name__)

ARCHIVE_INTERVAL_MINUTES = 60


class PipelineOrchestrator:
    """
    Facade over the orchestrator components.

    Example:
        orchestrator = PipelineOrchestrator(SQLAlchemyDataStore.from_url())
        await orchestrator.initialize()
        job_id = await orchestrator.create_job(definition)
        await orchestrator.execute_job(job_id)
        ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        store: DataStore,
        cron_evaluator: Optional[CronEvaluator] = None,
        sink: Optional[ObservabilitySink] = None,
        custom_validators: Optional[Dict[str, CustomValidator]] = None,
        clock: Optional[Clock] = None,
        max_workers: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        scheduler_enabled: Optional[bool] = None
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.sink = ensure_safe(sink)
        self.cron_evaluator = cron_evaluator or CronTriggerEvaluator()
        self.custom_validators: Dict[str, CustomValidator] = dict(custom_validators or {})
        self.scheduler_enabled = settings.SCHEDULER_ENABLED if scheduler_enabled is None else scheduler_enabled

        self.registry = JobRegistry(store, clock=self.clock)
        self.ledger = ExecutionLedger(store, clock=self.clock)
        self.runner = StageRunner(store, self.custom_validators, sink=self.sink, clock=self.clock)
        self.engine = ExecutionEngine(
            self.registry,
            self.ledger,
            self.runner,
            retry_controller=RetryController(),
            max_workers=max_workers,
            sink=self.sink,
            clock=self.clock,
            cron_evaluator=self.cron_evaluator
        )
        self.registry.cancel_callback = self.engine.cancel_job
        self.scheduler = PipelineScheduler(
            self.registry,
            self.engine,
            tick_seconds=tick_seconds,
            cron_evaluator=self.cron_evaluator,
            clock=self.clock,
            sink=self.sink
        )

    # ========== Lifecycle ==========

    async def initialize(self) -> None:
        await self.store.initialize()
        await self.registry.load()
        await self._recover()
        if self.scheduler_enabled:
            self.scheduler.add_periodic(self._archive_all, ARCHIVE_INTERVAL_MINUTES, "pipeline_execution_archive")
            self.scheduler.start()
        logger.info(f"Orchestrator initialized with {len(self.registry)} jobs")

    async def _recover(self) -> None:
        """Return jobs orphaned by a crash to pending and close their executions"""
        recovered = 0
        for job in self.registry.list_jobs():
            if job.status in (JobStatus.RUNNING, JobStatus.SCHEDULED):
                job.status = JobStatus.PENDING
                await self.registry.save(job)
                recovered += 1
        closed = await self.ledger.fail_interrupted(self.clock.now())
        if recovered or closed:
            logger.warning(f"Recovered {recovered} jobs and closed {closed} interrupted executions")

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.engine.drain()
        await self.store.close()
        logger.info("Orchestrator shut down")

    def register_validator(self, name: str, validator: CustomValidator) -> None:
        """Register a custom validation function usable by ``custom`` rules"""
        self.custom_validators[name] = validator

    # ========== Job Management ==========

    async def create_job(self, definition: Union[JobDefinition, Dict[str, Any]]) -> str:
        return await self.registry.create_job(definition)

    async def update_job(self, job_id: str, partial_update: Dict[str, Any]) -> Job:
        return await self.registry.update_job(job_id, partial_update)

    async def delete_job(self, job_id: str) -> None:
        await self.engine.delete_job(job_id)

    def get_job(self, job_id: str) -> Job:
        job = self.registry.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
        return job

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        return self.registry.get_status(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[PipelineType] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[Job], int]:
        """
        Jobs in creation order, optionally filtered and paginated.

        Returns:
            (page of jobs, total matching jobs)
        """
        jobs = self.registry.list_jobs(status=status, job_type=job_type)
        total = len(jobs)
        end = offset + limit if limit is not None else None
        return jobs[offset:end], total

    async def execute_job(self, job_id: str) -> Execution:
        return await self.engine.execute_job(job_id, trigger="manual")

    async def cancel_job(self, job_id: str) -> None:
        await self.engine.cancel_job(job_id)

    async def get_job_executions(self, job_id: str, limit: Optional[int] = None) -> List[Execution]:
        if job_id not in self.registry:
            raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
        limit = limit or settings.EXECUTION_HISTORY_LIMIT
        return await self.ledger.list_for_job(job_id, limit=limit)

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self.ledger.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found", context={"execution_id": execution_id})
        return execution

    async def get_pipeline_stats(self) -> PipelineStats:
        """
        Aggregate statistics across jobs and recorded executions.

        success_rate is the share of finished executions that completed.
        """
        jobs = self.registry.list_jobs()
        executions = await self.ledger.list_all()
        finished = [e for e in executions if e.status.is_terminal]
        timed = [e.duration_ms for e in finished if e.duration_ms is not None]
        completed = sum(1 for e in finished if e.status == JobStatus.COMPLETED)

        return PipelineStats(
            total_jobs=len(jobs),
            running_jobs=sum(1 for j in jobs if j.status == JobStatus.RUNNING),
            completed_jobs=sum(1 for j in jobs if j.status == JobStatus.COMPLETED),
            failed_jobs=sum(1 for j in jobs if j.status == JobStatus.FAILED),
            avg_execution_time_ms=round(sum(timed) / len(timed), 2) if timed else 0.0,
            total_records_processed=sum(e.records_processed for e in executions),
            success_rate=round(completed / len(finished) * 100, 2) if finished else 0.0,
            last_updated=self.clock.now()
        )

    async def archive_executions(self) -> int:
        """Archive executions past each job's retention window"""
        archived = 0
        now = self.clock.now()
        for job in self.registry.list_jobs():
            archived += await self.ledger.archive_expired(job, now)
        return archived

    async def _archive_all(self) -> None:
        try:
            await self.archive_executions()
        except Exception as e:
            logger.error(f"Execution archival failed: {e}")
            self.sink.capture_exception(e, {"phase": "archive"})

    async def tick(self) -> List[str]:
        """Run one scheduler tick immediately"""
        return await self.scheduler.tick()

    async def health(self) -> Dict[str, Any]:
        jobs = self.registry.list_jobs()
        return {
            "store_connected": await self.store.ping(),
            "scheduler_running": self.scheduler.running,
            "running_jobs": self.engine.running_count,
            "queued_jobs": self.engine.queued_count,
            "failed_jobs": sum(1 for j in jobs if j.status == JobStatus.FAILED),
            "total_jobs": len(jobs),
        }
