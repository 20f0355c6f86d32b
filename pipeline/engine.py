"""
Execution Engine - bounded worker pool and the job/execution state machine.

State machine per job:
    pending/scheduled → running → completed
                                → pending (retry scheduled via next_run)
                                → failed (retries exhausted or non-retryable)
    running → cancelled (external request)

Concurrency:
- ``asyncio.Semaphore(max_workers)`` is the backpressure point; a queued job
  stays ``scheduled`` until its worker acquires a slot
- At most one worker task per job (the task map is the mutual-exclusion token)
- Every job/execution transition happens under one engine lock, so the
  registry and ledger see transitions in a consistent order
"""

from typing import Dict, Optional, Set, Tuple
import asyncio
import logging

from core.clock import Clock, SystemClock
from core.config import settings
from core.exceptions import (
    AlreadyRunningError,
    DependencyNotMetError,
    ExecutionCancelled,
    NotFoundError,
    NotRunningError,
    PipelineError,
)
from core.observability import ObservabilitySink, ensure_safe
from models.base import JobStatus, LogLevel, ScheduleKind
from pipeline.cron import CronEvaluator, CronTriggerEvaluator, compute_next_run
from pipeline.ledger import ExecutionLedger
from pipeline.registry import JobRegistry
from pipeline.retry import RetryController
from pipeline.runner import StageRunner, execution_logger
from schemas.execution import Execution
from schemas.job import Job

logger = logging.getLogger(__name__)


def _error_message(error: BaseException) -> str:
    return error.message if isinstance(error, PipelineError) else str(error) or type(error).__name__


class ExecutionEngine:
    """
    Runs jobs on a bounded pool of asyncio worker tasks.

    Args:
        registry: Job Registry (all job transitions are persisted through it)
        ledger: Execution Ledger
        runner: Pipeline Stage Runner
        retry_controller: Failure evaluation (defaults to RetryController)
        max_workers: Worker slots (defaults to settings.MAX_CONCURRENT_JOBS)
        sink: Observability sink, wrapped so it never raises
        clock: Time source
        cron_evaluator: Used to compute next_run for cron schedules
    """

    def __init__(
        self,
        registry: JobRegistry,
        ledger: ExecutionLedger,
        runner: StageRunner,
        retry_controller: Optional[RetryController] = None,
        max_workers: Optional[int] = None,
        sink: Optional[ObservabilitySink] = None,
        clock: Optional[Clock] = None,
        cron_evaluator: Optional[CronEvaluator] = None
    ):
        self.registry = registry
        self.ledger = ledger
        self.runner = runner
        self.retry_controller = retry_controller or RetryController()
        self.max_workers = max_workers or settings.MAX_CONCURRENT_JOBS
        self.sink = ensure_safe(sink)
        self.clock = clock or SystemClock()
        self.cron_evaluator = cron_evaluator or CronTriggerEvaluator()

        self._slots = asyncio.Semaphore(self.max_workers)
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._running: Set[str] = set()

    # ========== Introspection ==========

    def is_active(self, job_id: str) -> bool:
        """True while the job is queued for or holding a worker slot"""
        return job_id in self._tasks

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._tasks) - len(self._running)

    # ========== Operations ==========

    async def _check_dependencies(self, job: Job) -> None:
        unmet = []
        for dep in job.dependencies:
            last = await self.ledger.last_execution(dep)
            if last is None or last.status != JobStatus.COMPLETED:
                unmet.append(dep)
        if unmet:
            raise DependencyNotMetError(
                f"Dependencies of job {job.id} have not completed: {', '.join(unmet)}",
                context={"job_id": job.id, "unmet_dependencies": unmet}
            )

    async def execute_job(self, job_id: str, trigger: str = "manual") -> Execution:
        """
        Queue a job on the worker pool.

        Args:
            job_id: Job to run
            trigger: "manual" or "schedule"; a scheduled dispatch of a once
                job disables its schedule in the same transition

        Returns:
            The queued Execution

        Raises:
            NotFoundError: Unknown job id
            AlreadyRunningError: Job is running or already queued
            DependencyNotMetError: A dependency's last execution did not complete
        """
        async with self._lock:
            job = self.registry.get_job(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
            if job.status == JobStatus.RUNNING or job_id in self._tasks:
                raise AlreadyRunningError(f"Job {job_id} is already running", context={"job_id": job_id})
            await self._check_dependencies(job)

            now = self.clock.now()
            if job.status == JobStatus.FAILED:
                # Re-queuing a terminally failed job starts a new retry cycle
                job.retry_count = 0

            execution = Execution(job_id=job.id, attempt=job.retry_count, trigger=trigger, start_time=now)
            execution_logger(job, execution, self.clock)(LogLevel.INFO, f"Execution queued ({trigger})")
            await self.ledger.record(execution)

            job.status = JobStatus.SCHEDULED
            if trigger == "schedule" and job.schedule.kind == ScheduleKind.ONCE:
                job.schedule.enabled = False
            try:
                await self.registry.save(job)
            except Exception as e:
                await self._abandon(execution, e)
                raise

            cancel_event = asyncio.Event()
            self._cancel_events[job_id] = cancel_event
            task = asyncio.create_task(
                self._run_worker(job_id, execution, cancel_event),
                name=f"pipeline-{job_id}"
            )
            self._tasks[job_id] = task
            task.add_done_callback(lambda t, jid=job_id: self._on_task_done(jid, t))

        logger.info(f"Queued job {job_id} ({trigger}), execution {execution.id}")
        self.sink.add_breadcrumb(f"Job {job_id} queued", "engine", {"trigger": trigger, "execution_id": execution.id})
        return execution.model_copy(deep=True)

    async def cancel_job(self, job_id: str) -> None:
        """
        Request cooperative cancellation of a running job.

        Raises:
            NotFoundError: Unknown job id
            NotRunningError: Job is not running
        """
        async with self._lock:
            job = self.registry.get_job(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
            if job.status != JobStatus.RUNNING:
                raise NotRunningError(
                    f"Job {job_id} is not running (status: {job.status.value})",
                    context={"job_id": job_id, "status": job.status.value}
                )

            event = self._cancel_events.get(job_id)
            if event is not None:
                event.set()
            job.status = JobStatus.CANCELLED
            await self.registry.save(job)

        logger.info(f"Cancellation requested for job {job_id}")
        self.sink.add_breadcrumb(f"Job {job_id} cancel requested", "engine")

    async def delete_job(self, job_id: str) -> None:
        """
        Delete a job in one transition, signalling its worker to stop first.

        A worker that is finalizing holds the lock, so the delete sees its
        final state and the worker never writes the deleted job back.

        Raises:
            NotFoundError: Unknown job id
            JobStateError: Other jobs still depend on this one
        """
        async with self._lock:
            if self.registry.get_job(job_id) is None:
                raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
            event = self._cancel_events.get(job_id)
            await self.registry.delete_job(job_id, cancel_running=False)
            if event is not None:
                event.set()

        self.sink.add_breadcrumb(f"Job {job_id} deleted", "engine")

    async def drain(self) -> None:
        """Wait for every queued and in-flight worker to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ========== Worker ==========

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            self._tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
        self._running.discard(job_id)
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            logger.error(f"Worker for job {job_id} crashed: {error}")
            self.sink.capture_exception(error, {"job_id": job_id})

    async def _run_worker(self, job_id: str, execution: Execution, cancel_event: asyncio.Event) -> None:
        async with self._slots:
            job, error = await self._claim(job_id, execution, cancel_event)
            if job is None:
                return

            if error is None:
                try:
                    await self.runner.run(job, execution, cancel_event)
                except Exception as e:
                    error = e

            await self._finalize(job_id, job, execution, error, cancel_event)

    async def _claim(
        self,
        job_id: str,
        execution: Execution,
        cancel_event: asyncio.Event
    ) -> Tuple[Optional[Job], Optional[BaseException]]:
        """
        Transition a queued job to running once a slot is held.

        Returns:
            (job snapshot, bookkeeping error); job is None when the job was
            deleted or cancelled while queued
        """
        async with self._lock:
            job = self.registry.get_job(job_id)
            if job is None or cancel_event.is_set():
                now = self.clock.now()
                execution.status = JobStatus.CANCELLED
                execution.end_time = max(now, execution.start_time)
                execution.duration_ms = 0
                execution.add_log(LogLevel.WARN, "Execution cancelled before start", timestamp=now)
                await self._record_safely(execution)
                return None, None

            now = self.clock.now()
            job.status = JobStatus.RUNNING
            job.last_run = now
            if job.next_run is not None and job.next_run < now:
                job.next_run = None
            execution.status = JobStatus.RUNNING
            execution.start_time = now
            execution_logger(job, execution, self.clock)(
                LogLevel.INFO, f"Worker started (attempt {execution.attempt + 1})"
            )
            try:
                await self.registry.save(job)
                await self.ledger.record(execution)
            except Exception as e:
                logger.error(f"Bookkeeping failed while starting job {job_id}: {e}")
                self.sink.capture_exception(e, {"job_id": job_id, "phase": "claim"})
                return job, e

            self._running.add(job_id)
            return job, None

    async def _finalize(
        self,
        job_id: str,
        snapshot: Job,
        execution: Execution,
        error: Optional[BaseException],
        cancel_event: asyncio.Event
    ) -> None:
        now = self.clock.now()
        execution.end_time = max(now, execution.start_time)
        execution.duration_ms = int((execution.end_time - execution.start_time).total_seconds() * 1000)
        self._check_timeout(snapshot, execution)

        async with self._lock:
            # Fresh copy: keeps definition edits and cancel status made during the run
            job = self.registry.get_job(job_id)
            state = job or snapshot

            if cancel_event.is_set():
                self._apply_cancelled(state, execution, error)
            elif error is None:
                self._apply_success(state, execution, now)
            else:
                self._apply_failure(state, execution, error, now)

            if job is not None:
                job.duration_ms = execution.duration_ms
                try:
                    await self.registry.save(job)
                except Exception as e:
                    logger.error(f"Failed to persist final state of job {job_id}: {e}")
                    self.sink.capture_exception(e, {"job_id": job_id, "phase": "finalize"})
                    if execution.status == JobStatus.COMPLETED:
                        execution.status = JobStatus.FAILED
                        execution.error_message = f"Job state could not be persisted: {_error_message(e)}"
                        execution.error_type = type(e).__name__
                        execution.add_log(LogLevel.ERROR, execution.error_message, timestamp=now)

            await self._record_safely(execution)
            self._running.discard(job_id)

        self.runner.publish_metrics(snapshot, execution)
        if error is not None and not isinstance(error, ExecutionCancelled):
            self.sink.capture_exception(error, {"job_id": job_id, "execution_id": execution.id})
        logger.info(f"Job {job_id} finished: execution {execution.id} {execution.status.value}")

    def _apply_success(self, job: Job, execution: Execution, now) -> None:
        job.retry_count = 0
        job.status = JobStatus.COMPLETED
        try:
            job.next_run = compute_next_run(job.schedule, now, self.cron_evaluator)
        except Exception as e:
            logger.warning(f"Could not compute next run for job {job.id}: {e}")
            self.sink.capture_exception(e, {"job_id": job.id, "phase": "next_run"})
            job.next_run = None

        execution.status = JobStatus.COMPLETED
        execution.add_log(
            LogLevel.INFO,
            f"Execution completed: {execution.records_success} written, "
            f"{execution.records_failed} failed, {execution.records_skipped} skipped",
            timestamp=now
        )

    def _apply_failure(self, job: Job, execution: Execution, error: BaseException, now) -> None:
        decision = self.retry_controller.on_failure(job, error, now)
        job.retry_count = decision.retry_count
        if decision.should_retry:
            job.status = JobStatus.PENDING
            job.next_run = decision.next_run
            outcome = f"retry {decision.retry_count}/{job.max_retries} at {decision.next_run.isoformat()}"
        else:
            job.status = JobStatus.FAILED
            job.next_run = None
            outcome = "no retries remaining"

        execution.status = JobStatus.FAILED
        execution.error_message = _error_message(error)
        execution.error_type = type(error).__name__
        execution.add_log(
            LogLevel.ERROR,
            f"Execution failed: {execution.error_message} ({outcome})",
            {"error_type": execution.error_type},
            timestamp=now
        )

    def _apply_cancelled(self, job: Job, execution: Execution, error: Optional[BaseException]) -> None:
        job.status = JobStatus.CANCELLED
        if error is None:
            # Cancel arrived after the last stage boundary; the load finished
            execution.status = JobStatus.COMPLETED
            message = "Execution completed before cancellation took effect"
        elif isinstance(error, ExecutionCancelled):
            execution.status = JobStatus.CANCELLED
            message = f"Execution cancelled: {error.message}"
        else:
            execution.status = JobStatus.FAILED
            execution.error_message = _error_message(error)
            execution.error_type = type(error).__name__
            message = f"Execution failed during cancellation: {execution.error_message}"
        execution.add_log(LogLevel.WARN, message, timestamp=execution.end_time)

    def _check_timeout(self, job: Job, execution: Execution) -> None:
        """Advisory timeout: warn only, never cancel"""
        timeout_ms = job.config.monitoring.timeout_ms
        if timeout_ms and execution.duration_ms and execution.duration_ms > timeout_ms:
            message = f"Execution exceeded advisory timeout ({execution.duration_ms} ms > {timeout_ms} ms)"
            logger.warning(f"Job {job.id}: {message}")
            execution_logger(job, execution, self.clock)(LogLevel.WARN, message)
            self.sink.add_breadcrumb(message, "timeout", {"job_id": job.id, "execution_id": execution.id})

    async def _record_safely(self, execution: Execution) -> None:
        try:
            await self.ledger.record(execution)
        except Exception as e:
            logger.error(f"Failed to record execution {execution.id}: {e}")
            self.sink.capture_exception(e, {"execution_id": execution.id, "job_id": execution.job_id})

    async def _abandon(self, execution: Execution, error: BaseException) -> None:
        """Close a queued execution whose job could not be transitioned"""
        now = self.clock.now()
        execution.status = JobStatus.FAILED
        execution.end_time = max(now, execution.start_time)
        execution.duration_ms = 0
        execution.error_message = f"Job state could not be persisted: {_error_message(error)}"
        execution.error_type = type(error).__name__
        execution.add_log(LogLevel.ERROR, execution.error_message, timestamp=now)
        self.sink.capture_exception(error, {"job_id": execution.job_id, "phase": "queue"})
        await self._record_safely(execution)
