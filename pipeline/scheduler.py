"""
Scheduler - periodic due-job detection and dispatch.

A fixed APScheduler interval trigger drives ``tick``; each due job is handed
to the Execution Engine. Dispatches are isolated: a failure for one job is
logged and reported, and the tick moves on to the next job.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.clock import Clock, SystemClock
from core.config import settings
from core.exceptions import AlreadyRunningError, DependencyNotMetError
from core.observability import ObservabilitySink, ensure_safe
from models.base import JobStatus, ScheduleKind
from pipeline.cron import CronEvaluator, CronTriggerEvaluator
from pipeline.engine import ExecutionEngine
from pipeline.registry import JobRegistry
from schemas.job import Job

logger = logging.getLogger(__name__)

# Failed and cancelled jobs stay on their schedule; only a running job is skipped
NOT_DISPATCHABLE = frozenset({JobStatus.RUNNING})


class PipelineScheduler:
    """
    Decides which jobs are due and dispatches them in priority order.

    Due when:
    - the schedule is enabled and inside its start/end bounds
    - the job is not running and not queued
    - next_run is set and has elapsed, or (without next_run) the interval
      since last_run/created_at has elapsed, the cron evaluator's next fire
      time has passed, or a once job has never run
    """

    def __init__(
        self,
        registry: JobRegistry,
        engine: ExecutionEngine,
        tick_seconds: Optional[float] = None,
        cron_evaluator: Optional[CronEvaluator] = None,
        clock: Optional[Clock] = None,
        sink: Optional[ObservabilitySink] = None
    ):
        self.registry = registry
        self.engine = engine
        self.tick_seconds = tick_seconds or settings.SCHEDULER_TICK_SECONDS
        self.cron_evaluator = cron_evaluator or CronTriggerEvaluator()
        self.clock = clock or SystemClock()
        self.sink = ensure_safe(sink)
        self.scheduler = AsyncIOScheduler()

    def is_due(self, job: Job, now: datetime) -> bool:
        schedule = job.schedule
        if not schedule.enabled:
            return False
        if job.status in NOT_DISPATCHABLE or self.engine.is_active(job.id):
            return False
        if schedule.start_date and now < schedule.start_date:
            return False
        if schedule.end_date and now > schedule.end_date:
            return False

        if job.next_run is not None:
            return job.next_run <= now

        anchor = job.last_run or job.created_at
        if schedule.kind == ScheduleKind.INTERVAL:
            return now - anchor >= timedelta(minutes=schedule.interval_minutes)
        if schedule.kind == ScheduleKind.CRON:
            fire_time = self.cron_evaluator.next_fire_time(schedule.cron, anchor, schedule.timezone)
            return fire_time is not None and fire_time <= now
        return job.last_run is None

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Evaluate every job once and dispatch the due ones.

        Returns:
            Ids of the jobs handed to the engine
        """
        now = now or self.clock.now()
        due = []
        for job in self.registry.list_jobs():
            try:
                if self.is_due(job, now):
                    due.append(job)
            except Exception as e:
                logger.error(f"Scheduler: due check failed for job {job.id}: {e}")
                self.sink.capture_exception(e, {"job_id": job.id, "phase": "due_check"})

        due.sort(key=lambda j: (-j.priority.rank, j.next_run or j.created_at))

        dispatched = []
        for job in due:
            try:
                await self.engine.execute_job(job.id, trigger="schedule")
                dispatched.append(job.id)
            except DependencyNotMetError as e:
                logger.debug(f"Scheduler: job {job.id} waiting on dependencies: {e.message}")
            except AlreadyRunningError:
                logger.debug(f"Scheduler: job {job.id} already running")
            except Exception as e:
                logger.error(f"Scheduler: dispatch of job {job.id} failed: {e}")
                self.sink.capture_exception(e, {"job_id": job.id, "phase": "dispatch"})

        if due:
            self.sink.add_breadcrumb(
                "Scheduler tick",
                "scheduler",
                {"due_jobs": len(due), "dispatched": len(dispatched)}
            )
        return dispatched

    async def _scheduled_tick(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Scheduler: tick failed - {e}")
            self.sink.capture_exception(e, {"phase": "tick"})

    def add_periodic(self, func: Callable[[], Awaitable[None]], minutes: float, job_id: str) -> None:
        """Register an extra periodic coroutine (e.g. execution archival)"""
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the tick loop (must be called from a running event loop)"""
        self.scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="pipeline_scheduler_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Pipeline scheduler started (tick every {self.tick_seconds}s)")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Pipeline scheduler stopped")
