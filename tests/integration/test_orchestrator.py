"""
Integration tests for orchestrator lifecycle, recovery and reporting
"""

import pytest

from conftest import START, job_definition, sample_orders
from core.clock import MockClock
from core.exceptions import NotFoundError
from models.base import JobStatus
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stores.memory import MemoryDataStore
from schemas.execution import Execution


class TestRecovery:

    @pytest.mark.asyncio
    async def test_restart_recovers_interrupted_work(self, orchestrator, store, clock):
        job_id = await orchestrator.create_job(job_definition())
        job = orchestrator.get_job(job_id)
        job.status = JobStatus.RUNNING
        await orchestrator.registry.save(job)
        interrupted = Execution(job_id=job_id, status=JobStatus.RUNNING, start_time=START)
        await orchestrator.ledger.record(interrupted)

        clock.advance(seconds=10)
        restarted = PipelineOrchestrator(store, clock=clock, scheduler_enabled=False)
        await restarted.initialize()
        try:
            assert restarted.get_job_status(job_id) == JobStatus.PENDING
            execution = await restarted.get_execution(interrupted.id)
            assert execution.status == JobStatus.FAILED
            assert execution.duration_ms == 10000

            # The recovered job can run again
            await restarted.execute_job(job_id)
            await restarted.engine.drain()
            assert restarted.get_job_status(job_id) == JobStatus.COMPLETED
        finally:
            await restarted.shutdown()

    @pytest.mark.asyncio
    async def test_jobs_survive_restart(self, orchestrator, store, clock):
        job_id = await orchestrator.create_job(job_definition(priority="high"))

        restarted = PipelineOrchestrator(store, clock=clock, scheduler_enabled=False)
        await restarted.initialize()
        try:
            job = restarted.get_job(job_id)
            assert job.priority.value == "high"
            assert job.created_at == START
        finally:
            await restarted.shutdown()


class TestStatistics:

    @pytest.mark.asyncio
    async def test_pipeline_stats(self, orchestrator, store):
        good = await orchestrator.create_job(job_definition(name="good"))
        bad = await orchestrator.create_job(job_definition(
            name="bad",
            source={"collection": "orders", "limit": 2},
            validation={
                "enabled": True,
                "rules": [{"type": "custom", "field": "amount", "constraint": {"name": "unregistered"}}],
            },
        ))

        for job_id in (good, bad):
            await orchestrator.execute_job(job_id)
        await orchestrator.engine.drain()

        stats = await orchestrator.get_pipeline_stats()

        assert stats.total_jobs == 2
        assert stats.completed_jobs == 1
        assert stats.failed_jobs == 1
        assert stats.running_jobs == 0
        assert stats.total_records_processed == 7
        assert stats.success_rate == 50.0

    @pytest.mark.asyncio
    async def test_empty_stats(self, orchestrator):
        stats = await orchestrator.get_pipeline_stats()
        assert stats.total_jobs == 0
        assert stats.success_rate == 0.0
        assert stats.avg_execution_time_ms == 0.0


class TestHistory:

    @pytest.mark.asyncio
    async def test_execution_history_and_archive(self, orchestrator, clock):
        job_id = await orchestrator.create_job(job_definition())
        first = await orchestrator.execute_job(job_id)
        await orchestrator.engine.drain()
        clock.advance(days=2)
        second = await orchestrator.execute_job(job_id)
        await orchestrator.engine.drain()

        history = await orchestrator.get_job_executions(job_id)
        assert [e.id for e in history] == [second.id, first.id]
        assert [e.id for e in await orchestrator.get_job_executions(job_id, limit=1)] == [second.id]

        # Default retention is 30 days
        clock.advance(days=28, hours=1)
        assert await orchestrator.archive_executions() == 1
        assert [e.id for e in await orchestrator.get_job_executions(job_id)] == [second.id]
        assert (await orchestrator.get_execution(first.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_ids(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.get_job_executions("job_missing")
        with pytest.raises(NotFoundError):
            await orchestrator.get_execution("exec_missing")
        with pytest.raises(NotFoundError):
            orchestrator.get_job("job_missing")
        assert orchestrator.get_job_status("job_missing") is None


class TestListingAndHealth:

    @pytest.mark.asyncio
    async def test_list_jobs_paginates(self, orchestrator, clock):
        ids = []
        for i in range(5):
            ids.append(await orchestrator.create_job(job_definition(name=f"job {i}")))
            clock.advance(seconds=1)

        page, total = orchestrator.list_jobs(limit=2, offset=2)

        assert total == 5
        assert [j.id for j in page] == ids[2:4]
        assert orchestrator.list_jobs(status=JobStatus.RUNNING) == ([], 0)

    @pytest.mark.asyncio
    async def test_health_snapshot(self, orchestrator):
        await orchestrator.create_job(job_definition())

        health = await orchestrator.health()

        assert health == {
            "store_connected": True,
            "scheduler_running": False,
            "running_jobs": 0,
            "queued_jobs": 0,
            "failed_jobs": 0,
            "total_jobs": 1,
        }

    @pytest.mark.asyncio
    async def test_scheduler_lifecycle(self):
        clock = MockClock(START)
        orchestrator = PipelineOrchestrator(
            MemoryDataStore({"orders": sample_orders()}),
            clock=clock,
            tick_seconds=3600,
            scheduler_enabled=True
        )
        await orchestrator.initialize()
        assert orchestrator.scheduler.running is True

        await orchestrator.shutdown()
        assert orchestrator.scheduler.running is False
