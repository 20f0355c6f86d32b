"""
Unit tests for the Execution Ledger
"""

from datetime import timedelta

import pytest

from conftest import START
from core.exceptions import LedgerError
from models.base import JobStatus
from pipeline.ledger import ARCHIVE_COLLECTION, EXECUTIONS_COLLECTION, ExecutionLedger
from pipeline.stores.memory import MemoryDataStore
from schemas.execution import Execution
from schemas.job import Job


def make_job(retention_days=30) -> Job:
    return Job.model_validate({
        "id": "job_ledger",
        "name": "ledger",
        "schedule": {"kind": "once"},
        "config": {
            "source": {"collection": "in"},
            "target": {"collection": "out"},
            "monitoring": {"logging": {"retention_days": retention_days}},
        },
        "created_at": START,
        "updated_at": START,
    })


def finished(job_id="job_ledger", started=START, status=JobStatus.COMPLETED) -> Execution:
    return Execution(
        job_id=job_id,
        status=status,
        start_time=started,
        end_time=started + timedelta(seconds=5),
        duration_ms=5000
    )


@pytest.fixture
def ledger(clock):
    return ExecutionLedger(MemoryDataStore(), clock=clock)


class TestExecutionLedger:

    @pytest.mark.asyncio
    async def test_record_and_get(self, ledger):
        execution = Execution(job_id="job_ledger", start_time=START)
        await ledger.record(execution)

        execution.status = JobStatus.RUNNING
        await ledger.record(execution)

        stored = await ledger.get(execution.id)
        assert stored.status == JobStatus.RUNNING
        assert stored.start_time == START

    @pytest.mark.asyncio
    async def test_terminal_execution_is_immutable(self, ledger):
        execution = finished()
        await ledger.record(execution)

        execution.status = JobStatus.FAILED
        with pytest.raises(LedgerError):
            await ledger.record(execution)
        assert (await ledger.get(execution.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_list_for_job_is_newest_first(self, ledger):
        older = finished(started=START)
        newer = finished(started=START + timedelta(hours=1))
        other = finished(job_id="job_other")
        for execution in (older, newer, other):
            await ledger.record(execution)

        history = await ledger.list_for_job("job_ledger")
        assert [e.id for e in history] == [newer.id, older.id]
        assert [e.id for e in await ledger.list_for_job("job_ledger", limit=1)] == [newer.id]
        assert (await ledger.last_execution("job_ledger")).id == newer.id

    @pytest.mark.asyncio
    async def test_archive_moves_expired_executions(self, ledger):
        job = make_job(retention_days=7)
        old = finished(started=START)
        recent = finished(started=START + timedelta(days=9))
        await ledger.record(old)
        await ledger.record(recent)

        archived = await ledger.archive_expired(job, START + timedelta(days=10))

        assert archived == 1
        assert [e.id for e in await ledger.list_for_job(job.id)] == [recent.id]
        assert await ledger.store.get(EXECUTIONS_COLLECTION, old.id) is None
        assert await ledger.store.get(ARCHIVE_COLLECTION, old.id) is not None
        # Archived executions stay retrievable by id
        assert (await ledger.get(old.id)).id == old.id

    @pytest.mark.asyncio
    async def test_last_execution_falls_back_to_archive(self, ledger):
        job = make_job(retention_days=1)
        older = finished(started=START)
        newer = finished(started=START + timedelta(hours=1))
        await ledger.record(older)
        await ledger.record(newer)

        assert await ledger.archive_expired(job, START + timedelta(days=3)) == 2
        assert await ledger.list_for_job(job.id) == []
        assert (await ledger.last_execution(job.id)).id == newer.id

        # A live run wins over anything archived
        live = finished(started=START + timedelta(days=3))
        await ledger.record(live)
        assert (await ledger.last_execution(job.id)).id == live.id
        assert await ledger.last_execution("job_never_ran") is None

    @pytest.mark.asyncio
    async def test_running_executions_are_never_archived(self, ledger):
        running = Execution(job_id="job_ledger", status=JobStatus.RUNNING, start_time=START)
        await ledger.record(running)

        assert await ledger.archive_expired(make_job(retention_days=1), START + timedelta(days=30)) == 0

    @pytest.mark.asyncio
    async def test_fail_interrupted_closes_open_executions(self, ledger):
        running = Execution(job_id="job_ledger", status=JobStatus.RUNNING, start_time=START)
        done = finished()
        await ledger.record(running)
        await ledger.record(done)

        closed = await ledger.fail_interrupted(START + timedelta(seconds=30))

        assert closed == 1
        stored = await ledger.get(running.id)
        assert stored.status == JobStatus.FAILED
        assert stored.duration_ms == 30000
        assert stored.error_type == "Interrupted"
