"""
Execution Ledger - run history, logs and metrics.

Executions are append-only once terminal: the ledger refuses to overwrite a
stored execution whose status is completed, failed or cancelled. Expired
executions are archived to a separate collection, never deleted.
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from core.clock import Clock, SystemClock
from core.exceptions import LedgerError
from models.base import JobStatus, LogLevel, WriteMode
from pipeline.stores.base import DataStore
from schemas.execution import Execution
from schemas.job import FilterCondition, Job

logger = logging.getLogger(__name__)

EXECUTIONS_COLLECTION = "pipeline_executions"
ARCHIVE_COLLECTION = "pipeline_executions_archive"


class ExecutionLedger:

    def __init__(self, store: DataStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    @staticmethod
    def _parse(documents) -> List[Execution]:
        executions = []
        for document in documents:
            try:
                executions.append(Execution.model_validate(document))
            except PydanticValidationError as e:
                logger.error(f"Skipping unreadable execution document {document.get('id')}: {e}")
        return executions

    async def record(self, execution: Execution) -> None:
        """
        Store the current state of an execution.

        Raises:
            LedgerError: The stored execution is already terminal, or the
                store rejected the write
        """
        existing = await self.store.get(EXECUTIONS_COLLECTION, execution.id)
        if existing is not None and JobStatus(existing["status"]).is_terminal:
            raise LedgerError(
                f"Execution {execution.id} is already {existing['status']}",
                context={"execution_id": execution.id, "status": existing["status"]}
            )

        written = await self.store.write(
            EXECUTIONS_COLLECTION,
            execution.model_dump(mode="json"),
            WriteMode.OVERWRITE
        )
        if not written:
            raise LedgerError(
                f"Failed to record execution {execution.id}",
                context={"execution_id": execution.id}
            )

    async def get(self, execution_id: str) -> Optional[Execution]:
        """Look up an execution in the live collection, then the archive"""
        for collection in (EXECUTIONS_COLLECTION, ARCHIVE_COLLECTION):
            document = await self.store.get(collection, execution_id)
            if document is not None:
                return Execution.model_validate(document)
        return None

    async def _query_job(self, collection: str, job_id: str) -> List[Execution]:
        documents = await self.store.query(
            collection,
            filters=[FilterCondition(field="job_id", operator="==", value=job_id)]
        )
        executions = self._parse(documents)
        executions.sort(key=lambda e: e.start_time, reverse=True)
        return executions

    async def list_for_job(self, job_id: str, limit: Optional[int] = None) -> List[Execution]:
        """Live executions of one job, newest first"""
        executions = await self._query_job(EXECUTIONS_COLLECTION, job_id)
        return executions[:limit] if limit is not None else executions

    async def last_execution(self, job_id: str) -> Optional[Execution]:
        """
        Most recent execution of a job.

        Falls back to the archive once every run of the job has been archived.
        """
        live = await self._query_job(EXECUTIONS_COLLECTION, job_id)
        if live:
            return live[0]
        archived = await self._query_job(ARCHIVE_COLLECTION, job_id)
        return archived[0] if archived else None

    async def list_all(self) -> List[Execution]:
        return self._parse(await self.store.query(EXECUTIONS_COLLECTION))

    async def archive_expired(self, job: Job, now: Optional[datetime] = None) -> int:
        """
        Move terminal executions older than the job's retention window to the
        archive collection.

        Returns:
            Number of executions archived
        """
        now = now or self.clock.now()
        cutoff = now - timedelta(days=job.config.monitoring.logging.retention_days)
        archived = 0

        for execution in await self.list_for_job(job.id):
            finished = execution.end_time or execution.start_time
            if not execution.status.is_terminal or finished >= cutoff:
                continue
            written = await self.store.write(
                ARCHIVE_COLLECTION,
                execution.model_dump(mode="json"),
                WriteMode.OVERWRITE
            )
            if not written:
                logger.warning(f"Archiving execution {execution.id} failed, keeping it live")
                continue
            await self.store.delete(EXECUTIONS_COLLECTION, execution.id)
            archived += 1

        if archived:
            logger.info(f"Archived {archived} executions of job {job.id}")
        return archived

    async def fail_interrupted(self, now: Optional[datetime] = None) -> int:
        """
        Close executions left non-terminal by a crash.

        Returns:
            Number of executions marked failed
        """
        now = now or self.clock.now()
        closed = 0
        for execution in await self.list_all():
            if execution.status.is_terminal:
                continue
            execution.status = JobStatus.FAILED
            execution.end_time = max(now, execution.start_time)
            execution.duration_ms = int((execution.end_time - execution.start_time).total_seconds() * 1000)
            execution.error_message = "Execution interrupted by orchestrator restart"
            execution.error_type = "Interrupted"
            execution.add_log(LogLevel.ERROR, execution.error_message, timestamp=now)
            await self.record(execution)
            closed += 1

        if closed:
            logger.warning(f"Marked {closed} interrupted executions as failed")
        return closed
