"""
Job Registry - single source of truth for job definitions.

The Data Store is authoritative; the in-memory index is a read cache rebuilt
from it at startup. Every mutation is written to the store before the index
is touched, so a crash between the two leaves the store correct.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import copy
import logging
import uuid

from pydantic import ValidationError as PydanticValidationError

from core.clock import Clock, SystemClock
from core.exceptions import JobStateError, NotFoundError, NotRunningError, StoreError, ValidationError
from models.base import JobStatus, PipelineType, WriteMode
from pipeline.stores.base import DataStore
from schemas.job import Job, JobDefinition

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "pipeline_jobs"

# Fields owned by the engine, never accepted in a partial update
SERVER_FIELDS = frozenset({
    "status", "last_run", "next_run", "duration_ms", "retry_count", "created_at", "updated_at",
})


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


def _deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _field_errors(error: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in error.errors()
    ]


class JobRegistry:
    """
    Persistent job definitions with an in-memory index keyed by job id.

    Args:
        store: Data Store holding the ``pipeline_jobs`` collection
        clock: Time source for created_at/updated_at
        cancel_callback: Awaitable used by delete_job to cancel a running job
    """

    def __init__(
        self,
        store: DataStore,
        clock: Optional[Clock] = None,
        cancel_callback: Optional[Callable[[str], Awaitable[Any]]] = None
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.cancel_callback = cancel_callback
        self._jobs: Dict[str, Job] = {}

    # ========== Persistence ==========

    async def load(self) -> int:
        """Rebuild the index from the store; returns the number of jobs"""
        documents = await self.store.query(JOBS_COLLECTION)
        jobs: Dict[str, Job] = {}
        for document in documents:
            try:
                job = Job.model_validate(document)
            except PydanticValidationError as e:
                logger.error(f"Skipping unreadable job document {document.get('id')}: {e}")
                continue
            jobs[job.id] = job
        self._jobs = jobs
        logger.info(f"Loaded {len(jobs)} jobs from the data store")
        return len(jobs)

    async def _persist(self, job: Job) -> None:
        written = await self.store.write(JOBS_COLLECTION, job.model_dump(mode="json"), WriteMode.OVERWRITE)
        if not written:
            raise StoreError(f"Failed to persist job {job.id}", context={"job_id": job.id})
        self._jobs[job.id] = job.model_copy(deep=True)

    async def save(self, job: Job) -> Job:
        """Persist a state transition (touches updated_at)"""
        if job.id not in self._jobs:
            raise NotFoundError(f"Job {job.id} not found", context={"job_id": job.id})
        job.updated_at = self.clock.now()
        await self._persist(job)
        return job

    # ========== Validation ==========

    @staticmethod
    def _coerce(definition: Union[JobDefinition, Dict[str, Any]], job_id: Optional[str] = None) -> JobDefinition:
        try:
            if isinstance(definition, JobDefinition):
                return JobDefinition.model_validate(definition.model_dump())
            return JobDefinition.model_validate(definition)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid job definition",
                context={"job_id": job_id, "field_errors": _field_errors(e)}
            )

    def _check_dependencies(self, job_id: str, dependencies: List[str]) -> None:
        for dep in dependencies:
            if dep == job_id:
                raise ValidationError("A job cannot depend on itself", context={"job_id": job_id})
            if dep not in self._jobs:
                raise ValidationError(
                    f"Unknown dependency {dep}",
                    context={"job_id": job_id, "dependency": dep}
                )

        # Walk the dependency graph from each new dependency back to job_id
        stack = list(dependencies)
        seen = set()
        while stack:
            current = stack.pop()
            if current == job_id:
                raise ValidationError(
                    "Dependency cycle detected",
                    context={"job_id": job_id, "dependencies": dependencies}
                )
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._jobs[current].dependencies if current in self._jobs else [])

    # ========== Operations ==========

    async def create_job(self, definition: Union[JobDefinition, Dict[str, Any]]) -> str:
        """
        Validate, persist and index a new job.

        Returns:
            The new job id

        Raises:
            ValidationError: Invalid definition or unresolvable dependencies
        """
        definition = self._coerce(definition)
        job_id = new_job_id()
        self._check_dependencies(job_id, definition.dependencies)

        now = self.clock.now()
        job = Job.model_validate({
            **definition.model_dump(),
            "id": job_id,
            "status": JobStatus.PENDING,
            "created_at": now,
            "updated_at": now,
        })
        await self._persist(job)
        logger.info(f"Created job {job_id} ({job.name})")
        return job_id

    async def update_job(self, job_id: str, partial_update: Dict[str, Any]) -> Job:
        """
        Merge a partial update into a job's definition.

        Nested ``schedule`` and ``config`` objects are merged key by key;
        lists are replaced.

        Raises:
            NotFoundError: Unknown job id
            ValidationError: id change, server-managed field, or invalid result
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})

        partial_update = dict(partial_update)
        new_id = partial_update.pop("id", job_id)
        if new_id != job_id:
            raise ValidationError("Job id cannot be changed", context={"job_id": job_id})

        read_only = sorted(SERVER_FIELDS & partial_update.keys())
        if read_only:
            raise ValidationError(
                f"Read-only fields cannot be updated: {', '.join(read_only)}",
                context={"job_id": job_id, "fields": read_only}
            )

        merged = _deep_merge(job.definition().model_dump(), partial_update)
        # A new retry policy re-derives max_retries unless it is set explicitly
        config = partial_update.get("config")
        error_handling = config.get("error_handling") if isinstance(config, dict) else None
        if (
            "max_retries" not in partial_update
            and isinstance(error_handling, dict)
            and "retry_policy" in error_handling
        ):
            merged.pop("max_retries", None)

        definition = self._coerce(merged, job_id)
        self._check_dependencies(job_id, definition.dependencies)

        updated = Job.model_validate({
            **job.model_dump(),
            **definition.model_dump(),
            "updated_at": self.clock.now(),
        })
        await self._persist(updated)
        logger.info(f"Updated job {job_id}")
        return updated.model_copy(deep=True)

    async def delete_job(self, job_id: str, cancel_running: bool = True) -> None:
        """
        Delete a job, cancelling it first when running.

        Args:
            job_id: Job to delete
            cancel_running: Call the cancel hook for a running job; the
                Execution Engine passes False after cancelling under its own
                transition lock

        Raises:
            NotFoundError: Unknown job id
            JobStateError: Other jobs still depend on this one
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})

        dependents = [j.id for j in self._jobs.values() if job_id in j.dependencies]
        if dependents:
            raise JobStateError(
                f"Job {job_id} is a dependency of other jobs",
                context={"job_id": job_id, "dependents": dependents}
            )

        if cancel_running and job.status == JobStatus.RUNNING and self.cancel_callback is not None:
            try:
                await self.cancel_callback(job_id)
            except NotRunningError:
                # Finished between the status check and the cancel
                logger.info(f"Job {job_id} stopped running before it could be cancelled")

        deleted = await self.store.delete(JOBS_COLLECTION, job_id)
        if not deleted:
            logger.warning(f"Job {job_id} was missing from the data store on delete")
        self._jobs.pop(job_id, None)
        logger.info(f"Deleted job {job_id}")

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = self._jobs.get(job_id)
        return job.status if job else None

    def get_job(self, job_id: str) -> Optional[Job]:
        """Copy of the indexed job, or None"""
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[PipelineType] = None
    ) -> List[Job]:
        jobs = [
            job for job in self._jobs.values()
            if (status is None or job.status == status)
            and (job_type is None or job.type == job_type)
        ]
        jobs.sort(key=lambda j: (j.created_at, j.id))
        return [job.model_copy(deep=True) for job in jobs]

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
