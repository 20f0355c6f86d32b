"""
Pipeline Stage Runner - Extract, Transform, Validate, Load for one execution.

This module provides:
- Strict stage ordering (each stage fully materialized before the next)
- Cooperative cancellation checks between stages
- Per-stage timing, record counters and execution logs
- Dead-letter capture of rejected records
- Execution metrics (throughput, error rate, resources, data quality)
"""

from contextlib import contextmanager
from typing import Any, Dict, List, Optional
import asyncio
import logging
import random
import time

import psutil

from core.clock import Clock, SystemClock
from core.exceptions import DataValidationError, ExecutionCancelled, PipelineError
from core.observability import ObservabilitySink, ensure_safe
from models.base import LogLevel, WriteMode
from pipeline.extractors.collection_extractor import CollectionExtractor
from pipeline.loaders.collection_loader import CollectionLoader, LoadResult
from pipeline.stores.base import DataStore
from pipeline.transformers.steps import StepContext, apply_transformations
from pipeline.transformers.validator import CustomValidator, RecordValidator, ValidationOutcome
from schemas.execution import Execution, QualityMetrics, ResourceUsage
from schemas.job import Job

logger = logging.getLogger(__name__)

DEAD_LETTER_COLLECTION = "pipeline_dead_letters"


def execution_logger(job: Job, execution: Execution, clock: Clock):
    """Log callback that stores entries at or above the job's monitoring level"""
    threshold = job.config.monitoring.logging.level.severity

    def log(level: LogLevel, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        if level.severity >= threshold:
            execution.add_log(level, message, context, timestamp=clock.now())

    return log


def resource_snapshot() -> ResourceUsage:
    """CPU and resident memory of the orchestrator process"""
    try:
        process = psutil.Process()
        return ResourceUsage(
            cpu_percent=process.cpu_percent(interval=None),
            memory_mb=round(process.memory_info().rss / (1024 * 1024), 2)
        )
    except psutil.Error as e:
        logger.debug(f"Resource snapshot unavailable: {e}")
        return ResourceUsage()


def quality_snapshot(records: List[Dict[str, Any]], invalid: int = 0) -> QualityMetrics:
    """
    Data quality ratios over the records that reached validation.

    completeness: share of non-null values over the union of fields
    accuracy: share of records that passed every validation rule
    consistency: share of records with the most common field set
    """
    if not records:
        return QualityMetrics()

    fields = set()
    shapes: Dict[frozenset, int] = {}
    for record in records:
        keys = frozenset(record.keys())
        fields |= keys
        shapes[keys] = shapes.get(keys, 0) + 1

    cells = len(records) * len(fields)
    filled = sum(1 for r in records for f in fields if r.get(f) is not None)

    return QualityMetrics(
        completeness=round(filled / cells, 4) if cells else 1.0,
        accuracy=round(1 - invalid / len(records), 4),
        consistency=round(max(shapes.values()) / len(records), 4)
    )


class StageRunner:
    """
    Runs the four ETL stages for one Execution.

    The runner mutates the Execution it is given (counters, logs, metrics) and
    raises on any fatal stage failure; the Execution Engine owns the status
    transition that follows.
    """

    def __init__(
        self,
        store: DataStore,
        custom_validators: Optional[Dict[str, CustomValidator]] = None,
        sink: Optional[ObservabilitySink] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.custom_validators = custom_validators if custom_validators is not None else {}
        self.sink = ensure_safe(sink)
        self.clock = clock or SystemClock()
        self.extractor = CollectionExtractor(store)
        self.loader = CollectionLoader(store)

    @contextmanager
    def _timed(self, execution: Execution, stage: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - started) * 1000
            execution.metrics.stage_durations_ms[stage] = round(elapsed, 3)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event], job: Job, stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCancelled(
                f"Execution cancelled before {stage} stage",
                context={"job_id": job.id, "stage": stage}
            )

    async def run(
        self,
        job: Job,
        execution: Execution,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Execution:
        """
        Run Extract → Transform → Validate → Load.

        Args:
            job: Job snapshot taken when the worker claimed its slot
            execution: Execution to fill in
            cancel_event: Set by cancel_job; checked between stages

        Returns:
            The same Execution with counters, logs and metrics set

        Raises:
            ExecutionCancelled: Cancellation observed at a stage boundary
            ExtractError / TransformationError / DataValidationError / LoadError
        """
        cfg = job.config
        log = execution_logger(job, execution, self.clock)
        validated: List[Dict[str, Any]] = []
        outcome: Optional[ValidationOutcome] = None
        load_result = LoadResult()

        log(LogLevel.INFO, f"Starting pipeline for job {job.name}", {"attempt": execution.attempt})
        self.sink.add_breadcrumb(f"Pipeline started for {job.name}", "pipeline", {"job_id": job.id})

        try:
            # ---------- Extract ----------
            self._check_cancelled(cancel_event, job, "extract")
            with self._timed(execution, "extract"):
                records = await self.extractor.extract(cfg.source)
            execution.records_processed = len(records)
            log(LogLevel.INFO, f"Extracted {len(records)} records from {cfg.source.collection}")

            # ---------- Transform ----------
            self._check_cancelled(cancel_event, job, "transform")
            with self._timed(execution, "transform"):
                ctx = StepContext(custom_validators=self.custom_validators, now=self.clock.now())
                records = apply_transformations(records, cfg.transformations, ctx)
            validated = records
            log(LogLevel.INFO, f"Transformed to {len(records)} records")

            # ---------- Validate ----------
            self._check_cancelled(cancel_event, job, "validate")
            with self._timed(execution, "validate"):
                validator = RecordValidator(cfg.validation, self.custom_validators)
                try:
                    outcome = validator.validate(records, log)
                except DataValidationError as e:
                    index = e.context.get("record_index")
                    if index is not None:
                        await self._dead_letter(job, execution, "validate", [(index, records[index], e.context.get("errors", []))])
                    raise
            execution.records_skipped = outcome.skipped
            await self._dead_letter(job, execution, "validate", outcome.rejected)
            if cfg.validation.enabled:
                log(
                    LogLevel.INFO,
                    f"Validation passed {len(outcome.records)} records "
                    f"({outcome.skipped} skipped, {outcome.warned} warned)"
                )

            # ---------- Load ----------
            self._check_cancelled(cancel_event, job, "load")
            try:
                with self._timed(execution, "load"):
                    await self.loader.load(cfg.target, outcome.records, log, load_result)
            finally:
                execution.records_success = load_result.success
                execution.records_failed = load_result.failed
                await self._dead_letter(
                    job, execution, "load",
                    [(i, r, [reason]) for i, r, reason in load_result.failures]
                )
            log(
                LogLevel.INFO,
                f"Loaded {load_result.success} records into {cfg.target.collection} "
                f"({load_result.failed} failed)"
            )
            return execution

        finally:
            self._fill_metrics(execution, validated, outcome)

    def _fill_metrics(
        self,
        execution: Execution,
        validated: List[Dict[str, Any]],
        outcome: Optional[ValidationOutcome]
    ) -> None:
        metrics = execution.metrics
        elapsed_s = sum(metrics.stage_durations_ms.values()) / 1000
        success = execution.records_success
        metrics.throughput = round(success / elapsed_s, 3) if elapsed_s > 0 else float(success)
        processed = execution.records_processed
        metrics.error_rate = round(execution.records_failed / processed * 100, 3) if processed else 0.0
        metrics.resource_usage = resource_snapshot()
        metrics.data_quality = quality_snapshot(validated, outcome.invalid if outcome else 0)

    async def _dead_letter(self, job: Job, execution: Execution, stage: str, rejected) -> None:
        """Write rejected records to the dead-letter collection when enabled"""
        if not rejected or not job.config.error_handling.dead_letter_queue:
            return
        for index, record, errors in rejected:
            entry = {
                "job_id": job.id,
                "execution_id": execution.id,
                "stage": stage,
                "record_index": index,
                "errors": list(errors),
                "record": record,
                "created_at": self.clock.now().isoformat(),
            }
            try:
                written = await self.store.write(DEAD_LETTER_COLLECTION, entry, WriteMode.APPEND)
            except PipelineError as e:
                written = False
                self.sink.capture_exception(e, {"job_id": job.id, "stage": stage})
            if not written:
                logger.warning(f"Dead-letter write failed for job {job.id} record {index}")

    def publish_metrics(self, job: Job, execution: Execution, rng=random.random) -> None:
        """
        Send the job's configured metrics to the observability sink.

        Emission is sampled by ``monitoring.sampling``; unknown metric names
        are ignored.
        """
        monitoring = job.config.monitoring
        if monitoring.sampling <= 0 or rng() >= monitoring.sampling:
            return

        values = {
            "duration_ms": execution.duration_ms or 0,
            "throughput": execution.metrics.throughput,
            "error_rate": execution.metrics.error_rate,
            "records_processed": execution.records_processed,
            "records_success": execution.records_success,
            "records_failed": execution.records_failed,
            "records_skipped": execution.records_skipped,
            "cpu_percent": execution.metrics.resource_usage.cpu_percent,
            "memory_mb": execution.metrics.resource_usage.memory_mb,
            "completeness": execution.metrics.data_quality.completeness,
            "accuracy": execution.metrics.data_quality.accuracy,
            "consistency": execution.metrics.data_quality.consistency,
        }
        tags = {"job_id": job.id, "job_type": job.type.value, "status": execution.status.value}
        for name in monitoring.metrics:
            if name not in values:
                logger.debug(f"Unknown metric {name} for job {job.id}")
                continue
            self.sink.record_metric(f"pipeline.{name}", float(values[name]), tags)
