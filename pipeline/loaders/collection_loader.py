"""
Load stage: write records to the target collection (best-effort by default)
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from core.exceptions import LoadError, StoreUnavailableError
from models.base import LogLevel
from pipeline.stores.base import DataStore
from schemas.job import TargetConfig

logger = logging.getLogger(__name__)

LogFn = Callable[[LogLevel, str, Optional[Dict[str, Any]]], None]


@dataclass
class LoadResult:
    success: int = 0
    failed: int = 0
    failures: List[Tuple[int, Dict[str, Any], str]] = field(default_factory=list)


class CollectionLoader:
    """
    Write records one at a time using the target's write mode.

    Ensures:
    - A single record failure is counted and logged, the batch continues
    - Connectivity loss aborts the remaining load with LoadError
    - An optional max_failures threshold aborts the load with LoadError
    """

    def __init__(self, store: DataStore):
        self.store = store

    async def load(
        self,
        target: TargetConfig,
        records: List[Dict[str, Any]],
        log: Optional[LogFn] = None,
        result: Optional[LoadResult] = None
    ) -> LoadResult:
        """
        Load records into the target collection.

        Args:
            target: Target descriptor from the job's pipeline config
            records: Validated records
            log: Execution log callback (level, message, context)
            result: Counters to update in place (kept current if the load aborts)

        Returns:
            LoadResult with success/failure counts

        Raises:
            LoadError: On connectivity loss or when max_failures is reached
        """
        log = log or (lambda level, message, context=None: None)
        result = result if result is not None else LoadResult()

        logger.info(f"Loading {len(records)} records into {target.collection} ({target.write_mode.value})")

        for index, record in enumerate(records):
            try:
                written = await self.store.write(target.collection, record, target.write_mode)
                reason = None if written else "store rejected write"
            except StoreUnavailableError as e:
                raise LoadError(
                    f"Target {target.collection} unavailable, load aborted",
                    context={
                        "collection": target.collection,
                        "records_written": result.success,
                        "records_failed": result.failed,
                    },
                    original_exception=e
                )
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"

            if reason is None:
                result.success += 1
                continue

            result.failed += 1
            result.failures.append((index, record, reason))
            log(LogLevel.ERROR, f"Failed to write record {index}: {reason}", {"record_index": index})
            logger.warning(f"Write of record {index} to {target.collection} failed: {reason}")

            if target.max_failures and result.failed >= target.max_failures:
                raise LoadError(
                    f"Load aborted after {result.failed} failed writes",
                    context={
                        "collection": target.collection,
                        "records_written": result.success,
                        "records_failed": result.failed,
                    }
                )

        logger.info(f"Load complete: {result.success} written, {result.failed} failed")
        return result
