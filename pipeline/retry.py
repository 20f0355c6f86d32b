"""
Retry & Backoff Controller.

Retries are never busy-waited: a failed job gets ``next_run = now + delay``
and the scheduler picks it up on a later tick.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import logging

from core.config import settings
from core.exceptions import NonRetryableError
from schemas.job import Job, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_MS = settings.DEFAULT_RETRY_DELAY_MS


def calculate_backoff_ms(policy: Optional[RetryPolicy], retry_count: int) -> int:
    """
    Delay before the next attempt.

    fixed → base; linear → min(base × (n+1), max);
    exponential → min(base × 2^n, max); no policy → 5 minutes.

    Args:
        policy: The job's retry policy, if any
        retry_count: Number of failures before the current one

    Returns:
        Delay in milliseconds
    """
    if policy is None:
        return DEFAULT_RETRY_DELAY_MS

    n = max(retry_count, 0)
    if policy.backoff_strategy == "fixed":
        return policy.base_delay_ms
    if policy.backoff_strategy == "linear":
        return min(policy.base_delay_ms * (n + 1), policy.max_delay_ms)
    return min(policy.base_delay_ms * (2 ** n), policy.max_delay_ms)


@dataclass
class RetryDecision:
    retry_count: int
    should_retry: bool
    delay_ms: Optional[int] = None
    next_run: Optional[datetime] = None


class RetryController:
    """
    Decide what a failed execution means for its job.

    A failure with retries remaining returns the job to ``pending`` with a
    future ``next_run``; otherwise the failure is terminal and ``next_run``
    is cleared.
    """

    def is_retryable(self, error: BaseException) -> bool:
        return not isinstance(error, NonRetryableError)

    def on_failure(self, job: Job, error: BaseException, now: datetime) -> RetryDecision:
        """
        Evaluate a failure.

        Args:
            job: Job as it was when the failed attempt started
            error: The exception that failed the execution
            now: Failure time

        Returns:
            RetryDecision carrying the new retry count and next run
        """
        failures_before = job.retry_count
        attempt = failures_before + 1
        max_retries = job.max_retries or 0

        if not self.is_retryable(error):
            logger.info(f"Job {job.id} failed with non-retryable {type(error).__name__}")
            return RetryDecision(retry_count=min(attempt, max_retries), should_retry=False)

        if attempt >= max_retries:
            logger.info(f"Job {job.id} exhausted {max_retries} retries")
            return RetryDecision(retry_count=min(attempt, max_retries), should_retry=False)

        delay_ms = calculate_backoff_ms(job.config.error_handling.retry_policy, failures_before)
        next_run = now + timedelta(milliseconds=delay_ms)
        logger.info(f"Job {job.id} retry {attempt}/{max_retries} in {delay_ms} ms")
        return RetryDecision(
            retry_count=attempt,
            should_retry=True,
            delay_ms=delay_ms,
            next_run=next_run
        )
