"""
Unit tests for backoff calculation and failure evaluation
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ExtractError, TransformationError, ValidationError
from pipeline.retry import DEFAULT_RETRY_DELAY_MS, RetryController, calculate_backoff_ms
from schemas.job import Job, RetryPolicy

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_job(retry_count=0, max_retries=None, policy=None) -> Job:
    error_handling = {"retry_policy": policy} if policy else {}
    data = {
        "id": "job_retry",
        "name": "retry me",
        "schedule": {"kind": "once"},
        "config": {
            "source": {"collection": "in"},
            "target": {"collection": "out"},
            "error_handling": error_handling,
        },
        "retry_count": retry_count,
        "created_at": NOW,
        "updated_at": NOW,
    }
    if max_retries is not None:
        data["max_retries"] = max_retries
    return Job.model_validate(data)


class TestCalculateBackoff:

    def test_exponential_doubles_and_caps(self):
        policy = RetryPolicy(max_retries=10, backoff_strategy="exponential", base_delay_ms=1000, max_delay_ms=60000)
        delays = [calculate_backoff_ms(policy, n) for n in range(8)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 32000, 60000, 60000]

    def test_linear(self):
        policy = RetryPolicy(backoff_strategy="linear", base_delay_ms=500, max_delay_ms=1200)
        assert [calculate_backoff_ms(policy, n) for n in range(4)] == [500, 1000, 1200, 1200]

    def test_fixed(self):
        policy = RetryPolicy(backoff_strategy="fixed", base_delay_ms=750, max_delay_ms=60000)
        assert calculate_backoff_ms(policy, 5) == 750

    def test_no_policy_uses_default_delay(self):
        assert calculate_backoff_ms(None, 2) == DEFAULT_RETRY_DELAY_MS == 300000

    def test_policy_rejects_max_below_base(self):
        with pytest.raises(PydanticValidationError):
            RetryPolicy(base_delay_ms=5000, max_delay_ms=1000)


class TestRetryController:
    """Test retry decisions after a failed execution"""

    def test_retryable_failure_schedules_next_run(self):
        job = make_job(retry_count=1, policy={"max_retries": 3})
        decision = RetryController().on_failure(job, ExtractError("timeout"), NOW)

        assert decision.should_retry is True
        assert decision.retry_count == 2
        assert decision.delay_ms == 2000
        assert decision.next_run == NOW + timedelta(milliseconds=2000)

    def test_last_allowed_failure_is_terminal(self):
        job = make_job(retry_count=2, max_retries=3)
        decision = RetryController().on_failure(job, ExtractError("timeout"), NOW)

        assert decision.should_retry is False
        assert decision.retry_count == 3
        assert decision.next_run is None

    def test_non_retryable_failure_is_terminal_immediately(self):
        job = make_job(retry_count=0, max_retries=3)
        decision = RetryController().on_failure(job, ValidationError("bad rule"), NOW)

        assert decision.should_retry is False
        assert decision.retry_count == 1

    def test_transformation_errors_are_retryable(self):
        assert RetryController().is_retryable(TransformationError("step failed")) is True

    def test_zero_max_retries_never_retries(self):
        job = make_job(max_retries=0)
        decision = RetryController().on_failure(job, ExtractError("timeout"), NOW)
        assert decision.should_retry is False
        assert decision.retry_count == 0

    def test_default_delay_without_policy(self):
        job = make_job(max_retries=3)
        decision = RetryController().on_failure(job, RuntimeError("boom"), NOW)
        assert decision.next_run == NOW + timedelta(minutes=5)
