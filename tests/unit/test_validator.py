"""
Unit tests for the Validate stage
"""

import pytest
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import DataValidationError, ValidationError
from models.base import LogLevel
from pipeline.transformers.validator import RecordValidator, check_record, evaluate_rule
from schemas.job import ValidationConfig, ValidationRule

RULE = TypeAdapter(ValidationRule)


def rule(**data):
    return RULE.validate_python(data)


class TestEvaluateRule:
    """Test individual rule kinds"""

    def test_required_rejects_missing_and_empty(self):
        required = rule(type="required", field="email")
        assert evaluate_rule(required, {"email": "a@example.com"}) is None
        assert evaluate_rule(required, {}) == "email is required"
        assert evaluate_rule(required, {"email": ""}) == "email is required"

    def test_type_rule(self):
        integer = rule(type="type", field="qty", constraint="integer")
        assert evaluate_rule(integer, {"qty": 3}) is None
        assert evaluate_rule(integer, {"qty": True}) is not None
        assert evaluate_rule(integer, {"qty": 2.5}) is not None
        # Absent values are only rejected by required rules
        assert evaluate_rule(integer, {}) is None

    def test_range_rule(self):
        bounded = rule(type="range", field="amount", constraint={"min": 0, "max": 100})
        assert evaluate_rule(bounded, {"amount": 50}) is None
        assert evaluate_rule(bounded, {"amount": 101}) is not None
        assert evaluate_rule(bounded, {"amount": "50"}) is not None

    def test_regex_rule_with_custom_message(self):
        email = rule(type="regex", field="email", constraint=r"^[^@]+@[^@]+$", message="bad email")
        assert evaluate_rule(email, {"email": "a@example.com"}) is None
        assert evaluate_rule(email, {"email": "nope"}) == "bad email"

    def test_invalid_regex_rejected_at_definition(self):
        with pytest.raises(PydanticValidationError):
            rule(type="regex", field="email", constraint="(")

    def test_custom_rule_uses_registered_validator(self):
        even = rule(type="custom", field="n", constraint={"name": "multiple_of", "params": {"k": 2}})
        validators = {"multiple_of": lambda value, record, params: value % params["k"] == 0}
        assert evaluate_rule(even, {"n": 4}, validators) is None
        assert evaluate_rule(even, {"n": 3}, validators) is not None

    def test_custom_validator_exception_is_a_failure(self):
        custom = rule(type="custom", field="n", constraint={"name": "boom"})

        def boom(value, record, params):
            raise RuntimeError("kaput")

        message = evaluate_rule(custom, {"n": 1}, {"boom": boom})
        assert "kaput" in message

    def test_unknown_custom_validator_raises(self):
        custom = rule(type="custom", field="n", constraint={"name": "unregistered"})
        with pytest.raises(ValidationError):
            evaluate_rule(custom, {"n": 1}, {})

    def test_check_record_collects_all_failures(self):
        rules = [rule(type="required", field="a"), rule(type="required", field="b")]
        assert check_record(rules, {}) == ["a is required", "b is required"]


class TestRecordValidator:
    """Test on_failure policies"""

    @pytest.fixture
    def records(self):
        return [{"email": "a@example.com"}, {}, {"email": "c@example.com"}, {"email": ""}]

    def config(self, on_failure):
        return ValidationConfig(
            enabled=True,
            rules=[{"type": "required", "field": "email"}],
            on_failure=on_failure
        )

    def test_disabled_validation_passes_everything(self, records):
        validator = RecordValidator(ValidationConfig(rules=[{"type": "required", "field": "email"}]))
        outcome = validator.validate(records)
        assert outcome.records == records
        assert outcome.skipped == 0

    def test_skip_drops_invalid_records_and_logs_each(self, records):
        logs = []
        outcome = RecordValidator(self.config("skip")).validate(
            records, lambda level, message, context=None: logs.append((level, message))
        )

        assert outcome.records == [records[0], records[2]]
        assert outcome.skipped == 2
        assert [index for index, _, _ in outcome.rejected] == [1, 3]
        assert logs == [
            (LogLevel.WARN, "Skipped record 1: email is required"),
            (LogLevel.WARN, "Skipped record 3: email is required"),
        ]

    def test_warn_keeps_invalid_records(self, records):
        outcome = RecordValidator(self.config("warn")).validate(records)
        assert outcome.records == records
        assert outcome.warned == 2
        assert outcome.invalid == 2

    def test_fail_raises_on_first_invalid_record(self, records):
        with pytest.raises(DataValidationError) as exc_info:
            RecordValidator(self.config("fail")).validate(records)
        assert exc_info.value.context["record_index"] == 1
        assert exc_info.value.context["errors"] == ["email is required"]
