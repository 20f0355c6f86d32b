"""
Unit tests for transformation steps
"""

import hashlib
from datetime import datetime, timezone

import pytest
from unittest.mock import patch
from pydantic import TypeAdapter

from core.exceptions import DataValidationError, TransformationError, ValidationError
from pipeline.transformers.steps import _HANDLERS, StepContext, apply_step, apply_transformations
from schemas.job import MapStep, TransformationStep

STEP = TypeAdapter(TransformationStep)


def step(**data):
    data.setdefault("name", data["type"])
    return STEP.validate_python(data)


class TestRecordSteps:
    """Test per-record step kinds"""

    def test_filter_keeps_matching_records(self):
        records = [{"amount": 5}, {"amount": 50}, {"amount": None}]
        result = apply_step(records, step(type="filter", config={"field": "amount", "operator": ">", "value": 10}))
        assert result == [{"amount": 50}]

    def test_map_renames_nested_fields(self):
        records = [{"customer": {"email": "a@example.com"}, "total": 3}]
        result = apply_step(records, step(
            type="map",
            config={"mappings": {"customer.email": "email", "total": "summary.total"}}
        ))
        assert result == [{"customer": {}, "email": "a@example.com", "summary": {"total": 3}}]

    def test_input_records_are_not_mutated(self):
        records = [{"name": "  Ada  "}]
        apply_step(records, step(type="normalize", config={"fields": ["name"]}))
        assert records == [{"name": "  Ada  "}]

    def test_normalize_applies_operations_in_order(self):
        records = [{"email": "  Ada@Example.COM ", "count": 3}]
        result = apply_step(records, step(
            type="normalize",
            config={"fields": ["email", "count"], "operations": ["strip", "lower"]}
        ))
        assert result == [{"email": "ada@example.com", "count": 3}]

    def test_enrich_does_not_overwrite_by_default(self):
        now = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        records = [{"source": "crm"}, {}]
        result = apply_step(
            records,
            step(type="enrich", config={"values": {"source": "batch"}, "timestamp_field": "meta.loaded_at"}),
            StepContext(now=now)
        )
        assert result[0]["source"] == "crm"
        assert result[1]["source"] == "batch"
        assert result[1]["meta"]["loaded_at"] == now.isoformat()

    def test_anonymize_hash_and_mask(self):
        records = [{"email": "ada@example.com", "card": "4111111111111111"}]
        hashed = apply_step(records, step(type="anonymize", config={"fields": ["email"], "salt": "s"}))
        masked = apply_step(records, step(type="anonymize", config={"fields": ["card"], "method": "mask"}))

        assert hashed[0]["email"] == hashlib.sha256(b"sada@example.com").hexdigest()
        assert masked[0]["card"] == "************1111"

    def test_anonymize_drop(self):
        result = apply_step([{"ssn": "123", "name": "Ada"}], step(
            type="anonymize", config={"fields": ["ssn"], "method": "drop"}
        ))
        assert result == [{"name": "Ada"}]


class TestAggregateStep:

    def test_group_sum_and_overall_avg(self):
        records = [
            {"region": "eu", "amount": 10},
            {"region": "us", "amount": 5},
            {"region": "eu", "amount": 30},
        ]
        result = apply_step(records, step(
            type="aggregate",
            config={"group_by": ["region"], "aggregations": {"amount": "sum"}}
        ))
        assert result == [{"region": "eu", "amount_sum": 40}, {"region": "us", "amount_sum": 5}]

        result = apply_step(records, step(
            type="aggregate",
            config={"aggregations": {"amount": "avg"}}
        ))
        assert result == [{"amount_avg": 15}]

    def test_non_numeric_sum_fails(self):
        with pytest.raises(TransformationError) as exc_info:
            apply_step([{"amount": "ten"}], step(
                type="aggregate", id="agg", config={"aggregations": {"amount": "sum"}}
            ))
        assert exc_info.value.context["step_id"] == "agg"
        assert exc_info.value.context["step_type"] == "aggregate"


class TestJoinStep:

    def test_left_join_keeps_unmatched(self):
        records = [{"sku": "a", "qty": 1}, {"sku": "z", "qty": 2}]
        lookup = [{"sku": "a", "title": "Apple"}, {"sku": "a", "title": "Duplicate"}]
        result = apply_step(records, step(type="join", config={"on": "sku", "lookup": lookup}))
        assert result == [{"sku": "a", "qty": 1, "title": "Apple"}, {"sku": "z", "qty": 2}]

    def test_inner_join_with_prefix(self):
        records = [{"sku": "a"}, {"sku": "z"}]
        lookup = [{"code": "a", "title": "Apple"}]
        result = apply_step(records, step(
            type="join",
            config={"on": "sku", "right_on": "code", "lookup": lookup, "how": "inner", "prefix": "p_"}
        ))
        assert result == [{"sku": "a", "p_code": "a", "p_title": "Apple"}]


class TestStepPipeline:

    def test_disabled_steps_are_skipped(self):
        steps = [
            step(type="filter", enabled=False, config={"field": "keep", "value": True}),
            step(type="enrich", config={"values": {"seen": True}}),
        ]
        result = apply_transformations([{"keep": False}], steps)
        assert result == [{"keep": False, "seen": True}]

    def test_validate_step_raises_data_validation_error(self):
        validate = step(type="validate", config={"rules": [{"type": "required", "field": "email"}]})
        with pytest.raises(DataValidationError) as exc_info:
            apply_transformations([{"email": "x"}, {}], [validate])
        assert exc_info.value.context["record_index"] == 1
        assert exc_info.value.context["step_name"] == "validate"

    def test_unknown_custom_validator_is_not_wrapped(self):
        validate = step(type="validate", config={
            "rules": [{"type": "custom", "field": "email", "constraint": {"name": "missing"}}]
        })
        with pytest.raises(ValidationError):
            apply_transformations([{"email": "x"}], [validate])

    def test_unexpected_error_names_step(self):
        def explode(records, step, ctx):
            raise KeyError("boom")

        mapper = step(type="map", name="rename", config={"mappings": {"a": "b"}})
        with patch.dict(_HANDLERS, {MapStep: explode}):
            with pytest.raises(TransformationError) as exc_info:
                apply_transformations([{"a": 1}], [mapper])

        assert exc_info.value.context["step_name"] == "rename"
        assert isinstance(exc_info.value.original_exception, KeyError)
