"""
Transform stage: apply enabled transformation steps in list order.

Each step kind is a pure function from a record list to a new record list;
input records are never mutated. Dispatch is keyed on the step's model class,
so every member of the TransformationStep union must have a handler here.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import copy
import hashlib
import logging

from core.clock import utcnow
from core.exceptions import DataValidationError, PipelineError, TransformationError, ValidationError
from pipeline.query import compare, get_nested_value, has_path, pop_nested_value, set_nested_value
from pipeline.transformers.validator import CustomValidator, check_record
from schemas.job import (
    AggregateStep,
    AnonymizeStep,
    EnrichStep,
    FilterStep,
    JoinStep,
    MapStep,
    NormalizeStep,
    ValidateStep,
)

logger = logging.getLogger(__name__)

Records = List[Dict[str, Any]]


@dataclass
class StepContext:
    """Collaborators available to step handlers"""
    custom_validators: Dict[str, CustomValidator] = field(default_factory=dict)
    now: Optional[datetime] = None


# ============================================================================
# Step Handlers
# ============================================================================

def _filter(records: Records, step: FilterStep, ctx: StepContext) -> Records:
    cfg = step.config
    return [
        copy.deepcopy(r) for r in records
        if compare(cfg.operator, get_nested_value(r, cfg.field), cfg.value)
    ]


def _map(records: Records, step: MapStep, ctx: StepContext) -> Records:
    result = []
    for record in records:
        mapped = copy.deepcopy(record)
        for source, target in step.config.mappings.items():
            if has_path(mapped, source):
                set_nested_value(mapped, target, pop_nested_value(mapped, source))
        result.append(mapped)
    return result


def _aggregate(records: Records, step: AggregateStep, ctx: StepContext) -> Records:
    cfg = step.config
    groups: "OrderedDict[tuple, Records]" = OrderedDict()
    for record in records:
        key = tuple(get_nested_value(record, f) for f in cfg.group_by)
        groups.setdefault(key, []).append(record)

    result = []
    for key, members in groups.items():
        row: Dict[str, Any] = {}
        for group_field, value in zip(cfg.group_by, key):
            set_nested_value(row, group_field, value)

        for agg_field, func in cfg.aggregations.items():
            values = [get_nested_value(m, agg_field) for m in members]
            values = [v for v in values if v is not None]
            name = f"{agg_field.replace('.', '_')}_{func}"

            if func == "count":
                row[name] = len(values)
                continue

            bad = [v for v in values if not isinstance(v, (int, float)) or isinstance(v, bool)]
            if bad:
                raise TransformationError(
                    f"Cannot {func} non-numeric value {bad[0]!r} in field {agg_field}",
                    context={"field": agg_field}
                )
            total = sum(values)
            if func == "sum":
                row[name] = total
            else:
                row[name] = total / len(values) if values else None
        result.append(row)
    return result


def _join(records: Records, step: JoinStep, ctx: StepContext) -> Records:
    cfg = step.config
    right_on = cfg.right_on or cfg.on

    # First match wins
    index: Dict[Any, Dict[str, Any]] = {}
    for row in cfg.lookup:
        index.setdefault(get_nested_value(row, right_on), row)

    result = []
    for record in records:
        match = index.get(get_nested_value(record, cfg.on))
        if match is None:
            if cfg.how == "left":
                result.append(copy.deepcopy(record))
            continue

        joined = copy.deepcopy(record)
        for name, value in match.items():
            target = f"{cfg.prefix}{name}"
            # Left-side fields win unless the right side is prefixed
            if cfg.prefix or target not in joined:
                joined[target] = copy.deepcopy(value)
        result.append(joined)
    return result


def _enrich(records: Records, step: EnrichStep, ctx: StepContext) -> Records:
    cfg = step.config
    stamp = (ctx.now or utcnow()).isoformat()
    result = []
    for record in records:
        enriched = copy.deepcopy(record)
        for name, value in cfg.values.items():
            if cfg.overwrite or not has_path(enriched, name):
                set_nested_value(enriched, name, copy.deepcopy(value))
        if cfg.timestamp_field:
            set_nested_value(enriched, cfg.timestamp_field, stamp)
        result.append(enriched)
    return result


def _validate(records: Records, step: ValidateStep, ctx: StepContext) -> Records:
    for index, record in enumerate(records):
        errors = check_record(step.config.rules, record, ctx.custom_validators)
        if errors:
            raise DataValidationError(
                f"Record {index} failed validation step: {'; '.join(errors)}",
                context={"record_index": index, "errors": errors}
            )
    return [copy.deepcopy(r) for r in records]


def _normalize(records: Records, step: NormalizeStep, ctx: StepContext) -> Records:
    cfg = step.config
    result = []
    for record in records:
        normalized = copy.deepcopy(record)
        for name in cfg.fields:
            value = get_nested_value(normalized, name)
            if not isinstance(value, str):
                continue
            for operation in cfg.operations:
                if operation == "strip":
                    value = value.strip()
                elif operation == "lower":
                    value = value.lower()
                elif operation == "upper":
                    value = value.upper()
            set_nested_value(normalized, name, value)
        result.append(normalized)
    return result


def _mask(value: Any) -> str:
    text = str(value)
    if len(text) <= 4:
        return "*" * len(text)
    return "*" * (len(text) - 4) + text[-4:]


def _anonymize(records: Records, step: AnonymizeStep, ctx: StepContext) -> Records:
    cfg = step.config
    result = []
    for record in records:
        anonymized = copy.deepcopy(record)
        for name in cfg.fields:
            if cfg.method == "drop":
                pop_nested_value(anonymized, name)
                continue
            value = get_nested_value(anonymized, name)
            if value is None:
                continue
            if cfg.method == "hash":
                digest = hashlib.sha256(f"{cfg.salt}{value}".encode("utf-8")).hexdigest()
                set_nested_value(anonymized, name, digest)
            else:
                set_nested_value(anonymized, name, _mask(value))
        result.append(anonymized)
    return result


_HANDLERS: Dict[type, Callable[[Records, Any, StepContext], Records]] = {
    FilterStep: _filter,
    MapStep: _map,
    AggregateStep: _aggregate,
    JoinStep: _join,
    EnrichStep: _enrich,
    ValidateStep: _validate,
    NormalizeStep: _normalize,
    AnonymizeStep: _anonymize,
}


# ============================================================================
# Stage Entry Point
# ============================================================================

def apply_step(records: Records, step, ctx: Optional[StepContext] = None) -> Records:
    """
    Apply one step, wrapping any failure in a TransformationError naming it.

    Raises:
        TransformationError: The step failed (DataValidationError for a
            validate step rejecting a record)
    """
    ctx = ctx or StepContext()
    context = {"step_id": step.id, "step_name": step.name, "step_type": step.type}

    handler = _HANDLERS.get(type(step))
    if handler is None:
        raise TransformationError(f"No handler for transformation step type {step.type}", context=context)

    try:
        return handler(records, step, ctx)
    except ValidationError:
        raise
    except PipelineError as e:
        error_cls = DataValidationError if isinstance(e, DataValidationError) else TransformationError
        raise error_cls(
            f"Transformation step '{step.name}' ({step.type}) failed: {e.message}",
            context={**context, **{k: v for k, v in e.context.items() if k != "error_timestamp"}},
            original_exception=e
        )
    except Exception as e:
        raise TransformationError(
            f"Transformation step '{step.name}' ({step.type}) failed: {e}",
            context=context,
            original_exception=e
        )


def apply_transformations(records: Records, steps, ctx: Optional[StepContext] = None) -> Records:
    """
    Apply every enabled step in list order.

    Nothing is committed on failure: the caller only ever sees the final
    output or the exception.

    Args:
        records: Extracted records
        steps: The job's transformation steps
        ctx: Step collaborators (custom validators, clock)

    Returns:
        Transformed records
    """
    ctx = ctx or StepContext()
    current = list(records)
    for step in steps:
        if not step.enabled:
            logger.debug(f"Skipping disabled step {step.name}")
            continue
        before = len(current)
        current = apply_step(current, step, ctx)
        logger.debug(f"Step {step.name} ({step.type}): {before} -> {len(current)} records")
    return current
