"""
Validate stage: evaluate validation rules and route failures by policy.

The ``on_failure`` policy applies per record, not per rule: a record that
fails any rule is skipped, aborts the execution, or is kept with a warning.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import re

from core.exceptions import DataValidationError, ValidationError
from models.base import LogLevel
from pipeline.query import get_nested_value
from schemas.job import (
    CustomRule,
    RangeRule,
    RegexRule,
    RequiredRule,
    TypeRule,
    ValidationConfig,
)

logger = logging.getLogger(__name__)

# (value, record, params) -> passed
CustomValidator = Callable[[Any, Dict[str, Any], Dict[str, Any]], bool]
LogFn = Callable[[LogLevel, str, Optional[Dict[str, Any]]], None]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_matches(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return _is_number(value)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    return False


def _default_message(rule) -> str:
    if isinstance(rule, RequiredRule):
        return f"{rule.field} is required"
    if isinstance(rule, TypeRule):
        return f"{rule.field} must be of type {rule.constraint}"
    if isinstance(rule, RangeRule):
        return f"{rule.field} must be within [{rule.constraint.min}, {rule.constraint.max}]"
    if isinstance(rule, RegexRule):
        return f"{rule.field} must match {rule.constraint}"
    return f"{rule.field} failed custom validator {rule.constraint.name}"


def evaluate_rule(
    rule,
    record: Dict[str, Any],
    custom_validators: Optional[Dict[str, CustomValidator]] = None
) -> Optional[str]:
    """
    Evaluate one rule against one record.

    Only ``required`` rejects a missing value; the other rule kinds pass when
    the field is absent or null.

    Returns:
        Failure message, or None when the record passes

    Raises:
        ValidationError: If a custom rule names an unregistered validator
    """
    value = get_nested_value(record, rule.field)
    present = value is not None

    if isinstance(rule, RequiredRule):
        passed = present and value != ""
    elif isinstance(rule, TypeRule):
        passed = not present or _type_matches(value, rule.constraint)
    elif isinstance(rule, RangeRule):
        if not present:
            passed = True
        elif not _is_number(value):
            passed = False
        else:
            low, high = rule.constraint.min, rule.constraint.max
            passed = (low is None or value >= low) and (high is None or value <= high)
    elif isinstance(rule, RegexRule):
        passed = not present or re.search(rule.constraint, str(value)) is not None
    elif isinstance(rule, CustomRule):
        validator = (custom_validators or {}).get(rule.constraint.name)
        if validator is None:
            raise ValidationError(
                f"Unknown custom validator: {rule.constraint.name}",
                context={"field": rule.field, "validator": rule.constraint.name}
            )
        try:
            passed = bool(validator(value, record, rule.constraint.params))
        except Exception as e:
            logger.warning(f"Custom validator {rule.constraint.name} raised {type(e).__name__}: {e}")
            return f"{rule.field} custom validator {rule.constraint.name} raised: {e}"
    else:
        raise ValidationError(f"Unsupported validation rule: {type(rule).__name__}")

    return None if passed else (rule.message or _default_message(rule))


def check_record(
    rules,
    record: Dict[str, Any],
    custom_validators: Optional[Dict[str, CustomValidator]] = None
) -> List[str]:
    """All failure messages for one record (empty list when valid)"""
    errors = []
    for rule in rules:
        message = evaluate_rule(rule, record, custom_validators)
        if message:
            errors.append(message)
    return errors


@dataclass
class ValidationOutcome:
    """Records that continue to the Load stage, plus what was rejected"""
    records: List[Dict[str, Any]]
    skipped: int = 0
    warned: int = 0
    rejected: List[Tuple[int, Dict[str, Any], List[str]]] = field(default_factory=list)

    @property
    def invalid(self) -> int:
        return self.skipped + self.warned


class RecordValidator:
    """
    Apply a job's validation ruleset to every record.

    Policies:
    - skip: drop the record and log one skip entry for it
    - fail: abort the execution with DataValidationError
    - warn: keep the record and log a warning
    """

    def __init__(
        self,
        config: ValidationConfig,
        custom_validators: Optional[Dict[str, CustomValidator]] = None
    ):
        self.config = config
        self.custom_validators = custom_validators or {}

    def validate(self, records: List[Dict[str, Any]], log: Optional[LogFn] = None) -> ValidationOutcome:
        """
        Validate records according to the configured policy.

        Args:
            records: Transformed records
            log: Execution log callback (level, message, context)

        Returns:
            ValidationOutcome with the records to load

        Raises:
            DataValidationError: First invalid record under the fail policy
            ValidationError: Custom rule names an unregistered validator
        """
        if not self.config.enabled or not self.config.rules:
            return ValidationOutcome(records=list(records))

        log = log or (lambda level, message, context=None: None)
        policy = self.config.on_failure
        outcome = ValidationOutcome(records=[])

        for index, record in enumerate(records):
            errors = check_record(self.config.rules, record, self.custom_validators)
            if not errors:
                outcome.records.append(record)
                continue

            if policy == "fail":
                raise DataValidationError(
                    f"Record {index} failed validation: {'; '.join(errors)}",
                    context={"record_index": index, "errors": errors}
                )

            if policy == "skip":
                outcome.skipped += 1
                outcome.rejected.append((index, record, errors))
                log(LogLevel.WARN, f"Skipped record {index}: {'; '.join(errors)}", {"record_index": index})
            else:
                outcome.warned += 1
                outcome.records.append(record)
                log(LogLevel.WARN, f"Validation warning for record {index}: {'; '.join(errors)}", {"record_index": index})

        logger.info(
            f"Validation complete: {len(outcome.records)} passed through, "
            f"{outcome.skipped} skipped, {outcome.warned} warned"
        )
        return outcome
