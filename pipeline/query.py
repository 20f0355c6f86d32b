"""
Field/operator/value evaluation shared by the data stores and the filter step.

Only equality, inequality, range, membership and ordering are supported; the
orchestrator never assumes a richer query language from the Data Store.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)

_MISSING = object()


def get_nested_value(record: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Resolve a dotted field path ("customer.address.city") against a record.

    Returns:
        The value, or ``default`` when any segment is absent
    """
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def has_path(record: Dict[str, Any], path: str) -> bool:
    return get_nested_value(record, path, _MISSING) is not _MISSING


def set_nested_value(record: Dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted field path, creating intermediate dicts as needed"""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def pop_nested_value(record: Dict[str, Any], path: str, default: Any = None) -> Any:
    parts = path.split(".")
    current: Any = record
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    if not isinstance(current, dict):
        return default
    return current.pop(parts[-1], default)


def compare(operator: str, left: Any, right: Any) -> bool:
    """
    Evaluate ``left <operator> right``.

    A missing (None) left operand only satisfies ``== None`` and ``!= <value>``.
    Ordering comparisons between incompatible types evaluate to False.
    """
    if operator == "==":
        return left == right
    if operator == "!=":
        return left != right
    if operator == "in":
        return isinstance(right, (list, tuple, set)) and left in right
    if operator == "not-in":
        return left is not None and isinstance(right, (list, tuple, set)) and left not in right
    if operator == "array-contains":
        return isinstance(left, list) and right in left

    if left is None or right is None:
        return False
    try:
        if operator == "<":
            return left < right
        if operator == "<=":
            return left <= right
        if operator == ">":
            return left > right
        if operator == ">=":
            return left >= right
    except TypeError:
        return False

    raise ValueError(f"Unsupported operator: {operator}")


def matches(record: Dict[str, Any], filters: Iterable[Any]) -> bool:
    """True when the record satisfies every filter condition"""
    for condition in filters:
        value = get_nested_value(record, condition.field)
        if not compare(condition.operator, value, condition.value):
            return False
    return True


def _sort_key(field: str, descending: bool, as_str: bool = False):
    # None sorts last in both directions
    def key(record: Dict[str, Any]):
        value = get_nested_value(record, field)
        if as_str and value is not None:
            value = str(value)
        present = value is not None
        return (present if descending else not present, value)
    return key


def apply_query(
    records: Sequence[Dict[str, Any]],
    filters: Optional[Iterable[Any]] = None,
    order_by: Optional[Iterable[Any]] = None,
    limit: Optional[int] = None
) -> List[Dict[str, Any]]:
    """
    Filter, order and limit an in-memory record sequence.

    Args:
        records: Candidate records
        filters: Objects with ``field``, ``operator`` and ``value``
        order_by: Objects with ``field`` and ``direction`` ("asc"/"desc")
        limit: Maximum number of records to return

    Returns:
        New list of matching records; missing sort fields order last
    """
    filters = list(filters or [])
    result = [r for r in records if matches(r, filters)]

    # Stable multi-key sort: apply keys from least to most significant
    for ordering in reversed(list(order_by or [])):
        reverse = ordering.direction == "desc"
        try:
            result.sort(key=_sort_key(ordering.field, reverse), reverse=reverse)
        except TypeError:
            logger.debug(f"Mixed types in order_by field {ordering.field}, ordering as strings")
            result.sort(key=_sort_key(ordering.field, reverse, as_str=True), reverse=reverse)

    if limit is not None:
        result = result[:limit]
    return result
