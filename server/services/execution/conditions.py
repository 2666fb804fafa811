"""Comparison operators shared by conditions, filters and expressions.

Structured conditions have the shape ``{"field": ..., "operator": ...,
"value": ...}`` and are evaluated against a data dict. The same operator table
backs the comparison and predicate functions of the expression language, so
``eq(x, "a")``, ``x == "a"`` and ``{"field": "x", "operator": "eq",
"value": "a"}`` always agree.

Supported operators: eq, neq, gt, gte, lt, lte, contains, not_contains,
starts_with, ends_with, matches, in, not_in, exists, not_exists, is_empty,
is_not_empty, is_true, is_false.
"""

import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.logging import get_logger

logger = get_logger(__name__)

ConditionDict = Dict[str, Any]

# Names the form builder stores for the same operators
OPERATOR_ALIASES = {
    "equals": "eq",
    "not_equals": "neq",
    "greater_than": "gt",
    "less_than": "lt",
    "regex": "matches",
    "==": "eq",
    "!=": "neq",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}


def get_nested_value(data: Any, field_path: str) -> Any:
    """Get a nested value using dot notation ("result.items.0.name").

    Returns None when any segment is missing.
    """
    if data is None or not field_path:
        return None
    return walk_path(data, field_path.split('.'))


def walk_path(current: Any, segments) -> Any:
    for part in segments:
        if current is None:
            return None
        if isinstance(current, dict):
            if part in current:
                current = current[part]
            elif isinstance(part, int) and str(part) in current:
                current = current[str(part)]
            else:
                return None
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except (TypeError, ValueError):
                return None
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return None
        else:
            return None
    return current


def _loose_equals(actual: Any, target: Any) -> bool:
    if actual == target:
        return True
    if actual is None or target is None:
        return False
    if isinstance(actual, (dict, list)) or isinstance(target, (dict, list)):
        return False
    if isinstance(actual, bool) or isinstance(target, bool):
        return str(actual).lower() == str(target).lower()
    return str(actual) == str(target)


def _safe_compare(actual: Any, target: Any, comparator: Callable[[Any, Any], bool]) -> bool:
    """Compare numerically when both sides parse as numbers, else as strings."""
    if actual is None or target is None:
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass
    return comparator(str(actual), str(target))


def _contains(actual: Any, target: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(target).lower() in actual.lower()
    if isinstance(actual, (list, tuple, dict)):
        return target in actual
    return False


def _is_empty(actual: Any, _target: Any = None) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, dict, tuple)):
        return len(actual) == 0
    return False


def _matches(actual: Any, target: Any) -> bool:
    if actual is None or target is None:
        return False
    try:
        return bool(re.search(str(target), str(actual)))
    except re.error:
        logger.warning("Invalid regex pattern", pattern=target)
        return False


def _in(actual: Any, target: Any) -> bool:
    if not isinstance(target, (list, tuple)):
        return _loose_equals(actual, target)
    return any(_loose_equals(actual, item) for item in target)


OPERATOR_FUNCTIONS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": _loose_equals,
    "neq": lambda a, b: not _loose_equals(a, b),
    "gt": lambda a, b: _safe_compare(a, b, lambda x, y: x > y),
    "gte": lambda a, b: _safe_compare(a, b, lambda x, y: x >= y),
    "lt": lambda a, b: _safe_compare(a, b, lambda x, y: x < y),
    "lte": lambda a, b: _safe_compare(a, b, lambda x, y: x <= y),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": lambda a, b: a is not None and b is not None and str(a).startswith(str(b)),
    "ends_with": lambda a, b: a is not None and b is not None and str(a).endswith(str(b)),
    "matches": _matches,
    "in": _in,
    "not_in": lambda a, b: not _in(a, b),
    "exists": lambda a, _b=None: a is not None,
    "not_exists": lambda a, _b=None: a is None,
    "is_empty": _is_empty,
    "is_not_empty": lambda a, _b=None: not _is_empty(a),
    "is_true": lambda a, _b=None: a is True or a == "true" or a == 1,
    "is_false": lambda a, _b=None: a is False or a == "false" or a == 0,
}

UNARY_OPERATORS = frozenset(["exists", "not_exists", "is_empty", "is_not_empty", "is_true", "is_false"])


def normalize_operator(operator: Optional[str]) -> str:
    operator = (operator or "eq").strip()
    return OPERATOR_ALIASES.get(operator, operator)


def apply_operator(operator: str, actual: Any, target: Any = None) -> bool:
    """Apply a named operator; unknown operators evaluate to False."""
    func = OPERATOR_FUNCTIONS.get(normalize_operator(operator))
    if func is None:
        logger.warning("Unknown operator", operator=operator)
        return False
    return func(actual, target)


def evaluate_condition(condition: ConditionDict, data: Any) -> bool:
    """Evaluate one structured condition against a data dict.

    A missing or empty condition is treated as always true.
    """
    if not condition:
        return True

    field = condition.get("field", "")
    operator = condition.get("operator", "eq")
    target = condition.get("value")
    actual = get_nested_value(data, field) if field else data

    try:
        result = apply_operator(operator, actual, target)
    except Exception as e:
        logger.warning("Condition evaluation error", field=field, operator=operator, error=str(e))
        return False

    logger.debug("Condition evaluated", field=field, operator=operator, result=result)
    return result


def evaluate_conditions(conditions: List[ConditionDict], data: Any,
                        logic: str = "and") -> Tuple[bool, List[Dict[str, Any]]]:
    """Evaluate several conditions combined with AND/OR.

    Returns the combined result and a per-condition report.
    """
    if not conditions:
        return True, []

    report = []
    for condition in conditions:
        report.append({
            "field": condition.get("field"),
            "operator": normalize_operator(condition.get("operator")),
            "value": condition.get("value"),
            "actual": get_nested_value(data, condition.get("field", "")),
            "result": evaluate_condition(condition, data),
        })

    results = [entry["result"] for entry in report]
    if logic == "or":
        return any(results), report
    return all(results), report
