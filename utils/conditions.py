"""
Condition evaluator for CONDITION nodes.

Evaluates {variable, operator, value} against execution variables.
Supports dot-notation paths into JSON variables. Malformed comparisons
(missing operand, non-numeric input, bad pattern) evaluate to False.
"""
from __future__ import annotations

import re
from typing import Any, Callable

from models.schemas import ConditionOperator
from utils.interpolation import get_variable, has_variable, stringify


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if isinstance(value, str):
        value = value.strip()
    return float(value)


def _equals(present: bool, actual: Any, expected: Any) -> bool:
    return present and stringify(actual) == stringify(expected)


def _contains(present: bool, actual: Any, expected: Any) -> bool:
    haystack = stringify(actual) if present else ""
    return stringify(expected) in haystack


def _greater_than(present: bool, actual: Any, expected: Any) -> bool:
    return present and _to_number(actual) > _to_number(expected)


def _less_than(present: bool, actual: Any, expected: Any) -> bool:
    return present and _to_number(actual) < _to_number(expected)


def _exists(present: bool, actual: Any, expected: Any) -> bool:
    return present and actual is not None


def _regex(present: bool, actual: Any, expected: Any) -> bool:
    return re.search(str(expected), stringify(actual) if present else "") is not None


OPERATORS: dict[str, Callable[[bool, Any, Any], bool]] = {
    ConditionOperator.EQUALS.value: _equals,
    ConditionOperator.CONTAINS.value: _contains,
    ConditionOperator.GREATER_THAN.value: _greater_than,
    ConditionOperator.LESS_THAN.value: _less_than,
    ConditionOperator.EXISTS.value: _exists,
    ConditionOperator.REGEX.value: _regex,
}


def evaluate_condition(condition: dict[str, Any], variables: dict[str, Any]) -> bool:
    """Evaluate a single {variable, operator, value} condition."""
    if not isinstance(condition, dict):
        return False
    variable = condition.get("variable")
    operator = str(condition.get("operator", "")).upper()
    fn = OPERATORS.get(operator)
    if not variable or fn is None:
        return False
    variable = str(variable)

    present = has_variable(variables, variable)
    actual = get_variable(variables, variable)
    try:
        return bool(fn(present, actual, condition.get("value")))
    except (TypeError, ValueError, OverflowError, re.error):
        return False
