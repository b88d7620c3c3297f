"""
Conditions - Branch evaluation over a closed set of comparison operators.

A condition compares a value looked up from the run's variables (by dotted
path) against a literal:

    Condition(variable="fetch_output.status", operator="equals", value=200)
    Condition(variable="score", operator="greater_than", value=0.8)
    Condition(variable="summarize_output.text", operator="regex_match", value="^OK")

There is no expression parsing and no code evaluation. Unknown operators are
rejected at validation time; type mismatches raise ConditionEvaluationError.
"""

import logging
import operator
import re
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from flowforge.errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

# Guards regex_match against pathological patterns and inputs
MAX_PATTERN_LENGTH = 500

_MISSING = object()


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_THAN = "less_than"
    LESS_OR_EQUAL = "less_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    REGEX_MATCH = "regex_match"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class Condition(BaseModel):
    """A single comparison between a variable and a literal value."""

    variable: str = Field(description="Dotted path into the run variables, e.g. 'a_output.status'")
    operator: ConditionOperator
    value: Any = None

    model_config = {"extra": "forbid"}


class ConditionGroup(BaseModel):
    """Several conditions combined with all/any."""

    conditions: list[Condition] = Field(default_factory=list)
    combine: Literal["all", "any"] = "all"


def resolve_path(variables: Mapping[str, Any], path: str) -> Any:
    """
    Look up a dotted path in the variables.

    Mapping keys and integer list indexes are supported. The longest matching
    top-level key wins, so variable names containing dots still resolve.

    Raises:
        ConditionEvaluationError: if any segment is missing
    """
    if path in variables:
        return variables[path]

    parts = path.split(".")
    value: Any = _MISSING
    rest: list[str] = []
    for i in range(len(parts) - 1, 0, -1):
        head = ".".join(parts[:i])
        if head in variables:
            value = variables[head]
            rest = parts[i:]
            break
    if value is _MISSING:
        raise ConditionEvaluationError(f"unknown variable '{path}'")

    for part in rest:
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list | tuple) and part.lstrip("-").isdigit():
            try:
                value = value[int(part)]
            except IndexError as e:
                raise ConditionEvaluationError(f"index {part} out of range in '{path}'") from e
        else:
            raise ConditionEvaluationError(f"'{part}' not found while resolving '{path}'")
    return value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        left_num, right_num = _as_number(left), _as_number(right)
        if left_num is not None and right_num is not None:
            return op(left_num, right_num)
        if isinstance(left, str) and isinstance(right, str):
            return op(left, right)
        raise ConditionEvaluationError(
            f"cannot order {type(left).__name__} against {type(right).__name__}"
        )

    return compare


def _equals(left: Any, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return left == right


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, Mapping | list | tuple | set):
        return right in left
    raise ConditionEvaluationError(f"'contains' is not supported on {type(left).__name__}")


def _regex_match(left: Any, right: Any) -> bool:
    if not isinstance(right, str) or len(right) > MAX_PATTERN_LENGTH:
        raise ConditionEvaluationError("regex_match requires a pattern string")
    try:
        return re.search(right, str(left)) is not None
    except re.error as e:
        raise ConditionEvaluationError(f"invalid pattern {right!r}: {e}") from e


def _is_empty(left: Any, _right: Any) -> bool:
    if left is None:
        return True
    if isinstance(left, str | Mapping | list | tuple | set):
        return len(left) == 0
    return False


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: lambda a, b: not _equals(a, b),
    ConditionOperator.GREATER_THAN: _ordered(operator.gt),
    ConditionOperator.GREATER_OR_EQUAL: _ordered(operator.ge),
    ConditionOperator.LESS_THAN: _ordered(operator.lt),
    ConditionOperator.LESS_OR_EQUAL: _ordered(operator.le),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, b: not _contains(a, b),
    ConditionOperator.REGEX_MATCH: _regex_match,
    ConditionOperator.IS_EMPTY: _is_empty,
    ConditionOperator.IS_NOT_EMPTY: lambda a, b: not _is_empty(a, b),
}


def evaluate_condition(condition: Condition, variables: Mapping[str, Any]) -> bool:
    """Evaluate one condition against the run variables."""
    if condition.operator in (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY):
        try:
            left = resolve_path(variables, condition.variable)
        except ConditionEvaluationError:
            left = None
    else:
        left = resolve_path(variables, condition.variable)

    result = _OPERATORS[condition.operator](left, condition.value)
    logger.debug(
        f"Condition {condition.variable} {condition.operator} {condition.value!r} -> {result}"
    )
    return bool(result)


def evaluate_conditions(group: ConditionGroup, variables: Mapping[str, Any]) -> bool:
    """Evaluate a condition group. An empty group is true."""
    if not group.conditions:
        return True
    results = (evaluate_condition(c, variables) for c in group.conditions)
    return all(results) if group.combine == "all" else any(results)
