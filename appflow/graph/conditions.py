"""
Condition evaluation for routing nodes.

Operands are compared loosely: ``"5" == 5`` holds, and a missing reference
equals ``None``. Comparisons never raise; an operand that cannot be read as
a number makes ``>``/``<`` false.
"""

from typing import Any

from appflow.graph.context import UNDEFINED, ContextResolver, ExecutionContext, is_missing, to_text
from appflow.schemas.app import Condition, ConditionOperator


def as_number(value: Any) -> float | None:
    if isinstance(value, bool) or is_missing(value):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats numeric strings as numbers and UNDEFINED as None."""
    if is_missing(left) or is_missing(right):
        return is_missing(left) and is_missing(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return str(left).lower() == str(right).lower()
    if left == right:
        return True
    left_num, right_num = as_number(left), as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return False


def compare(actual: Any, operator: ConditionOperator | str, expected: Any) -> bool:
    op = ConditionOperator(operator)

    if op == ConditionOperator.EQ:
        return loose_equals(actual, expected)
    if op == ConditionOperator.NE:
        return not loose_equals(actual, expected)
    if op in (ConditionOperator.GT, ConditionOperator.LT):
        left, right = as_number(actual), as_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == ConditionOperator.GT else left < right
    if op == ConditionOperator.CONTAINS:
        if is_missing(actual) or is_missing(expected):
            return False
        return to_text(expected) in to_text(actual)
    if op == ConditionOperator.EXISTS:
        return not is_missing(actual)
    return False


def evaluate_condition(
    condition: Condition,
    context: ExecutionContext,
    resolver: ContextResolver | None = None,
) -> bool:
    """Resolve ``condition.field`` against the context and apply its operator."""
    resolver = resolver or ContextResolver()
    actual = resolver.resolve(condition.field, context)
    expected = condition.value
    if isinstance(expected, str) and "{{" in expected:
        expected = resolver.resolve_value(expected, context)
    return compare(actual, condition.operator, expected if expected is not UNDEFINED else None)
