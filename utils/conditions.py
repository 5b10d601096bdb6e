"""
Condition evaluator — used by condition nodes and by flow validation.

Grammar:  <variable> <op> <literal>
          op ∈ {==, !=, >, <, >=, <=, contains}

Evaluation is total. A missing variable resolves to the empty value of its
declared type (number → 0, boolean → false, string → ""), and any comparison
between mismatched types is false, whatever the operator.
"""
from __future__ import annotations

import re
import operator as op
from typing import Any, Mapping, Optional, Union

from core.errors import InvalidConditionError
from models.schemas import RuleCondition, VariableValue


OPERATORS: dict[str, Any] = {
    "==": op.eq,
    "!=": op.ne,
    ">": op.gt,
    ">=": op.ge,
    "<": op.lt,
    "<=": op.le,
    "contains": lambda a, b: b in a,
}

# Structured-form operator names used by the flow editor
OPERATOR_ALIASES: dict[str, str] = {
    "equals": "==",
    "not_equals": "!=",
    "greater_than": ">",
    "greater_or_equal": ">=",
    "less_than": "<",
    "less_or_equal": "<=",
    "eq": "==",
    "neq": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}

EMPTY_VALUES: dict[str, VariableValue] = {
    "number": 0,
    "boolean": False,
    "string": "",
}

_EXPRESSION = re.compile(
    r"^\s*(?P<field>[A-Za-z_][\w.\-]*)\s*"
    r"(?P<op>==|!=|>=|<=|>|<|\bcontains\b)\s*"
    r"(?P<literal>.+?)\s*$"
)
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def parse_literal(raw: str) -> VariableValue:
    """Turn the right-hand side of an expression into a typed value."""
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _NUMBER.match(text):
        number = float(text)
        return int(number) if number.is_integer() and "." not in text and "e" not in lowered else number
    return text


def parse_condition(condition: Union[str, Mapping[str, Any], RuleCondition]) -> RuleCondition:
    """
    Parse a condition node's configuration.

    Accepts the expression string ("age >= 18") or the structured editor form
    ({"variable": "age", "operator": "greater_than", "value": 18}).
    Raises InvalidConditionError for anything else.
    """
    if isinstance(condition, RuleCondition):
        return condition

    if isinstance(condition, str):
        match = _EXPRESSION.match(condition)
        if not match:
            raise InvalidConditionError(f"Unparseable condition: {condition!r}")
        return RuleCondition(
            field=match.group("field"),
            operator=match.group("op"),
            value=parse_literal(match.group("literal")),
        )

    if isinstance(condition, Mapping):
        field = condition.get("variable") or condition.get("field")
        operator = condition.get("operator", "")
        operator = OPERATOR_ALIASES.get(operator, operator)
        if not field or operator not in OPERATORS:
            raise InvalidConditionError(f"Invalid structured condition: {dict(condition)!r}")
        value = condition.get("value")
        if isinstance(value, str):
            value = parse_literal(value)
        return RuleCondition(field=field, operator=operator, value=value)

    raise InvalidConditionError(f"Unsupported condition type: {type(condition).__name__}")


def _kind(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return None


def empty_value(field: str, literal: Any, declared_types: Mapping[str, str] = None) -> VariableValue:
    """Empty value for a missing variable: declared type first, else the literal's type."""
    declared = (declared_types or {}).get(field)
    if declared in EMPTY_VALUES:
        return EMPTY_VALUES[declared]
    return EMPTY_VALUES.get(_kind(literal) or "string", "")


def resolve_variable(
    variables: Mapping[str, Any],
    field: str,
    literal: Any,
    declared_types: Mapping[str, str] = None,
) -> VariableValue:
    value = variables.get(field)
    if value is None:
        return empty_value(field, literal, declared_types)
    return value


def evaluate_condition(
    condition: RuleCondition,
    variables: Mapping[str, Any],
    declared_types: Mapping[str, str] = None,
) -> bool:
    """Evaluate a parsed condition. Never raises."""
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False

    left = resolve_variable(variables, condition.field, condition.value, declared_types)
    right = condition.value

    left_kind, right_kind = _kind(left), _kind(right)
    if left_kind is None or left_kind != right_kind:
        return False
    if condition.operator == "contains" and left_kind != "string":
        return False
    if left_kind == "boolean" and condition.operator not in ("==", "!="):
        return False

    try:
        return bool(fn(left, right))
    except (TypeError, ValueError):
        return False


def evaluate(
    condition: Union[str, Mapping[str, Any], RuleCondition],
    variables: Mapping[str, Any],
    declared_types: Mapping[str, str] = None,
) -> bool:
    """
    Parse and evaluate in one call. A malformed expression evaluates to false;
    flows are checked for malformed expressions when they are published.
    """
    try:
        parsed = parse_condition(condition)
    except InvalidConditionError:
        return False
    return evaluate_condition(parsed, variables, declared_types)
