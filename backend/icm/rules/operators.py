# backend/icm/rules/operators.py
"""
Fixed comparison operator table, declared per field data type.

  number / date : =  !=  >  <  >=  <=
  string        : =  !=  contains  not_contains  starts_with  ends_with
  boolean       : =  !=
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from icm.core.errors import RuleExpressionError
from icm.schemas.scheme import DataType

EQUALITY = frozenset({"=", "!="})
ORDERING = frozenset({">", "<", ">=", "<="})
TEXT = frozenset({"contains", "not_contains", "starts_with", "ends_with"})

OPERATORS_BY_TYPE: dict[DataType, frozenset[str]] = {
    DataType.NUMBER: EQUALITY | ORDERING,
    DataType.DATE: EQUALITY | ORDERING,
    DataType.STRING: EQUALITY | TEXT,
    DataType.BOOLEAN: EQUALITY,
}

ALL_OPERATORS = EQUALITY | ORDERING | TEXT

_ALIASES = {
    "==": "=",
    "eq": "=",
    "<>": "!=",
    "ne": "!=",
    "gt": ">",
    "lt": "<",
    "gte": ">=",
    "lte": "<=",
    "startswith": "starts_with",
    "endswith": "ends_with",
    "notcontains": "not_contains",
}

_TRUE = {"true", "yes", "y", "1"}
_FALSE = {"false", "no", "n", "0"}


def canonical_operator(operator: str) -> str:
    op = (operator or "").strip().lower()
    return _ALIASES.get(op, op)


def finite_decimal(value: Any) -> Decimal:
    """Decimal for an int, float, Decimal or numeric string; NaN and Infinity are rejected."""
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float):
        number = Decimal(str(value))
    else:
        try:
            number = Decimal(str(value).strip().replace(",", ""))
        except (InvalidOperation, ValueError):
            raise RuleExpressionError(f"{value!r} is not a number")
    if not number.is_finite():
        raise RuleExpressionError(f"{value!r} is not a finite number")
    return number


def _parse_date(value: str) -> date:
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def looks_like_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if isinstance(value, str) and len(value.strip()) >= 10 and value.strip()[4:5] == "-":
        try:
            _parse_date(value)
            return True
        except ValueError:
            return False
    return False


def infer_data_type(value: Any) -> DataType:
    """Type of a configured comparison value when the rule does not declare one."""
    if isinstance(value, bool):
        return DataType.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return DataType.NUMBER
    if looks_like_date(value):
        return DataType.DATE
    if isinstance(value, str):
        try:
            if Decimal(value.strip()).is_finite():
                return DataType.NUMBER
        except (InvalidOperation, ValueError):
            pass
    return DataType.STRING


def coerce(value: Any, data_type: DataType) -> Any:
    """Convert a record or rule value to the comparison type, or raise RuleExpressionError."""
    if value is None:
        raise RuleExpressionError(f"cannot compare null as {data_type.value}")

    if data_type is DataType.NUMBER:
        if isinstance(value, bool):
            raise RuleExpressionError("boolean value used where a number is expected")
        if isinstance(value, (Decimal, int, float, str)):
            return finite_decimal(value)
        raise RuleExpressionError(f"{type(value).__name__} value used where a number is expected")

    if data_type is DataType.DATE:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return _parse_date(value)
            except ValueError:
                raise RuleExpressionError(f"{value!r} is not an ISO date")
        raise RuleExpressionError(f"{type(value).__name__} value used where a date is expected")

    if data_type is DataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
        raise RuleExpressionError(f"{value!r} is not a boolean")

    if isinstance(value, (dict, list)):
        raise RuleExpressionError("structured value used where a string is expected")
    return value if isinstance(value, str) else str(value)


def compare(operator: str, left: Any, right: Any, data_type: DataType) -> bool:
    op = canonical_operator(operator)
    if op not in OPERATORS_BY_TYPE[data_type]:
        raise RuleExpressionError(f"operator '{op}' is not supported for {data_type.value} values")

    lhs = coerce(left, data_type)
    rhs = coerce(right, data_type)

    if op == "=":
        return lhs == rhs
    if op == "!=":
        return lhs != rhs
    if op == ">":
        return lhs > rhs
    if op == "<":
        return lhs < rhs
    if op == ">=":
        return lhs >= rhs
    if op == "<=":
        return lhs <= rhs
    if op == "contains":
        return rhs in lhs
    if op == "not_contains":
        return rhs not in lhs
    if op == "starts_with":
        return lhs.startswith(rhs)
    if op == "ends_with":
        return lhs.endswith(rhs)
    raise RuleExpressionError(f"unknown operator '{op}'")
