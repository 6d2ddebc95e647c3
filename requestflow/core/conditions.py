"""
Condition evaluation and field value conversion.

Field maps are loosely typed: values arrive from JSON as str/int/float/bool/None
and are compared the way a person reading the form would compare them
(case-insensitive, numbers by value, dates by instant).
"""

from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional
import re

import structlog
from sqlalchemy.types import Boolean, Date, DateTime, Integer, Numeric, Time, TypeEngine

from requestflow.models.schemas import BranchOperator

logger = structlog.get_logger()

_INT_RE = re.compile(r"^-?(0|[1-9]\d*)$")
_DECIMAL_RE = re.compile(r"^-?\d+\.\d+$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
_TRUE = {"true"}
_FALSE = {"false"}


# ============================================================================
# Value conversion
# ============================================================================


def convert_value(value: Any) -> Any:
    """
    Convert a wire value to its native type.

    Strings holding an ISO date/time, an integer, a decimal or a boolean are
    converted; anything unparsable stays a string. Integers with leading
    zeros stay strings so codes like "007" survive.

    This is the conversion used for conditions. Values written to a target
    table go through `convert_for_column` instead.
    """
    value = _unwrap(value)
    if not isinstance(value, str):
        return value

    text = value.strip()
    if text == "":
        return value

    lowered = text.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False

    if _INT_RE.match(text):
        return int(text)

    if _DECIMAL_RE.match(text):
        return float(text)

    if _DATE_RE.match(text):
        parsed = _parse_datetime(text)
        if parsed is not None:
            return parsed

    return value


def convert_field_values(
    values: Optional[Dict[str, Any]],
    column_types: Optional[Mapping[str, TypeEngine]] = None,
) -> Dict[str, Any]:
    """
    Convert every value of a field map.

    With `column_types` (the reflected target columns) each value is converted
    for its column: text columns keep the value verbatim and only numeric,
    boolean and temporal columns get native values. Without it every value
    goes through the loose `convert_value`.
    """
    if column_types is None:
        return {name: convert_value(value) for name, value in (values or {}).items()}
    return {
        name: convert_for_column(value, column_types.get(name))
        for name, value in (values or {}).items()
    }


def convert_for_column(value: Any, column_type: Optional[TypeEngine]) -> Any:
    """
    Convert a wire value for a target column of `column_type`.

    Unparsable values are returned unchanged so the database reports the
    type error itself. Columns of unknown type get the raw value.
    """
    value = _unwrap(value)
    if not isinstance(value, str) or column_type is None or value.strip() == "":
        return value

    text = value.strip()
    if isinstance(column_type, Boolean):
        lowered = text.lower()
        if lowered in _TRUE or lowered in ("1", "yes"):
            return True
        if lowered in _FALSE or lowered in ("0", "no"):
            return False
        return value

    if isinstance(column_type, Integer):
        # Flag columns stored as integers
        if text.lower() in _TRUE:
            return 1
        if text.lower() in _FALSE:
            return 0
        number = _as_number(text)
        if number is not None and number == number.to_integral_value():
            return int(number)
        return value

    if isinstance(column_type, Numeric):
        number = _as_number(text)
        return number if number is not None else value

    if isinstance(column_type, DateTime):
        parsed = _parse_datetime(text)
        return parsed if parsed is not None else value

    if isinstance(column_type, Date):
        parsed = _parse_datetime(text)
        return parsed.date() if parsed is not None else value

    if isinstance(column_type, Time):
        try:
            return time.fromisoformat(text)
        except ValueError:
            return value

    return value


def _unwrap(value: Any) -> Any:
    # {"value": x} wrappers produced by some form clients
    if isinstance(value, dict) and len(value) == 1:
        (key, inner), = value.items()
        if key.lower() == "value":
            return _unwrap(inner)
    return value


def _parse_datetime(text: str) -> Optional[datetime]:
    candidate = text.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


# ============================================================================
# Loose comparison
# ============================================================================


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
    if isinstance(value, str) and (_INT_RE.match(value.strip()) or _DECIMAL_RE.match(value.strip())):
        return Decimal(value.strip())
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and _DATE_RE.match(value.strip()):
        return _parse_datetime(value.strip())
    return None


def normalize_for_comparison(value: Any) -> str:
    """Render a value as the lower-cased text used by loose comparison."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    number = _as_number(value)
    if number is not None:
        return format(number.normalize(), "f")
    moment = _as_datetime(value)
    if moment is not None:
        return moment.isoformat()
    return str(value).strip().casefold()


def values_equal(left: Any, right: Any) -> bool:
    """
    Type-loose equality: numbers by value, datetimes by instant,
    everything else as case-insensitive text. None equals empty text.
    """
    return normalize_for_comparison(left) == normalize_for_comparison(right)


def format_value_for_display(value: Any) -> str:
    """Render a value for conflict and diagnostics messages."""
    if value is None:
        return "(empty)"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ============================================================================
# Operators
# ============================================================================


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _ordered(left: Any, right: Any):
    """Return a comparable pair, or None when the values can't be ordered."""
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num, right_num
    left_dt, right_dt = _as_datetime(left), _as_datetime(right)
    if left_dt is not None and right_dt is not None:
        if (left_dt.tzinfo is None) != (right_dt.tzinfo is None):
            left_dt, right_dt = left_dt.replace(tzinfo=None), right_dt.replace(tzinfo=None)
        return left_dt, right_dt
    if left is None or right is None:
        return None
    return normalize_for_comparison(left), normalize_for_comparison(right)


def _compare(check: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def evaluate(left, right):
        pair = _ordered(left, right)
        if pair is None:
            return False
        return check(*pair)
    return evaluate


def _text(value: Any) -> str:
    return "" if value is None else str(value).casefold()


OPERATOR_EVALUATORS: Dict[BranchOperator, Callable[[Any, Any], bool]] = {
    BranchOperator.EQUALS: values_equal,
    BranchOperator.NOT_EQUALS: lambda left, right: not values_equal(left, right),
    BranchOperator.GREATER_THAN: _compare(lambda a, b: a > b),
    BranchOperator.GREATER_THAN_OR_EQUAL: _compare(lambda a, b: a >= b),
    BranchOperator.LESS_THAN: _compare(lambda a, b: a < b),
    BranchOperator.LESS_THAN_OR_EQUAL: _compare(lambda a, b: a <= b),
    BranchOperator.CONTAINS: lambda left, right: _text(right) in _text(left),
    BranchOperator.NOT_CONTAINS: lambda left, right: _text(right) not in _text(left),
    BranchOperator.STARTS_WITH: lambda left, right: _text(left).startswith(_text(right)),
    BranchOperator.ENDS_WITH: lambda left, right: _text(left).endswith(_text(right)),
    BranchOperator.IS_EMPTY: lambda left, right: _is_empty(left),
    BranchOperator.IS_NOT_EMPTY: lambda left, right: not _is_empty(left),
}


def evaluate_condition(condition: Optional[Dict[str, Any]], field_values: Dict[str, Any]) -> bool:
    """
    Evaluate a {field_name, operator, value} condition against a field map.

    A missing condition is unconditional (True). An unknown operator never matches.
    """
    if not condition:
        return True

    field_name = condition.get("field_name")
    try:
        operator = BranchOperator(condition.get("operator"))
    except ValueError:
        logger.warning("condition_unknown_operator", operator=condition.get("operator"), field=field_name)
        return False

    actual = convert_value(field_values.get(field_name)) if field_name else None
    expected = convert_value(condition.get("value"))

    return OPERATOR_EVALUATORS[operator](actual, expected)
