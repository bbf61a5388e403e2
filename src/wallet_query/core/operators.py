"""
Record field access, value coercion and predicate evaluation.

Coercion rules:
- Numeric fields accept numbers and string-encoded numbers ("$1,200.50",
  "24.99%"); booleans and NaN are not numbers.
- Date fields accept date / datetime objects and ISO, US and
  "Month D, YYYY" strings.
- Text comparisons are case-insensitive.

A value that cannot be coerced raises CoercionError; the executor excludes
that record and counts it. A null value is not an error: it simply does not
match, except for "=" against a null target and "!=" against a non-null one.
"""

import json
import math
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from wallet_query.core.entities import Operator
from wallet_query.core.errors import CoercionError
from wallet_query.core.field_map import CardField, ValueType, field_spec
from wallet_query.core.query_plan import Predicate

_DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
]


def is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return isinstance(value, float) and math.isnan(value)


def to_number(value: Any) -> float:
    """
    Coerce a value to float.

    Raises:
        CoercionError: If the value is not numeric
    """
    if isinstance(value, bool):
        raise CoercionError(f"boolean {value!r} is not a number")
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().replace("$", "").replace(",", "").replace("%", "").strip()
        try:
            number = float(cleaned)
        except ValueError as e:
            raise CoercionError(f"{value!r} is not a number") from e
    else:
        raise CoercionError(f"{type(value).__name__} is not a number")
    if math.isnan(number):
        raise CoercionError("NaN is not a number")
    return number


def to_date(value: Any) -> date:
    """
    Coerce a value to a date.

    Raises:
        CoercionError: If the value is not a recognized date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
    raise CoercionError(f"{value!r} is not a recognized date")


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1", "y", "t"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "0", "n", "f"):
        return False
    raise CoercionError(f"{value!r} is not a boolean")


def to_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True).lower()
    return str(value).strip().lower()


def coerce(value: Any, value_type: ValueType) -> Any:
    """Coerce a non-null value to the comparable form for a field type."""
    if value_type.is_numeric:
        return to_number(value)
    if value_type is ValueType.DATE:
        return to_date(value)
    if value_type is ValueType.BOOLEAN:
        return to_bool(value)
    return to_text(value)


def get_field_value(record: Mapping[str, Any], card_field: CardField) -> Any:
    """
    Read a canonical field from a card record.

    Computed fields are derived from their inputs and are None when an input
    is missing, non-numeric or (for utilization) the limit is zero.
    """
    if card_field is CardField.UTILIZATION:
        balance, limit = _numeric_inputs(record)
        if balance is None or not limit:
            return None
        return round(balance / limit * 100, 2)
    if card_field is CardField.AVAILABLE_CREDIT:
        balance, limit = _numeric_inputs(record)
        if balance is None or limit is None:
            return None
        return round(limit - balance, 2)

    if card_field.value in record:
        return record[card_field.value]
    for key in field_spec(card_field).source_keys:
        if key in record:
            return record[key]
    return None


def _numeric_inputs(record: Mapping[str, Any]) -> tuple[float | None, float | None]:
    values = []
    for card_field in (CardField.CURRENT_BALANCE, CardField.CREDIT_LIMIT):
        raw = get_field_value(record, card_field)
        try:
            values.append(None if is_null(raw) else to_number(raw))
        except CoercionError:
            values.append(None)
    return values[0], values[1]


def evaluate_predicate(record: Mapping[str, Any], predicate: Predicate) -> bool:
    """
    Evaluate one predicate against a record.

    Raises:
        CoercionError: If the record's value (or the predicate value) cannot
            be coerced to the field's type
    """
    value_type = field_spec(predicate.field).value_type
    raw = get_field_value(record, predicate.field)
    operator = predicate.operator
    target = predicate.value

    if is_null(raw):
        if operator is Operator.EQ:
            return target is None
        if operator is Operator.NE:
            return target is not None
        if operator is Operator.NOT_IN:
            return True
        return False
    if target is None:
        return operator is Operator.NE

    if value_type is ValueType.JSON or operator is Operator.CONTAINS:
        return to_text(target) in to_text(raw)

    left = coerce(raw, value_type)
    if operator is Operator.BETWEEN:
        low, high = (coerce(bound, value_type) for bound in target)
        return low <= left <= high
    if operator in (Operator.IN, Operator.NOT_IN):
        member = any(left == coerce(option, value_type) for option in target)
        return member if operator is Operator.IN else not member

    right = coerce(target, value_type)
    if operator is Operator.EQ:
        return left == right
    if operator is Operator.NE:
        return left != right
    if operator is Operator.LT:
        return left < right
    if operator is Operator.LE:
        return left <= right
    if operator is Operator.GT:
        return left > right
    if operator is Operator.GE:
        return left >= right
    raise CoercionError(f"unsupported operator {operator.value} for {predicate.field.value}")
