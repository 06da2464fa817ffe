"""
Coerce raw staged values into declared field types
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict
import math

from core.utils import to_naive_utc
from schemas.entity import FieldType

# Largest decimal exponent accepted; canonical decimals are written out in fixed-point
MAX_DECIMAL_EXPONENT = 1000


def is_blank(value: Any) -> bool:
    """Missing, null and whitespace-only strings all count as absent"""
    return value is None or (isinstance(value, str) and value.strip() == "")


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (bool, int, float, Decimal)):
        return str(value)
    raise TypeError(f"Cannot coerce {type(value).__name__} to string")


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("Boolean is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value} is not a whole number")
        return int(value)
    if isinstance(value, (str, Decimal)):
        parsed = _to_decimal(value)
        if parsed != parsed.to_integral_value():
            raise ValueError(f"'{value}' is not a whole number")
        return int(parsed)
    raise TypeError(f"Cannot coerce {type(value).__name__} to integer")


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("Boolean is not a number")
    if isinstance(value, (int, float, Decimal, str)):
        result = float(value)
        if math.isnan(result) or math.isinf(result):
            raise ValueError(f"'{value}' is not a finite number")
        return result
    raise TypeError(f"Cannot coerce {type(value).__name__} to float")


def canonical_decimal(value: Decimal) -> Decimal:
    """
    One representation per numeric value: fixed-point, no trailing zeros, no
    negative zero. 10.0, 10.00 and 1E+1 all become Decimal("10").
    """
    if value == 0:
        return Decimal(0)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return Decimal(text)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("Boolean is not a number")
    if isinstance(value, (int, float, Decimal, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"'{value}' is not a decimal number")
        if not result.is_finite():
            raise ValueError(f"'{value}' is not a finite number")
        if result and abs(result.adjusted()) > MAX_DECIMAL_EXPONENT:
            raise ValueError(f"'{value}' is out of range")
        return canonical_decimal(result)
    raise TypeError(f"Cannot coerce {type(value).__name__} to decimal")


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "y"):
            return True
        if lowered in ("false", "0", "no", "n"):
            return False
    raise ValueError(f"Cannot parse '{value}' as boolean")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return to_naive_utc(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return to_naive_utc(_parse_datetime(value)).date()
    raise TypeError(f"Cannot coerce {type(value).__name__} to date")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return to_naive_utc(_parse_datetime(value))
    raise TypeError(f"Cannot coerce {type(value).__name__} to datetime")


COERCERS: Dict[FieldType, Callable[[Any], Any]] = {
    FieldType.STRING: _to_string,
    FieldType.INTEGER: _to_integer,
    FieldType.FLOAT: _to_float,
    FieldType.DECIMAL: _to_decimal,
    FieldType.BOOLEAN: _to_boolean,
    FieldType.DATE: _to_date,
    FieldType.DATETIME: _to_datetime,
}


def coerce(value: Any, field_type: FieldType) -> Any:
    """
    Coerce a raw value to the declared type.

    Blank values coerce to None. Raises ValueError or TypeError when the value
    cannot represent the type.
    """
    if is_blank(value):
        return None
    return COERCERS[FieldType(field_type)](value)
