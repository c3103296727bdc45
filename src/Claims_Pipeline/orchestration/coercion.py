"""Value conversions applied to request fields and projected response values."""

from __future__ import annotations

import json
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

INTEGRAL_TYPES = frozenset({"long", "integer", "int"})
FLOAT_TYPES = frozenset({"double", "float", "number", "decimal"})
BOOLEAN_TYPES = frozenset({"boolean", "bool"})
TRUE_STRINGS = frozenset({"true", "yes", "1"})

_KEEP = object()


def _round_half_up(value: float) -> int:
    return int(Decimal(repr(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def coerce_number(value: Any, *, integral: bool, fallback: Any = 0) -> int | float | Any:
    """Coerce ``value`` to one canonical numeric representation.

    Integers, floats and numeric strings are treated uniformly. Integral
    targets round floating values half away from zero. Unparseable input
    returns ``fallback``.

    >>> coerce_number("41.6", integral=True)
    42
    >>> coerce_number("n/a", integral=False)
    0
    """
    number: float | int
    if isinstance(value, bool):
        number = int(value)
    elif isinstance(value, int):
        number = value
    elif isinstance(value, float):
        number = value
    elif isinstance(value, (str, Decimal)):
        text = str(value).strip().replace(",", "")
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return fallback
        if not parsed.is_finite():
            return fallback
        if integral:
            return int(parsed.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return float(parsed)
    else:
        return fallback

    if isinstance(number, float) and not math.isfinite(number):
        return fallback
    if integral:
        return number if isinstance(number, int) else _round_half_up(number)
    return float(number)


def coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in TRUE_STRINGS


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def convert_value(value: Any, data_type: str | None, *, numeric_fallback: Any = _KEEP) -> Any:
    """Convert ``value`` to ``data_type``.

    Supported types are ``long``/``integer``, ``double``, ``boolean``,
    ``string`` and ``json`` (left unchanged). Unknown types leave the value
    unchanged. Numeric conversion failures return ``numeric_fallback`` when
    given, otherwise the original value.
    """
    if value is None:
        return None
    kind = (data_type or "string").lower()
    if kind in INTEGRAL_TYPES or kind in FLOAT_TYPES:
        converted = coerce_number(value, integral=kind in INTEGRAL_TYPES, fallback=_KEEP)
        if converted is _KEEP:
            logger.warning("coercion.numeric.failed", value=to_text(value)[:100], data_type=kind)
            return value if numeric_fallback is _KEEP else numeric_fallback
        return converted
    if kind in BOOLEAN_TYPES:
        return coerce_boolean(value)
    if kind == "string":
        return to_text(value)
    return value


__all__ = ["coerce_boolean", "coerce_number", "convert_value", "to_text"]
