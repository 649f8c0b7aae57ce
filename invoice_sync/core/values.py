from __future__ import annotations

from decimal import Decimal, InvalidOperation


ZERO = Decimal("0")


def to_decimal(value: object | None, default: Decimal = ZERO) -> Decimal:
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    try:
        # str() first so floats read back from sqlite keep their short repr.
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    return parsed if parsed.is_finite() else default


def is_positive_quantity(value: Decimal) -> bool:
    return value.is_finite() and value > ZERO


def decimal_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    normalized = value.normalize()
    if normalized == normalized.to_integral():
        return str(normalized.quantize(Decimal("1")))
    return format(normalized, "f")


def safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None
