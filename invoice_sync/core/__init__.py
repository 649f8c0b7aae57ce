from invoice_sync.core.clock import Clock, ManualClock, SystemClock, iso_utc, parse_iso_utc
from invoice_sync.core.values import ZERO, decimal_str, is_positive_quantity, safe_str, to_decimal

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "ZERO",
    "decimal_str",
    "is_positive_quantity",
    "iso_utc",
    "parse_iso_utc",
    "safe_str",
    "to_decimal",
]
