from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, List, Protocol

from invoice_sync.core.values import ZERO, decimal_str, safe_str, to_decimal


@dataclass(frozen=True)
class BatchAllocation:
    batch_number: str
    quantity: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {"batch_number": self.batch_number, "quantity": decimal_str(self.quantity)}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "BatchAllocation":
        data = dict(payload or {})
        return BatchAllocation(
            batch_number=str(data.get("batch_number") or "").strip(),
            quantity=to_decimal(data.get("quantity")),
        )


@dataclass(frozen=True)
class StockLine:
    """One requested quantity of an item in a warehouse, optionally split by batch."""

    line_number: int
    item_code: str
    warehouse_code: str
    quantity: Decimal
    batches: tuple[BatchAllocation, ...] = ()


@dataclass
class StockRecord:
    item_code: str
    warehouse_code: str
    quantity_on_stock: Decimal = ZERO
    committed_quantity: Decimal = ZERO
    on_order_quantity: Decimal = ZERO
    last_synced_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def available(self) -> Decimal:
        return self.quantity_on_stock - self.committed_quantity + self.on_order_quantity

    def is_fresh(self, now: datetime, freshness: timedelta) -> bool:
        if self.last_synced_at is None:
            return False
        return now - self.last_synced_at < freshness


@dataclass
class BatchStockRecord:
    item_code: str
    warehouse_code: str
    batch_number: str
    quantity: Decimal = ZERO
    last_synced_at: datetime | None = None

    def is_fresh(self, now: datetime, freshness: timedelta) -> bool:
        if self.last_synced_at is None:
            return False
        return now - self.last_synced_at < freshness


@dataclass(frozen=True)
class StockValidationError:
    line_number: int
    item_code: str
    warehouse_code: str
    requested_quantity: Decimal
    available_quantity: Decimal
    batch_number: str | None = None
    reason: str = "insufficient_stock"

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "item_code": self.item_code,
            "warehouse_code": self.warehouse_code,
            "requested_quantity": decimal_str(self.requested_quantity),
            "available_quantity": decimal_str(self.available_quantity),
            "batch_number": self.batch_number,
            "reason": self.reason,
        }


@dataclass
class StockValidationResult:
    errors: List[StockValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class StockCommitResult:
    item_code: str
    warehouse_code: str
    delta: Decimal
    quantity_before: Decimal
    quantity_after: Decimal
    reason: str
    committed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "warehouse_code": self.warehouse_code,
            "delta": decimal_str(self.delta),
            "quantity_before": decimal_str(self.quantity_before),
            "quantity_after": decimal_str(self.quantity_after),
            "reason": self.reason,
        }


def stock_lines_from_payload(lines: Any) -> List[StockLine]:
    result: List[StockLine] = []
    if not isinstance(lines, list):
        return result
    for index, raw in enumerate(lines, start=1):
        if not isinstance(raw, dict):
            continue
        batches_raw = raw.get("batches") or raw.get("batch_numbers") or []
        batches = tuple(
            BatchAllocation.from_dict(batch) for batch in batches_raw if isinstance(batch, dict)
        )
        result.append(
            StockLine(
                line_number=int(raw.get("line_number") or index),
                item_code=safe_str(raw.get("item_code")) or "",
                warehouse_code=safe_str(raw.get("warehouse_code")) or "",
                quantity=to_decimal(raw.get("quantity")),
                batches=batches,
            )
        )
    return result


class ReservedStock(Protocol):
    """Quantities held by open reservations that the cached stock does not reflect yet."""

    def reserved_quantity(
        self,
        item_code: str,
        warehouse_code: str,
        *,
        batch_number: str | None = None,
        exclude_reservation_id: str | None = None,
    ) -> Decimal: ...
