from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from invoice_sync.contexts.inventory.domain.stock import BatchAllocation
from invoice_sync.core.clock import iso_utc
from invoice_sync.core.values import ZERO, decimal_str


RESERVATION_STATUS_PENDING = "pending"
RESERVATION_STATUS_CONFIRMED = "confirmed"
RESERVATION_STATUS_RELEASED = "released"
RESERVATION_STATUS_EXPIRED = "expired"

USABLE_RESERVATION_STATUSES = frozenset({RESERVATION_STATUS_PENDING, RESERVATION_STATUS_CONFIRMED})


def invoice_movement_reason(external_reference: str, line_num: int) -> str:
    """Stock movement reason for one posted invoice line; also the resume idempotency key."""
    return f"invoice:{external_reference}:{int(line_num)}"


@dataclass(frozen=True)
class ReservationLine:
    line_num: int
    item_code: str
    warehouse_code: str
    quantity: Decimal
    unit_price: Decimal = ZERO
    tax_code: str | None = None
    discount_percent: Decimal = ZERO
    batches: tuple[BatchAllocation, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_num": self.line_num,
            "item_code": self.item_code,
            "warehouse_code": self.warehouse_code,
            "quantity": decimal_str(self.quantity),
            "unit_price": decimal_str(self.unit_price),
            "tax_code": self.tax_code,
            "discount_percent": decimal_str(self.discount_percent),
            "batches": [batch.to_dict() for batch in self.batches],
        }


@dataclass
class StockReservation:
    reservation_id: str
    external_reference: str
    customer_code: str
    status: str
    created_at: datetime
    expires_at: datetime
    confirmed_at: datetime | None = None
    released_at: datetime | None = None
    release_reason: str | None = None
    lines: List[ReservationLine] = field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        return self.status in USABLE_RESERVATION_STATUSES

    def is_expired_at(self, now: datetime) -> bool:
        return self.status == RESERVATION_STATUS_PENDING and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "external_reference": self.external_reference,
            "customer_code": self.customer_code,
            "status": self.status,
            "created_at": iso_utc(self.created_at),
            "expires_at": iso_utc(self.expires_at),
            "confirmed_at": iso_utc(self.confirmed_at) if self.confirmed_at else None,
            "released_at": iso_utc(self.released_at) if self.released_at else None,
            "release_reason": self.release_reason,
            "lines": [line.to_dict() for line in self.lines],
        }
