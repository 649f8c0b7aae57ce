from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from invoice_sync.core.values import ZERO, decimal_str, safe_str, to_decimal


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


@dataclass
class ErpBatchV1:
    batch_number: str
    quantity: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {"batch_number": self.batch_number, "quantity": decimal_str(self.quantity)}


@dataclass
class ErpInvoiceLineV1:
    line_num: int
    item_code: str
    quantity: Decimal
    warehouse_code: str
    unit_price: Decimal = ZERO
    tax_code: str | None = None
    discount_percent: Decimal = ZERO
    uom_code: str | None = None
    batches: list[ErpBatchV1] = field(default_factory=list)

    @property
    def line_total(self) -> Decimal:
        gross = self.quantity * self.unit_price
        return gross - (gross * self.discount_percent / Decimal("100"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_num": self.line_num,
            "item_code": self.item_code,
            "quantity": decimal_str(self.quantity),
            "warehouse_code": self.warehouse_code,
            "unit_price": decimal_str(self.unit_price),
            "tax_code": self.tax_code,
            "discount_percent": decimal_str(self.discount_percent),
            "uom_code": self.uom_code,
            "batches": [batch.to_dict() for batch in self.batches],
        }


@dataclass
class ErpInvoiceV1:
    """Sales invoice as the ERP expects it; ``reference`` carries the idempotency key."""

    customer_code: str
    reference: str
    doc_date: str = field(default_factory=_today)
    doc_due_date: str | None = None
    comments: str | None = None
    sales_person_code: int | None = None
    currency: str = "USD"
    lines: list[ErpInvoiceLineV1] = field(default_factory=list)
    schema_name: str = "erp.sales_invoice"
    schema_version: int = 1

    @property
    def doc_total(self) -> Decimal:
        return sum((line.line_total for line in self.lines), ZERO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "schema_version": int(self.schema_version),
            "customer_code": self.customer_code,
            "reference": self.reference,
            "doc_date": self.doc_date,
            "doc_due_date": self.doc_due_date,
            "comments": self.comments,
            "sales_person_code": self.sales_person_code,
            "currency": self.currency,
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass
class PostedDocumentV1:
    external_id: str
    external_num: str
    reference: str | None = None
    customer_code: str | None = None
    customer_name: str | None = None
    doc_date: str | None = None
    doc_total: Decimal = ZERO
    vat_sum: Decimal = ZERO
    currency: str = "USD"

    def to_invoice_view(self) -> "InvoiceViewV1":
        return InvoiceViewV1(
            external_id=self.external_id,
            external_num=self.external_num,
            customer_code=self.customer_code or "",
            customer_name=self.customer_name or "",
            doc_date=self.doc_date or _today(),
            doc_total=self.doc_total,
            vat_sum=self.vat_sum,
            currency=self.currency,
        )

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "PostedDocumentV1":
        data = dict(payload or {})
        return PostedDocumentV1(
            external_id=str(data.get("external_id") or ""),
            external_num=str(data.get("external_num") or ""),
            reference=safe_str(data.get("reference")),
            customer_code=safe_str(data.get("customer_code")),
            customer_name=safe_str(data.get("customer_name")),
            doc_date=safe_str(data.get("doc_date")),
            doc_total=to_decimal(data.get("doc_total")),
            vat_sum=to_decimal(data.get("vat_sum")),
            currency=str(data.get("currency") or "USD"),
        )


@dataclass(frozen=True)
class InvoiceViewV1:
    """Posted invoice as handed to the fiscal device."""

    external_id: str
    external_num: str
    customer_code: str
    customer_name: str
    doc_date: str
    doc_total: Decimal
    vat_sum: Decimal
    currency: str


@dataclass(frozen=True)
class FiscalizationResultV1:
    success: bool
    device_serial: str | None = None
    receipt_number: str | None = None
    verification_code: str | None = None
    qr_code: str | None = None
    error_code: str | None = None
    error: str | None = None

    @staticmethod
    def failure(error: str, *, error_code: str | None = None) -> "FiscalizationResultV1":
        return FiscalizationResultV1(success=False, error_code=error_code, error=error)
