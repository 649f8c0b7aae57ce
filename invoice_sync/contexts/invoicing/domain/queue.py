from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from invoice_sync.contexts.erp.domain.contracts import ErpBatchV1, ErpInvoiceLineV1, ErpInvoiceV1
from invoice_sync.contexts.inventory.domain.stock import BatchAllocation, StockLine
from invoice_sync.core.clock import iso_utc
from invoice_sync.core.values import ZERO, decimal_str, is_positive_quantity, safe_str, to_decimal
from invoice_sync.errors import InvalidTransitionError, ValidationError
from invoice_sync.ui_strings import fiscalization_status_label, queue_status_label


QUEUE_STATUS_PENDING = "pending"
QUEUE_STATUS_PROCESSING = "processing"
QUEUE_STATUS_COMPLETED = "completed"
QUEUE_STATUS_FAILED = "failed"
QUEUE_STATUS_REQUIRES_REVIEW = "requires_review"

FISCALIZATION_NOT_REQUIRED = "not_required"
FISCALIZATION_PENDING = "pending"
FISCALIZATION_SUCCEEDED = "succeeded"
FISCALIZATION_FAILED = "failed"

TERMINAL_STATUSES = frozenset({QUEUE_STATUS_COMPLETED, QUEUE_STATUS_REQUIRES_REVIEW})

ALLOWED_TRANSITIONS: Dict[str, frozenset[str]] = {
    QUEUE_STATUS_PENDING: frozenset({QUEUE_STATUS_PROCESSING}),
    QUEUE_STATUS_PROCESSING: frozenset(
        {QUEUE_STATUS_COMPLETED, QUEUE_STATUS_FAILED, QUEUE_STATUS_REQUIRES_REVIEW}
    ),
    QUEUE_STATUS_FAILED: frozenset({QUEUE_STATUS_PROCESSING}),
    QUEUE_STATUS_COMPLETED: frozenset(),
    QUEUE_STATUS_REQUIRES_REVIEW: frozenset(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def ensure_transition(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(details=f"{from_status} -> {to_status} is not an allowed transition.")


@dataclass
class QueueEntry:
    id: int
    external_reference: str
    reservation_id: str
    customer_code: str
    payload: Dict[str, Any]
    status: str = QUEUE_STATUS_PENDING
    retry_count: int = 0
    max_retries: int = 3
    requires_fiscalization: bool = False
    fiscalization_status: str = FISCALIZATION_NOT_REQUIRED
    error_message: str | None = None
    fiscal_error: str | None = None
    external_doc_id: str | None = None
    external_doc_num: str | None = None
    fiscal_device_serial: str | None = None
    fiscal_receipt_number: str | None = None
    fiscal_verification_code: str | None = None
    source_system: str = "desktop"
    warehouse_code: str | None = None
    total_amount: Decimal = ZERO
    currency: str = "USD"
    created_by: str | None = None
    request_id: str | None = None
    created_at: datetime | None = None
    next_eligible_at: datetime | None = None
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_eligible(self, now: datetime) -> bool:
        if self.status == QUEUE_STATUS_PENDING:
            return True
        if self.status != QUEUE_STATUS_FAILED or self.retry_count >= self.max_retries:
            return False
        return self.next_eligible_at is None or self.next_eligible_at <= now

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return iso_utc(value) if value is not None else None

        return {
            "id": self.id,
            "external_reference": self.external_reference,
            "reservation_id": self.reservation_id,
            "customer_code": self.customer_code,
            "status": self.status,
            "status_label": queue_status_label(self.status),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "requires_fiscalization": self.requires_fiscalization,
            "fiscalization_status": self.fiscalization_status,
            "fiscalization_status_label": fiscalization_status_label(self.fiscalization_status),
            "error_message": self.error_message,
            "fiscal_error": self.fiscal_error,
            "external_doc_id": self.external_doc_id,
            "external_doc_num": self.external_doc_num,
            "fiscal_device_serial": self.fiscal_device_serial,
            "fiscal_receipt_number": self.fiscal_receipt_number,
            "fiscal_verification_code": self.fiscal_verification_code,
            "source_system": self.source_system,
            "warehouse_code": self.warehouse_code,
            "total_amount": decimal_str(self.total_amount),
            "currency": self.currency,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "next_eligible_at": _iso(self.next_eligible_at),
            "processing_started_at": _iso(self.processing_started_at),
            "processed_at": _iso(self.processed_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class InvoiceLine:
    line_num: int
    item_code: str
    quantity: Decimal
    warehouse_code: str
    unit_price: Decimal = ZERO
    tax_code: str | None = None
    discount_percent: Decimal = ZERO
    uom_code: str | None = None
    batches: tuple[BatchAllocation, ...] = ()

    @property
    def line_total(self) -> Decimal:
        gross = self.quantity * self.unit_price
        return gross - (gross * self.discount_percent / Decimal("100"))

    def to_dict(self) -> Dict[str, Any]:
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


@dataclass(frozen=True)
class InvoiceRequest:
    """Locally created sales invoice waiting to be posted to the ERP."""

    external_reference: str
    customer_code: str
    lines: tuple[InvoiceLine, ...]
    doc_date: str | None = None
    doc_due_date: str | None = None
    comments: str | None = None
    sales_person_code: int | None = None
    currency: str = "USD"
    requires_fiscalization: bool = False
    source_system: str = "desktop"
    created_by: str | None = None

    @property
    def total_amount(self) -> Decimal:
        return sum((line.line_total for line in self.lines), ZERO)

    @property
    def primary_warehouse(self) -> str | None:
        return self.lines[0].warehouse_code if self.lines else None

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "InvoiceRequest":
        data = dict(payload or {})
        external_reference = safe_str(data.get("external_reference"))
        if not external_reference:
            raise ValidationError(code="external_reference_required", message_key="external_reference_required")
        customer_code = safe_str(data.get("customer_code"))
        if not customer_code:
            raise ValidationError(code="customer_code_required", message_key="customer_code_required")
        raw_lines = data.get("lines")
        if not isinstance(raw_lines, list) or not raw_lines:
            raise ValidationError(code="lines_required", message_key="lines_required")

        lines: List[InvoiceLine] = []
        for index, raw in enumerate(raw_lines, start=1):
            if not isinstance(raw, dict):
                raise ValidationError(code="lines_required", message_key="lines_required", details=f"Line {index}")
            item_code = safe_str(raw.get("item_code"))
            warehouse_code = safe_str(raw.get("warehouse_code"))
            quantity = to_decimal(raw.get("quantity"))
            if not item_code or not warehouse_code or not is_positive_quantity(quantity):
                raise ValidationError(
                    code="quantity_invalid",
                    message_key="quantity_invalid",
                    details=f"Line {index}: item, warehouse and a positive quantity are required.",
                )
            try:
                line_num = int(raw.get("line_num") or raw.get("line_number") or index)
            except (TypeError, ValueError):
                line_num = 0
            if line_num <= 0 or any(existing.line_num == line_num for existing in lines):
                raise ValidationError(
                    code="line_number_duplicate",
                    message_key="line_number_duplicate",
                    details=f"Line {index}: line numbers must be unique positive integers.",
                )
            batches_raw = raw.get("batches") or raw.get("batch_numbers") or []
            lines.append(
                InvoiceLine(
                    line_num=line_num,
                    item_code=item_code,
                    quantity=quantity,
                    warehouse_code=warehouse_code,
                    unit_price=to_decimal(raw.get("unit_price")),
                    tax_code=safe_str(raw.get("tax_code")),
                    discount_percent=to_decimal(raw.get("discount_percent")),
                    uom_code=safe_str(raw.get("uom_code")),
                    batches=tuple(
                        BatchAllocation.from_dict(batch) for batch in batches_raw if isinstance(batch, dict)
                    ),
                )
            )

        sales_person = data.get("sales_person_code")
        try:
            sales_person_code = int(sales_person) if sales_person not in (None, "") else None
        except (TypeError, ValueError):
            sales_person_code = None

        return InvoiceRequest(
            external_reference=external_reference,
            customer_code=customer_code,
            lines=tuple(lines),
            doc_date=safe_str(data.get("doc_date")),
            doc_due_date=safe_str(data.get("doc_due_date")),
            comments=safe_str(data.get("comments")),
            sales_person_code=sales_person_code,
            currency=safe_str(data.get("currency")) or "USD",
            requires_fiscalization=bool(data.get("requires_fiscalization")),
            source_system=safe_str(data.get("source_system")) or "desktop",
            created_by=safe_str(data.get("created_by")),
        )

    @staticmethod
    def from_json(raw: str | Dict[str, Any]) -> "InvoiceRequest":
        if isinstance(raw, dict):
            return InvoiceRequest.from_payload(raw)
        try:
            parsed = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            raise ValidationError(details=f"Stored payload is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValidationError(details="Stored payload is not an object.")
        return InvoiceRequest.from_payload(parsed)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "external_reference": self.external_reference,
            "customer_code": self.customer_code,
            "doc_date": self.doc_date,
            "doc_due_date": self.doc_due_date,
            "comments": self.comments,
            "sales_person_code": self.sales_person_code,
            "currency": self.currency,
            "requires_fiscalization": self.requires_fiscalization,
            "source_system": self.source_system,
            "created_by": self.created_by,
            "lines": [line.to_dict() for line in self.lines],
        }

    def stock_lines(self) -> List[StockLine]:
        return [
            StockLine(
                line_number=line.line_num,
                item_code=line.item_code,
                warehouse_code=line.warehouse_code,
                quantity=line.quantity,
                batches=line.batches,
            )
            for line in self.lines
        ]

    def to_erp_document(self) -> ErpInvoiceV1:
        comments = self.comments or f"Invoice {self.external_reference}"
        document = ErpInvoiceV1(
            customer_code=self.customer_code,
            reference=self.external_reference,
            doc_due_date=self.doc_due_date,
            comments=comments,
            sales_person_code=self.sales_person_code,
            currency=self.currency,
            lines=[
                ErpInvoiceLineV1(
                    line_num=line.line_num,
                    item_code=line.item_code,
                    quantity=line.quantity,
                    warehouse_code=line.warehouse_code,
                    unit_price=line.unit_price,
                    tax_code=line.tax_code,
                    discount_percent=line.discount_percent,
                    uom_code=line.uom_code,
                    batches=[ErpBatchV1(batch.batch_number, batch.quantity) for batch in line.batches],
                )
                for line in self.lines
            ],
        )
        if self.doc_date:
            document.doc_date = self.doc_date
        return document
