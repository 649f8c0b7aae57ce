from __future__ import annotations

import hashlib
import threading
from decimal import Decimal
from typing import Dict

from invoice_sync.contexts.erp.domain.contracts import (
    ErpInvoiceV1,
    FiscalizationResultV1,
    InvoiceViewV1,
    PostedDocumentV1,
)
from invoice_sync.contexts.erp.domain.gateway import (
    DuplicateError,
    ExternalPostingGateway,
    FiscalizationGateway,
    InsufficientStockError,
    NetworkError,
    StockSource,
    ValidationError,
)
from invoice_sync.core.values import ZERO, decimal_str
from invoice_sync.observability import observe_erp_simulator_result


class DeterministicErpSimulator(ExternalPostingGateway, FiscalizationGateway, StockSource):
    """In-process ERP stand-in whose outcomes depend only on the seed and the inputs.

    Posting buckets each (reference, attempt) pair: below ``accept_below`` the
    document is accepted, below ``transient_below`` the call fails with a
    ``NetworkError``, anything above is a business rejection. Because the attempt
    number is part of the key, a retried reference can succeed later.
    """

    def __init__(
        self,
        seed: int = 42,
        *,
        accept_below: int = 70,
        transient_below: int = 90,
        fiscal_success_below: int = 85,
    ) -> None:
        self.seed = int(seed)
        self.accept_below = int(accept_below)
        self.transient_below = int(transient_below)
        self.fiscal_success_below = int(fiscal_success_below)
        self._lock = threading.Lock()
        self._attempts: Dict[str, int] = {}
        self._posted_by_reference: Dict[str, PostedDocumentV1] = {}
        self._posted_by_id: Dict[str, PostedDocumentV1] = {}
        self._stock: Dict[tuple[str, str], Decimal] = {}
        self._batch_stock: Dict[tuple[str, str, str], Decimal] = {}

    def _bucket(self, key: str) -> int:
        digest = hashlib.sha256(f"{self.seed}:{key}".encode("utf-8")).hexdigest()
        return int(digest[:8], 16) % 100

    def _number(self, prefix: str, key: str, width: int = 6) -> str:
        digest = hashlib.sha256(f"{prefix}:{self.seed}:{key}".encode("utf-8")).hexdigest()
        return f"{int(digest[:10], 16) % (10 ** width):0{width}d}"

    def set_stock(self, item_code: str, warehouse_code: str, quantity: Decimal | int | str) -> None:
        with self._lock:
            self._stock[(item_code, warehouse_code)] = Decimal(str(quantity))

    def set_batch_stock(
        self, item_code: str, batch_number: str, warehouse_code: str, quantity: Decimal | int | str
    ) -> None:
        with self._lock:
            self._batch_stock[(item_code, batch_number, warehouse_code)] = Decimal(str(quantity))

    def get_available(self, item_code: str, warehouse_code: str) -> Decimal:
        with self._lock:
            configured = self._stock.get((item_code, warehouse_code))
        if configured is not None:
            observe_erp_simulator_result("stock", "configured")
            return configured
        observe_erp_simulator_result("stock", "derived")
        return Decimal(self._bucket(f"stock:{item_code}:{warehouse_code}") * 2)

    def get_batch_available(self, item_code: str, batch_number: str, warehouse_code: str) -> Decimal:
        with self._lock:
            configured = self._batch_stock.get((item_code, batch_number, warehouse_code))
        if configured is not None:
            observe_erp_simulator_result("batch_stock", "configured")
            return configured
        observe_erp_simulator_result("batch_stock", "derived")
        return Decimal(self._bucket(f"batch:{item_code}:{batch_number}:{warehouse_code}"))

    def post(self, document: ErpInvoiceV1, *, timeout: float | None = None) -> PostedDocumentV1:
        reference = str(document.reference or "").strip()
        if not str(document.customer_code or "").strip():
            observe_erp_simulator_result("post", "rejected")
            raise ValidationError("Customer code is required.")
        if not document.lines:
            observe_erp_simulator_result("post", "rejected")
            raise ValidationError("Invoice has no lines.")
        for line in document.lines:
            if line.quantity <= ZERO:
                observe_erp_simulator_result("post", "rejected")
                raise ValidationError(f"Line {line.line_num}: quantity must be positive.")

        with self._lock:
            if reference and reference in self._posted_by_reference:
                observe_erp_simulator_result("post", "duplicate")
                raise DuplicateError(f"Document with reference {reference} already exists.")
            for line in document.lines:
                key = (line.item_code, line.warehouse_code)
                available = self._stock.get(key)
                if available is not None and line.quantity > available:
                    observe_erp_simulator_result("post", "insufficient_stock")
                    raise InsufficientStockError(
                        f"Item {line.item_code} in {line.warehouse_code}: requested "
                        f"{decimal_str(line.quantity)}, available {decimal_str(available)}."
                    )

            attempt = self._attempts.get(reference, 0) + 1
            self._attempts[reference] = attempt
            bucket = self._bucket(f"post:{reference}:{attempt}")
            if bucket >= self.transient_below:
                observe_erp_simulator_result("post", "rejected")
                raise ValidationError(f"Document {reference} rejected by ERP validation.")
            if bucket >= self.accept_below:
                observe_erp_simulator_result("post", "temporary_failure")
                raise NetworkError("ERP temporarily unavailable.")

            for line in document.lines:
                key = (line.item_code, line.warehouse_code)
                if key in self._stock:
                    self._stock[key] = self._stock[key] - line.quantity

            doc_total = document.doc_total
            external_id = self._number("doc-entry", reference, width=8).lstrip("0") or "1"
            posted = PostedDocumentV1(
                external_id=external_id,
                external_num=f"SIM-INV-{self._number('doc-num', reference)}",
                reference=reference,
                customer_code=document.customer_code,
                customer_name=f"Customer {document.customer_code}",
                doc_date=document.doc_date,
                doc_total=doc_total,
                vat_sum=(doc_total * Decimal("0.15")).quantize(Decimal("0.01")),
                currency=document.currency,
            )
            self._posted_by_reference[reference] = posted
            self._posted_by_id[external_id] = posted
        observe_erp_simulator_result("post", "accepted")
        return posted

    def get_by_external_id(self, external_id: str, *, timeout: float | None = None) -> PostedDocumentV1 | None:
        with self._lock:
            return self._posted_by_id.get(str(external_id))

    def fiscalize(self, invoice: InvoiceViewV1, *, timeout: float | None = None) -> FiscalizationResultV1:
        bucket = self._bucket(f"fiscal:{invoice.external_id}")
        if bucket >= self.fiscal_success_below:
            observe_erp_simulator_result("fiscalize", "failed")
            return FiscalizationResultV1.failure("Fiscal device did not respond.", error_code="DEVICE_OFFLINE")
        observe_erp_simulator_result("fiscalize", "succeeded")
        receipt = self._number("receipt", invoice.external_id, width=8)
        return FiscalizationResultV1(
            success=True,
            device_serial=f"SIM-FD-{self.seed:04d}",
            receipt_number=receipt,
            verification_code=self._number("verify", invoice.external_id, width=12),
            qr_code=f"https://fiscal.example.invalid/verify?receipt={receipt}",
        )
