from __future__ import annotations

import threading
from decimal import Decimal
from typing import Dict, List

from invoice_sync.contexts.erp.domain.contracts import (
    ErpInvoiceV1,
    FiscalizationResultV1,
    InvoiceViewV1,
    PostedDocumentV1,
)
from invoice_sync.contexts.erp.domain.gateway import ExternalPostingGateway, FiscalizationGateway, StockSource
from invoice_sync.contexts.erp.interfaces.workers.runtime import ErpGateways


class ScriptedPostingGateway(ExternalPostingGateway):
    """Posting gateway whose outcome per reference is scripted as a list of exceptions.

    Each ``post`` pops the next scripted exception for the reference and raises it;
    once the script is exhausted the document is accepted.
    """

    def __init__(self) -> None:
        self.scripts: Dict[str, List[BaseException]] = {}
        self.calls: List[str] = []
        self.posted: Dict[str, PostedDocumentV1] = {}
        self.block: threading.Event | None = None
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def fail(self, reference: str, *errors: BaseException) -> None:
        self.scripts.setdefault(reference, []).extend(errors)

    def post(self, document: ErpInvoiceV1, *, timeout: float | None = None) -> PostedDocumentV1:
        with self._lock:
            self.calls.append(document.reference)
            script = self.scripts.get(document.reference) or []
            error = script.pop(0) if script else None
        self.entered.set()
        if self.block is not None:
            self.block.wait(5)
        if error is not None:
            raise error
        external_id = str(1000 + len(self.posted) + 1)
        posted = PostedDocumentV1(
            external_id=external_id,
            external_num=f"INV-{external_id}",
            reference=document.reference,
            customer_code=document.customer_code,
            customer_name=f"Customer {document.customer_code}",
            doc_date=document.doc_date,
            doc_total=document.doc_total,
        )
        with self._lock:
            self.posted[external_id] = posted
        return posted

    def get_by_external_id(self, external_id: str, *, timeout: float | None = None) -> PostedDocumentV1 | None:
        return self.posted.get(str(external_id))


class ScriptedFiscalGateway(FiscalizationGateway):
    def __init__(self, *, success: bool = True, error: BaseException | None = None) -> None:
        self.success = success
        self.error = error
        self.calls: List[str] = []

    def fiscalize(self, invoice: InvoiceViewV1, *, timeout: float | None = None) -> FiscalizationResultV1:
        self.calls.append(invoice.external_id)
        if self.error is not None:
            raise self.error
        if not self.success:
            return FiscalizationResultV1.failure("Printer out of paper.", error_code="PAPER_OUT")
        return FiscalizationResultV1(
            success=True,
            device_serial="FD-TEST-01",
            receipt_number=f"R-{invoice.external_id}",
            verification_code="VC-123",
        )


class FakeStockSource(StockSource):
    def __init__(self, stock: Dict[tuple[str, str], Decimal] | None = None) -> None:
        self.stock = dict(stock or {})
        self.batch_stock: Dict[tuple[str, str, str], Decimal] = {}
        self.error: BaseException | None = None
        self.calls = 0

    def get_available(self, item_code: str, warehouse_code: str) -> Decimal:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Decimal(self.stock.get((item_code, warehouse_code), Decimal("0")))

    def get_batch_available(self, item_code: str, batch_number: str, warehouse_code: str) -> Decimal:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Decimal(self.batch_stock.get((item_code, batch_number, warehouse_code), Decimal("0")))


def fake_gateways(
    posting: ScriptedPostingGateway | None = None,
    fiscal: FiscalizationGateway | None = None,
    stock: FakeStockSource | None = None,
) -> ErpGateways:
    return ErpGateways(
        posting=posting or ScriptedPostingGateway(),
        fiscalization=fiscal if fiscal is not None else ScriptedFiscalGateway(),
        stock=stock or FakeStockSource(),
    )


def invoice_payload(reference: str, *, quantity: str = "2", item_code: str = "ITEM-1", **extra) -> dict:
    payload = {
        "external_reference": reference,
        "customer_code": "C-100",
        "lines": [
            {
                "item_code": item_code,
                "warehouse_code": "WH-01",
                "quantity": quantity,
                "unit_price": "10.50",
            }
        ],
    }
    payload.update(extra)
    return payload
