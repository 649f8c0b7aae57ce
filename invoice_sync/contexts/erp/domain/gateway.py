from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from invoice_sync.contexts.erp.domain.contracts import (
    ErpInvoiceV1,
    FiscalizationResultV1,
    InvoiceViewV1,
    PostedDocumentV1,
)


class ErpGatewayError(RuntimeError):
    """Failure raised at the ERP boundary. Subclasses tag the failure kind."""

    default_code = "erp_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or self.default_code


class TransientGatewayError(ErpGatewayError):
    default_code = "erp_temporarily_unavailable"


class NetworkError(TransientGatewayError):
    default_code = "erp_network_error"


class GatewayTimeout(TransientGatewayError):
    default_code = "erp_timeout"


class SessionExpired(TransientGatewayError):
    default_code = "erp_session_expired"


class BusinessGatewayError(ErpGatewayError):
    default_code = "erp_rejected"


class ValidationError(BusinessGatewayError):
    default_code = "erp_validation_failed"


class NotFoundError(BusinessGatewayError):
    default_code = "erp_not_found"


class DuplicateError(BusinessGatewayError):
    default_code = "duplicate_document"


class InsufficientStockError(BusinessGatewayError):
    default_code = "insufficient_stock"


class ExternalPostingGateway(ABC):
    @abstractmethod
    def post(self, document: ErpInvoiceV1, *, timeout: float | None = None) -> PostedDocumentV1:
        raise NotImplementedError

    @abstractmethod
    def get_by_external_id(self, external_id: str, *, timeout: float | None = None) -> PostedDocumentV1 | None:
        raise NotImplementedError


class FiscalizationGateway(ABC):
    @abstractmethod
    def fiscalize(self, invoice: InvoiceViewV1, *, timeout: float | None = None) -> FiscalizationResultV1:
        raise NotImplementedError


class StockSource(ABC):
    """Authoritative remote inventory."""

    @abstractmethod
    def get_available(self, item_code: str, warehouse_code: str) -> Decimal:
        raise NotImplementedError

    @abstractmethod
    def get_batch_available(self, item_code: str, batch_number: str, warehouse_code: str) -> Decimal:
        raise NotImplementedError
