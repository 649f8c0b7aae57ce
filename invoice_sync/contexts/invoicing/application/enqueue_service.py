from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List

from invoice_sync.contexts.inventory.application.stock_guard import StockGuard
from invoice_sync.contexts.invoicing.domain.queue import InvoiceRequest, QueueEntry
from invoice_sync.contexts.invoicing.infrastructure.queue_repository import QueueRepository
from invoice_sync.contexts.invoicing.infrastructure.reservation_repository import ReservationRepository
from invoice_sync.errors import ConflictError


@dataclass(frozen=True)
class EnqueueResult:
    entry: QueueEntry
    created: bool
    warnings: List[str] = field(default_factory=list)


class InvoiceEnqueueService:
    """Validates stock, reserves it and queues the invoice for posting.

    Validation and reservation run under one lock so that two requests in this
    process cannot both claim the same units.
    """

    _reserve_lock = threading.Lock()

    def __init__(
        self,
        *,
        queue: QueueRepository,
        reservations: ReservationRepository,
        stock_guard: StockGuard,
        max_retries: int = 3,
    ) -> None:
        self._queue = queue
        self._reservations = reservations
        self._stock_guard = stock_guard
        self._max_retries = max(1, int(max_retries))
        self._logger = logging.getLogger("invoice_sync")

    def enqueue(self, payload: Dict[str, Any], *, request_id: str | None = None) -> EnqueueResult:
        request = InvoiceRequest.from_payload(payload)
        existing = self._queue.get_by_external_reference(request.external_reference)
        if existing is not None:
            return EnqueueResult(entry=existing, created=False)

        with self._reserve_lock:
            validation = self._stock_guard.validate(request.stock_lines())
            if not validation.is_valid:
                raise ConflictError(
                    code="insufficient_stock",
                    message_key="insufficient_stock",
                    details=f"{len(validation.errors)} line(s) cannot be fulfilled.",
                    payload={"validation": validation.to_dict()},
                )

            reservation = self._reservations.create(
                external_reference=request.external_reference,
                customer_code=request.customer_code,
                lines=request.lines,
            )
        entry, created = self._queue.enqueue(
            request,
            reservation_id=reservation.reservation_id,
            max_retries=self._max_retries,
            request_id=request_id,
        )
        if not created:
            self._reservations.release(reservation.reservation_id, reason="duplicate_enqueue")
            return EnqueueResult(entry=entry, created=False)

        self._logger.info(
            "invoice_queued",
            extra={
                "queue_entry_id": entry.id,
                "external_reference": entry.external_reference,
                "reservation_id": reservation.reservation_id,
                "warnings": len(validation.warnings),
            },
        )
        return EnqueueResult(entry=entry, created=True, warnings=list(validation.warnings))
