from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Mapping

from invoice_sync.contexts.erp.domain.contracts import FiscalizationResultV1
from invoice_sync.contexts.erp.domain.gateway import ExternalPostingGateway, FiscalizationGateway
from invoice_sync.contexts.inventory.application.stock_guard import StockGuard
from invoice_sync.contexts.inventory.infrastructure.stock_repository import StockRepository
from invoice_sync.contexts.invoicing.domain.queue import (
    FISCALIZATION_SUCCEEDED,
    QUEUE_STATUS_COMPLETED,
    QUEUE_STATUS_REQUIRES_REVIEW,
    InvoiceRequest,
    QueueEntry,
)
from invoice_sync.contexts.invoicing.domain.reservation import invoice_movement_reason
from invoice_sync.contexts.invoicing.domain.retry import RetryPolicy
from invoice_sync.contexts.invoicing.infrastructure.queue_repository import QueueRepository
from invoice_sync.contexts.invoicing.infrastructure.reservation_repository import ReservationRepository
from invoice_sync.core.clock import Clock, SystemClock
from invoice_sync.core.values import decimal_str
from invoice_sync.errors import AppError, ConflictError, NegativeStockError, NotFoundError, ReservationInvalidError
from invoice_sync.observability import (
    bind_request_id,
    observe_fiscalization,
    observe_queue_cooldown,
    observe_queue_cycle,
    observe_queue_entry,
    observe_queue_retry_backoff,
    observe_queue_stale_recovered,
)


CYCLE_STATUS_SKIPPED = "skipped"
CYCLE_STATUS_COMPLETED = "completed"
CYCLE_STATUS_FAILED = "failed"
CYCLE_STATUS_CANCELLED = "cancelled"

ENTRY_OUTCOME_COMPLETED = "completed"
ENTRY_OUTCOME_REQUEUED = "requeued"
ENTRY_OUTCOME_REVIEW = "requires_review"
ENTRY_OUTCOME_SKIPPED = "skipped"
ENTRY_OUTCOME_ERROR = "error"


@dataclass
class CycleResult:
    status: str
    fetched: int = 0
    recovered: int = 0
    expired_reservations: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def record(self, outcome: str) -> None:
        self.outcomes[outcome] = int(self.outcomes.get(outcome, 0)) + 1

    def count(self, outcome: str) -> int:
        return int(self.outcomes.get(outcome, 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "fetched": self.fetched,
            "recovered": self.recovered,
            "expired_reservations": self.expired_reservations,
            "outcomes": dict(self.outcomes),
            "error": self.error,
        }


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, AppError):
        return exc.details or exc.user_message()
    return (str(exc) or exc.__class__.__name__)[:1000]


class QueueProcessor:
    """Posts queued invoices to the ERP one batch at a time.

    ``run_cycle`` is single-flight: a call made while another is running returns a
    ``skipped`` result without touching the queue. Per-entry failures are contained
    and turned into a retry or a review state; only failures outside an entry count
    towards the consecutive-error cooldown.
    """

    def __init__(
        self,
        *,
        queue: QueueRepository,
        reservations: ReservationRepository,
        stock_guard: StockGuard,
        posting_gateway: ExternalPostingGateway,
        fiscal_gateway: FiscalizationGateway | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 5,
        max_consecutive_errors: int = 10,
        cooldown_seconds: float = 60.0,
        processing_timeout_seconds: float = 900.0,
        erp_timeout_seconds: float = 20.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._queue = queue
        self._reservations = reservations
        self._stock_guard = stock_guard
        self._posting = posting_gateway
        self._fiscal = fiscal_gateway
        self._clock = clock or SystemClock()
        self._retry_policy = retry_policy or RetryPolicy()
        self.batch_size = max(1, int(batch_size))
        self.max_consecutive_errors = max(1, int(max_consecutive_errors))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._processing_timeout = timedelta(seconds=max(1.0, float(processing_timeout_seconds)))
        self._erp_timeout = float(erp_timeout_seconds)
        self.stop_event = stop_event or threading.Event()

        self._guard = threading.Lock()
        self.consecutive_errors = 0
        self._cooldown_pending = False
        self._logger = logging.getLogger("invoice_sync")

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    @property
    def cooldown_pending(self) -> bool:
        return self._cooldown_pending

    def next_delay(self, interval_seconds: float) -> float:
        """Seconds to wait before the next cycle; consumes a pending cooldown."""
        if self._cooldown_pending:
            self._cooldown_pending = False
            return self.cooldown_seconds + float(interval_seconds)
        return float(interval_seconds)

    def run_cycle(self) -> CycleResult:
        if not self._guard.acquire(blocking=False):
            self._logger.debug("invoice_queue_cycle_skipped")
            observe_queue_cycle(CYCLE_STATUS_SKIPPED)
            return CycleResult(status=CYCLE_STATUS_SKIPPED)
        try:
            return self._run_cycle_locked()
        finally:
            self._guard.release()

    def _run_cycle_locked(self) -> CycleResult:
        result = CycleResult(status=CYCLE_STATUS_COMPLETED)
        if self.stop_event.is_set():
            result.status = CYCLE_STATUS_CANCELLED
            observe_queue_cycle(result.status)
            return result

        try:
            result.recovered = self._queue.recover_stale_processing(self._processing_timeout)
            observe_queue_stale_recovered(result.recovered)
            result.expired_reservations = self._reservations.expire_reservations()
            entries = self._queue.fetch_eligible_batch(self.batch_size)
        except Exception as exc:  # noqa: BLE001
            self._queue.db.rollback()
            self._register_cycle_failure(exc)
            result.status = CYCLE_STATUS_FAILED
            result.error = _error_text(exc)
            observe_queue_cycle(result.status)
            return result

        result.fetched = len(entries)
        for entry in entries:
            if self.stop_event.is_set():
                result.status = CYCLE_STATUS_CANCELLED
                break
            try:
                outcome = self.process_entry(entry)
            except Exception:  # noqa: BLE001
                # The entry stays in processing and is picked up by stale recovery.
                self._queue.db.rollback()
                self._logger.exception(
                    "invoice_queue_entry_unhandled",
                    extra={"queue_entry_id": entry.id, "external_reference": entry.external_reference},
                )
                outcome = ENTRY_OUTCOME_ERROR
            result.record(outcome)

        self.consecutive_errors = 0
        observe_queue_cycle(result.status)
        if result.fetched or result.recovered:
            self._logger.info("invoice_queue_cycle_finished", extra=result.to_dict())
        return result

    def _register_cycle_failure(self, exc: BaseException) -> None:
        self.consecutive_errors += 1
        self._logger.error(
            "invoice_queue_cycle_failed",
            extra={"consecutive_errors": self.consecutive_errors, "error": _error_text(exc)},
            exc_info=exc,
        )
        if self.consecutive_errors >= self.max_consecutive_errors:
            self._logger.error(
                "invoice_queue_cooldown",
                extra={
                    "consecutive_errors": self.consecutive_errors,
                    "cooldown_seconds": self.cooldown_seconds,
                },
            )
            observe_queue_cooldown()
            self._cooldown_pending = True
            self.consecutive_errors = 0

    def process_entry(self, entry: QueueEntry) -> str:
        started = time.perf_counter()
        with bind_request_id(entry.request_id or f"invoice-queue-{entry.id}"):
            if not self._queue.mark_processing(entry.id):
                self._logger.debug(
                    "invoice_queue_entry_claim_lost",
                    extra={"queue_entry_id": entry.id, "external_reference": entry.external_reference},
                )
                observe_queue_entry(ENTRY_OUTCOME_SKIPPED)
                return ENTRY_OUTCOME_SKIPPED
            try:
                outcome = self._post_and_reconcile(entry)
            except Exception as exc:  # noqa: BLE001
                self._queue.db.rollback()
                outcome = self._handle_failure(entry, exc)
            observe_queue_entry(outcome, (time.perf_counter() - started) * 1000.0)
            return outcome

    def _post_and_reconcile(self, entry: QueueEntry) -> str:
        request = InvoiceRequest.from_json(entry.payload)
        resumed = bool(entry.external_doc_id)

        if resumed:
            external_id = str(entry.external_doc_id)
            external_num = entry.external_doc_num
            self._logger.info(
                "invoice_queue_entry_resumed",
                extra={"queue_entry_id": entry.id, "external_doc_id": external_id},
            )
        else:
            reservation = self._reservations.get(entry.reservation_id)
            if reservation is None:
                raise ReservationInvalidError(
                    code="reservation_not_found",
                    message_key="reservation_not_found",
                    details=f"Reservation {entry.reservation_id} does not exist.",
                )
            if not reservation.is_usable:
                raise ReservationInvalidError(
                    details=f"Reservation {entry.reservation_id} is {reservation.status}.",
                )
            posted = self._posting.post(request.to_erp_document(), timeout=self._erp_timeout)
            external_id = posted.external_id
            external_num = posted.external_num
            self._queue.record_external_document(entry.id, external_id, external_num)

        self._confirm_reservation(entry)
        self._commit_stock(entry, request, resumed=resumed)

        fiscal_result: FiscalizationResultV1 | None = None
        fiscal_error: str | None = None
        if entry.requires_fiscalization:
            fiscal_result, fiscal_error = self._fiscalize(entry, external_id)

        self._queue.update_result(
            entry.id,
            QUEUE_STATUS_COMPLETED,
            external_id=external_id,
            external_num=external_num,
            fiscal=fiscal_result,
            fiscal_error=fiscal_error,
            reason="posted",
        )
        self._logger.info(
            "invoice_queue_entry_processed",
            extra={
                "queue_entry_id": entry.id,
                "external_reference": entry.external_reference,
                "external_doc_id": external_id,
                "external_doc_num": external_num,
                "result": ENTRY_OUTCOME_COMPLETED,
            },
        )
        return ENTRY_OUTCOME_COMPLETED

    def _confirm_reservation(self, entry: QueueEntry) -> None:
        try:
            self._reservations.confirm(entry.reservation_id)
        except (NotFoundError, ReservationInvalidError) as exc:
            self._logger.warning(
                "invoice_queue_reservation_confirm_failed",
                extra={
                    "queue_entry_id": entry.id,
                    "reservation_id": entry.reservation_id,
                    "error": _error_text(exc),
                },
            )

    def _commit_stock(self, entry: QueueEntry, request: InvoiceRequest, *, resumed: bool) -> None:
        for line in request.lines:
            reason = invoice_movement_reason(entry.external_reference, line.line_num)
            if resumed and self._stock_guard.has_committed(line.item_code, line.warehouse_code, reason):
                continue
            try:
                self._stock_guard.commit(line.item_code, line.warehouse_code, -line.quantity, reason=reason)
            except (NegativeStockError, NotFoundError, ConflictError) as exc:
                # The ERP already accepted the document; the local cache is corrected on the next sync.
                self._logger.warning(
                    "invoice_queue_local_stock_commit_rejected",
                    extra={
                        "queue_entry_id": entry.id,
                        "item_code": line.item_code,
                        "warehouse_code": line.warehouse_code,
                        "quantity": decimal_str(line.quantity),
                        "error_code": exc.code,
                    },
                )

    def _fiscalize(self, entry: QueueEntry, external_id: str) -> tuple[FiscalizationResultV1 | None, str | None]:
        if self._fiscal is None:
            observe_fiscalization("unavailable")
            return None, "No fiscalization gateway is configured."
        try:
            posted = self._posting.get_by_external_id(external_id, timeout=self._erp_timeout)
            if posted is None:
                observe_fiscalization("failed")
                return None, f"Posted document {external_id} could not be read back from the ERP."
            result = self._fiscal.fiscalize(posted.to_invoice_view(), timeout=self._erp_timeout)
        except Exception as exc:  # noqa: BLE001
            observe_fiscalization("failed")
            self._logger.warning(
                "invoice_queue_fiscalization_failed",
                extra={"queue_entry_id": entry.id, "external_doc_id": external_id, "error": _error_text(exc)},
            )
            return None, _error_text(exc)
        if not result.success:
            observe_fiscalization("failed")
            self._logger.warning(
                "invoice_queue_fiscalization_failed",
                extra={
                    "queue_entry_id": entry.id,
                    "external_doc_id": external_id,
                    "error": result.error,
                    "error_code": result.error_code,
                },
            )
            return None, result.error or "Fiscalization failed."
        observe_fiscalization("succeeded")
        return result, None

    def _handle_failure(self, entry: QueueEntry, exc: BaseException) -> str:
        message = _error_text(exc)
        decision = self._retry_policy.decide(
            retry_count=entry.retry_count,
            max_retries=entry.max_retries,
            error=exc,
            now=self._clock.now(),
        )
        if decision.will_retry:
            self._queue.schedule_retry(
                entry.id,
                retry_count=decision.retry_count,
                next_eligible_at=decision.next_eligible_at,
                error=message,
            )
            observe_queue_retry_backoff(float(decision.backoff_seconds or 0.0))
            self._logger.warning(
                "invoice_queue_entry_processed",
                extra={
                    "queue_entry_id": entry.id,
                    "external_reference": entry.external_reference,
                    "result": ENTRY_OUTCOME_REQUEUED,
                    "error_kind": decision.error_kind,
                    "retry_count": decision.retry_count,
                    "backoff_seconds": decision.backoff_seconds,
                    "error": message,
                },
            )
            return ENTRY_OUTCOME_REQUEUED

        self._queue.update_result(
            entry.id,
            QUEUE_STATUS_REQUIRES_REVIEW,
            error=message,
            reason=f"{decision.error_kind}_error",
        )
        self._logger.error(
            "invoice_queue_entry_processed",
            extra={
                "queue_entry_id": entry.id,
                "external_reference": entry.external_reference,
                "result": ENTRY_OUTCOME_REVIEW,
                "error_kind": decision.error_kind,
                "retry_count": entry.retry_count,
                "error": message,
            },
        )
        return ENTRY_OUTCOME_REVIEW

    def retry_fiscalization(self, entry_id: int) -> QueueEntry:
        """Fiscalize a completed entry again. Only fiscal fields change."""
        entry = self._queue.require(entry_id)
        if entry.status != QUEUE_STATUS_COMPLETED or not entry.requires_fiscalization or not entry.external_doc_id:
            raise ConflictError(
                code="fiscalization_not_applicable",
                message_key="fiscalization_not_applicable",
                details=f"Entry {entry_id} is {entry.status}; only posted invoices that need fiscalization qualify.",
            )
        if entry.fiscalization_status == FISCALIZATION_SUCCEEDED:
            return entry
        with bind_request_id(entry.request_id or f"invoice-queue-{entry.id}"):
            result, error = self._fiscalize(entry, entry.external_doc_id)
            return self._queue.update_fiscalization(entry.id, result, error=error)


def build_queue_processor(
    db,
    config: Mapping[str, Any],
    *,
    gateways=None,
    clock: Clock | None = None,
    stop_event: threading.Event | None = None,
) -> QueueProcessor:
    if gateways is None:
        from invoice_sync.contexts.erp.interfaces.workers.runtime import build_erp_gateways

        gateways = build_erp_gateways()
    clock = clock or SystemClock()
    stock_guard = StockGuard(
        StockRepository(db, clock=clock),
        gateways.stock,
        clock=clock,
        freshness_seconds=int(config.get("STOCK_FRESHNESS_SECONDS", 300)),
    )
    return QueueProcessor(
        queue=QueueRepository(db, clock=clock, default_max_retries=int(config.get("QUEUE_MAX_RETRIES", 3))),
        reservations=ReservationRepository(
            db, clock=clock, ttl_seconds=int(config.get("RESERVATION_TTL_SECONDS", 1800))
        ),
        stock_guard=stock_guard,
        posting_gateway=gateways.posting,
        fiscal_gateway=gateways.fiscalization,
        clock=clock,
        retry_policy=RetryPolicy(
            base_delay_seconds=float(config.get("QUEUE_BACKOFF_SECONDS", 30)),
            jitter_ratio=float(config.get("QUEUE_BACKOFF_JITTER_RATIO", 0.0)),
        ),
        batch_size=int(config.get("QUEUE_BATCH_SIZE", 5)),
        max_consecutive_errors=int(config.get("QUEUE_MAX_CONSECUTIVE_ERRORS", 10)),
        cooldown_seconds=float(config.get("QUEUE_COOLDOWN_SECONDS", 60)),
        processing_timeout_seconds=float(config.get("QUEUE_PROCESSING_TIMEOUT_SECONDS", 900)),
        erp_timeout_seconds=float(config.get("ERP_TIMEOUT_SECONDS", 20)),
        stop_event=stop_event,
    )
