from __future__ import annotations

import logging
import threading
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List

from invoice_sync.contexts.erp.domain.gateway import ErpGatewayError, StockSource
from invoice_sync.contexts.inventory.domain.stock import (
    ReservedStock,
    StockCommitResult,
    StockLine,
    StockRecord,
    StockValidationError,
    StockValidationResult,
)
from invoice_sync.contexts.inventory.infrastructure.stock_repository import StockRepository
from invoice_sync.core.clock import Clock, SystemClock
from invoice_sync.core.values import ZERO, decimal_str, is_positive_quantity
from invoice_sync.errors import ConflictError, NegativeStockError, NotFoundError
from invoice_sync.observability import observe_stock_commit, observe_stock_remote_fallback, observe_stock_validation


_REMOTE_FAILURES = (ErpGatewayError, TimeoutError, ConnectionError)


class StockGuard:
    """Checks requested quantities against available stock and applies signed deltas.

    ``validate`` prefers the local cache while it is fresh and falls back to the
    remote source otherwise; a remote failure degrades to the cached value with a
    warning. Quantities held by open reservations are subtracted from what is
    available. ``commit`` is the only writer of quantity deltas and refuses any
    change that would leave the stored quantity below zero.
    """

    def __init__(
        self,
        repository: StockRepository,
        stock_source: StockSource | None = None,
        *,
        reservations: ReservedStock | None = None,
        clock: Clock | None = None,
        freshness_seconds: int = 300,
        max_commit_attempts: int = 5,
    ) -> None:
        self._repository = repository
        self._source = stock_source
        self._reservations = reservations
        self._clock = clock or SystemClock()
        self._freshness = timedelta(seconds=max(0, int(freshness_seconds)))
        self._max_commit_attempts = max(1, int(max_commit_attempts))
        self._lock = threading.Lock()
        self._logger = logging.getLogger("invoice_sync")

    def validate(
        self, lines: Iterable[StockLine], *, exclude_reservation_id: str | None = None
    ) -> StockValidationResult:
        result = StockValidationResult()
        requested_so_far: Dict[tuple[str, str], Decimal] = {}
        batch_requested_so_far: Dict[tuple[str, str, str], Decimal] = {}

        for line in lines:
            if not is_positive_quantity(line.quantity):
                result.errors.append(
                    StockValidationError(
                        line_number=line.line_number,
                        item_code=line.item_code,
                        warehouse_code=line.warehouse_code,
                        requested_quantity=line.quantity,
                        available_quantity=ZERO,
                        reason="quantity_invalid",
                    )
                )
                continue

            key = (line.item_code, line.warehouse_code)
            available = self._available(line.item_code, line.warehouse_code, result.warnings) - self._reserved(
                line.item_code, line.warehouse_code, None, exclude_reservation_id
            )
            remaining = available - requested_so_far.get(key, ZERO)
            requested_so_far[key] = requested_so_far.get(key, ZERO) + line.quantity
            if line.quantity > remaining:
                result.errors.append(
                    StockValidationError(
                        line_number=line.line_number,
                        item_code=line.item_code,
                        warehouse_code=line.warehouse_code,
                        requested_quantity=line.quantity,
                        available_quantity=max(remaining, ZERO),
                    )
                )

            if not line.batches:
                continue
            invalid_batches = [batch for batch in line.batches if not is_positive_quantity(batch.quantity)]
            batch_total = sum(
                (batch.quantity for batch in line.batches if is_positive_quantity(batch.quantity)), ZERO
            )
            if invalid_batches or batch_total != line.quantity:
                result.warnings.append(
                    f"Line {line.line_number}: batch quantities total {decimal_str(batch_total)} "
                    f"but line quantity is {decimal_str(line.quantity)}."
                )
            for batch in line.batches:
                if batch in invalid_batches:
                    result.errors.append(
                        StockValidationError(
                            line_number=line.line_number,
                            item_code=line.item_code,
                            warehouse_code=line.warehouse_code,
                            requested_quantity=batch.quantity,
                            available_quantity=ZERO,
                            batch_number=batch.batch_number,
                            reason="quantity_invalid",
                        )
                    )
                    continue
                batch_key = (line.item_code, line.warehouse_code, batch.batch_number)
                batch_available = self._batch_available(
                    line.item_code, line.warehouse_code, batch.batch_number, result.warnings
                ) - self._reserved(line.item_code, line.warehouse_code, batch.batch_number, exclude_reservation_id)
                batch_remaining = batch_available - batch_requested_so_far.get(batch_key, ZERO)
                batch_requested_so_far[batch_key] = batch_requested_so_far.get(batch_key, ZERO) + batch.quantity
                if batch.quantity > batch_remaining:
                    result.errors.append(
                        StockValidationError(
                            line_number=line.line_number,
                            item_code=line.item_code,
                            warehouse_code=line.warehouse_code,
                            requested_quantity=batch.quantity,
                            available_quantity=max(batch_remaining, ZERO),
                            batch_number=batch.batch_number,
                        )
                    )

        observe_stock_validation("valid" if result.is_valid else "invalid")
        return result

    def _reserved(
        self, item_code: str, warehouse_code: str, batch_number: str | None, exclude_reservation_id: str | None
    ) -> Decimal:
        if self._reservations is None:
            return ZERO
        return self._reservations.reserved_quantity(
            item_code,
            warehouse_code,
            batch_number=batch_number,
            exclude_reservation_id=exclude_reservation_id,
        )

    def _available(self, item_code: str, warehouse_code: str, warnings: List[str]) -> Decimal:
        record = self._repository.get_record(item_code, warehouse_code)
        if record is not None and record.is_fresh(self._clock.now(), self._freshness):
            return record.available
        if self._source is None:
            return record.available if record is not None else ZERO
        try:
            remote = self._source.get_available(item_code, warehouse_code)
        except _REMOTE_FAILURES as exc:
            observe_stock_remote_fallback()
            self._logger.warning(
                "stock_remote_lookup_failed",
                extra={
                    "item_code": item_code,
                    "warehouse_code": warehouse_code,
                    "error": str(exc),
                    "cached": record is not None,
                },
            )
            warnings.append(
                f"Could not reach the ERP for {item_code} in {warehouse_code}; using locally cached stock."
            )
            return record.available if record is not None else ZERO
        refreshed = self._repository.sync_available(item_code, warehouse_code, available=remote)
        return refreshed.available

    def _batch_available(self, item_code: str, warehouse_code: str, batch_number: str, warnings: List[str]) -> Decimal:
        record = self._repository.get_batch_record(item_code, warehouse_code, batch_number)
        if record is not None and record.is_fresh(self._clock.now(), self._freshness):
            return record.quantity
        if self._source is None:
            return record.quantity if record is not None else ZERO
        try:
            remote = self._source.get_batch_available(item_code, batch_number, warehouse_code)
        except _REMOTE_FAILURES as exc:
            observe_stock_remote_fallback()
            self._logger.warning(
                "stock_remote_batch_lookup_failed",
                extra={
                    "item_code": item_code,
                    "warehouse_code": warehouse_code,
                    "batch_number": batch_number,
                    "error": str(exc),
                },
            )
            warnings.append(
                f"Could not reach the ERP for batch {batch_number} of {item_code}; using locally cached stock."
            )
            return record.quantity if record is not None else ZERO
        refreshed = self._repository.sync_batch_snapshot(item_code, warehouse_code, batch_number, quantity=remote)
        return refreshed.quantity

    def commit(self, item_code: str, warehouse_code: str, delta: Decimal, *, reason: str) -> StockCommitResult:
        with self._lock:
            for _attempt in range(self._max_commit_attempts):
                found = self._repository.get_record_for_update(item_code, warehouse_code)
                if found is None:
                    observe_stock_commit("missing")
                    raise NotFoundError(
                        code="stock_record_not_found",
                        message_key="stock_record_not_found",
                        details=f"No stock record for {item_code} in {warehouse_code}.",
                    )
                record, token = found
                new_quantity = record.quantity_on_stock + delta
                if new_quantity < ZERO:
                    observe_stock_commit("rejected")
                    self._logger.warning(
                        "stock_commit_rejected",
                        extra={
                            "item_code": item_code,
                            "warehouse_code": warehouse_code,
                            "quantity_on_stock": decimal_str(record.quantity_on_stock),
                            "delta": decimal_str(delta),
                            "reason": reason,
                        },
                    )
                    raise NegativeStockError(
                        details=(
                            f"{item_code} in {warehouse_code}: {decimal_str(record.quantity_on_stock)} on stock, "
                            f"delta {decimal_str(delta)} would go negative."
                        ),
                        payload={
                            "item_code": item_code,
                            "warehouse_code": warehouse_code,
                            "quantity_on_stock": decimal_str(record.quantity_on_stock),
                            "delta": decimal_str(delta),
                        },
                    )
                committed = self._repository.compare_and_set_quantity(
                    item_code,
                    warehouse_code,
                    expected_raw=token,
                    new_quantity=new_quantity,
                    delta=delta,
                    quantity_before=record.quantity_on_stock,
                    reason=reason,
                )
                if committed:
                    observe_stock_commit("committed")
                    self._logger.info(
                        "stock_committed",
                        extra={
                            "item_code": item_code,
                            "warehouse_code": warehouse_code,
                            "delta": decimal_str(delta),
                            "quantity_after": decimal_str(new_quantity),
                            "reason": reason,
                        },
                    )
                    return StockCommitResult(
                        item_code=item_code,
                        warehouse_code=warehouse_code,
                        delta=delta,
                        quantity_before=record.quantity_on_stock,
                        quantity_after=new_quantity,
                        reason=reason,
                        committed_at=self._clock.now(),
                    )
                self._logger.debug(
                    "stock_commit_conflict_retry",
                    extra={"item_code": item_code, "warehouse_code": warehouse_code},
                )

        observe_stock_commit("conflict")
        raise ConflictError(
            code="stock_commit_conflict",
            details=f"Stock for {item_code} in {warehouse_code} kept changing; commit abandoned.",
        )

    def has_committed(self, item_code: str, warehouse_code: str, reason: str) -> bool:
        return self._repository.movement_exists(item_code, warehouse_code, reason)

    def refresh(self, item_code: str, warehouse_code: str) -> StockRecord:
        if self._source is None:
            raise NotFoundError(
                code="stock_source_unavailable",
                message_key="stock_record_not_found",
                details="No remote stock source is configured.",
            )
        remote = self._source.get_available(item_code, warehouse_code)
        return self._repository.sync_available(item_code, warehouse_code, available=remote)
