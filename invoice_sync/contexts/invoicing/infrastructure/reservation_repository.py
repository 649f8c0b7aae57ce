from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Iterable, List

from invoice_sync.contexts.inventory.domain.stock import BatchAllocation
from invoice_sync.contexts.invoicing.domain.queue import InvoiceLine
from invoice_sync.contexts.invoicing.domain.reservation import (
    RESERVATION_STATUS_CONFIRMED,
    RESERVATION_STATUS_EXPIRED,
    RESERVATION_STATUS_PENDING,
    RESERVATION_STATUS_RELEASED,
    ReservationLine,
    StockReservation,
    invoice_movement_reason,
)
from invoice_sync.core.clock import iso_utc, parse_iso_utc
from invoice_sync.core.values import ZERO, decimal_str, safe_str, to_decimal
from invoice_sync.errors import NotFoundError, ReservationInvalidError
from invoice_sync.infrastructure.repositories.base import BaseRepository
from invoice_sync.observability import observe_reservations_expired


_SELECT_RESERVATION = """
    SELECT reservation_id, external_reference, customer_code, status, created_at, expires_at,
           confirmed_at, released_at, release_reason
    FROM stock_reservations
"""


class ReservationRepository(BaseRepository):
    """Stock holds created at enqueue time and confirmed once the invoice is posted."""

    def __init__(self, db, *, clock=None, ttl_seconds: int = 1800) -> None:
        super().__init__(db, clock=clock)
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._logger = logging.getLogger("invoice_sync")

    def create(
        self,
        *,
        external_reference: str,
        customer_code: str,
        lines: Iterable[InvoiceLine],
        reservation_id: str | None = None,
    ) -> StockReservation:
        reservation_id = reservation_id or str(uuid.uuid4())
        now = self._clock.now()
        expires_at = now + timedelta(seconds=self._ttl_seconds)
        try:
            self._db.execute(
                """
                INSERT INTO stock_reservations (
                    reservation_id, external_reference, customer_code, status, created_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    reservation_id,
                    external_reference,
                    customer_code,
                    RESERVATION_STATUS_PENDING,
                    iso_utc(now),
                    iso_utc(expires_at),
                ),
            )
            for line in lines:
                self._db.execute(
                    """
                    INSERT INTO stock_reservation_lines (
                        reservation_id, line_num, item_code, warehouse_code, quantity,
                        unit_price, tax_code, discount_percent
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        reservation_id,
                        int(line.line_num),
                        line.item_code,
                        line.warehouse_code,
                        decimal_str(line.quantity),
                        decimal_str(line.unit_price),
                        line.tax_code,
                        decimal_str(line.discount_percent),
                    ),
                )
                for batch in line.batches:
                    self._db.execute(
                        """
                        INSERT INTO stock_reservation_batches (reservation_id, line_num, batch_number, quantity)
                        VALUES (?, ?, ?, ?)
                        """,
                        (reservation_id, int(line.line_num), batch.batch_number, decimal_str(batch.quantity)),
                    )
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        self._logger.info(
            "stock_reservation_created",
            extra={"reservation_id": reservation_id, "external_reference": external_reference},
        )
        return self.get(reservation_id)

    def _load_lines(self, reservation_id: str) -> List[ReservationLine]:
        batch_rows = self._db.execute(
            """
            SELECT line_num, batch_number, quantity
            FROM stock_reservation_batches
            WHERE reservation_id = ?
            ORDER BY line_num ASC, id ASC
            """,
            (reservation_id,),
        ).fetchall()
        batches: dict[int, list[BatchAllocation]] = {}
        for row in batch_rows:
            batches.setdefault(int(row["line_num"]), []).append(
                BatchAllocation(batch_number=str(row["batch_number"]), quantity=to_decimal(row["quantity"]))
            )
        line_rows = self._db.execute(
            """
            SELECT line_num, item_code, warehouse_code, quantity, unit_price, tax_code, discount_percent
            FROM stock_reservation_lines
            WHERE reservation_id = ?
            ORDER BY line_num ASC, id ASC
            """,
            (reservation_id,),
        ).fetchall()
        return [
            ReservationLine(
                line_num=int(row["line_num"]),
                item_code=str(row["item_code"]),
                warehouse_code=str(row["warehouse_code"]),
                quantity=to_decimal(row["quantity"]),
                unit_price=to_decimal(row["unit_price"]),
                tax_code=safe_str(row["tax_code"]),
                discount_percent=to_decimal(row["discount_percent"]),
                batches=tuple(batches.get(int(row["line_num"]), [])),
            )
            for row in line_rows
        ]

    def _from_row(self, row: Any) -> StockReservation:
        reservation_id = str(row["reservation_id"])
        return StockReservation(
            reservation_id=reservation_id,
            external_reference=str(row["external_reference"]),
            customer_code=str(row["customer_code"]),
            status=str(row["status"]),
            created_at=parse_iso_utc(row["created_at"]),
            expires_at=parse_iso_utc(row["expires_at"]),
            confirmed_at=parse_iso_utc(row["confirmed_at"]),
            released_at=parse_iso_utc(row["released_at"]),
            release_reason=safe_str(row["release_reason"]),
            lines=self._load_lines(reservation_id),
        )

    def _mark_expired(self, reservation_id: str) -> None:
        now_iso = self._now_iso()
        self._db.execute(
            """
            UPDATE stock_reservations
            SET status = ?, released_at = ?, release_reason = 'expired'
            WHERE reservation_id = ? AND status = ? AND expires_at <= ?
            """,
            (RESERVATION_STATUS_EXPIRED, now_iso, reservation_id, RESERVATION_STATUS_PENDING, now_iso),
        )
        self._db.commit()

    def get(self, reservation_id: str) -> StockReservation | None:
        row = self._db.execute(
            _SELECT_RESERVATION + " WHERE reservation_id = ?",
            (reservation_id,),
        ).fetchone()
        if not row:
            return None
        reservation = self._from_row(row)
        if reservation.is_expired_at(self._clock.now()):
            self._mark_expired(reservation_id)
            reservation.status = RESERVATION_STATUS_EXPIRED
            reservation.release_reason = "expired"
        return reservation

    def get_by_external_reference(self, external_reference: str) -> StockReservation | None:
        row = self._db.execute(
            "SELECT reservation_id FROM stock_reservations WHERE external_reference = ? ORDER BY id DESC LIMIT 1",
            (external_reference,),
        ).fetchone()
        if not row:
            return None
        return self.get(str(row["reservation_id"]))

    def _require(self, reservation_id: str) -> StockReservation:
        reservation = self.get(reservation_id)
        if reservation is None:
            raise NotFoundError(
                code="reservation_not_found",
                message_key="reservation_not_found",
                details=f"Reservation {reservation_id} does not exist.",
            )
        return reservation

    def confirm(self, reservation_id: str) -> StockReservation:
        reservation = self._require(reservation_id)
        if reservation.status == RESERVATION_STATUS_CONFIRMED:
            return reservation
        if reservation.status != RESERVATION_STATUS_PENDING:
            raise ReservationInvalidError(
                details=f"Reservation {reservation_id} is {reservation.status} and cannot be confirmed."
            )
        cursor = self._db.execute(
            """
            UPDATE stock_reservations
            SET status = ?, confirmed_at = ?
            WHERE reservation_id = ? AND status = ?
            """,
            (RESERVATION_STATUS_CONFIRMED, self._now_iso(), reservation_id, RESERVATION_STATUS_PENDING),
        )
        self._db.commit()
        if int(cursor.rowcount or 0) != 1:
            return self.confirm(reservation_id)
        return self._require(reservation_id)

    def release(self, reservation_id: str, *, reason: str = "released") -> StockReservation:
        reservation = self._require(reservation_id)
        if reservation.status in {RESERVATION_STATUS_RELEASED, RESERVATION_STATUS_EXPIRED}:
            return reservation
        if reservation.status != RESERVATION_STATUS_PENDING:
            raise ReservationInvalidError(
                details=f"Reservation {reservation_id} is {reservation.status} and cannot be released."
            )
        self._db.execute(
            """
            UPDATE stock_reservations
            SET status = ?, released_at = ?, release_reason = ?
            WHERE reservation_id = ? AND status = ?
            """,
            (RESERVATION_STATUS_RELEASED, self._now_iso(), reason, reservation_id, RESERVATION_STATUS_PENDING),
        )
        self._db.commit()
        return self._require(reservation_id)

    def expire_reservations(self) -> int:
        now_iso = self._now_iso()
        cursor = self._db.execute(
            """
            UPDATE stock_reservations
            SET status = ?, released_at = ?, release_reason = 'expired'
            WHERE status = ? AND expires_at <= ?
            """,
            (RESERVATION_STATUS_EXPIRED, now_iso, RESERVATION_STATUS_PENDING, now_iso),
        )
        self._db.commit()
        expired = max(0, int(cursor.rowcount or 0))
        if expired:
            observe_reservations_expired(expired)
            self._logger.info("stock_reservations_expired", extra={"expired": expired})
        return expired

    def reserved_quantity(
        self,
        item_code: str,
        warehouse_code: str,
        *,
        batch_number: str | None = None,
        exclude_reservation_id: str | None = None,
    ) -> Decimal:
        """Quantity held by unexpired reservations and not yet taken off the cached stock.

        Pending reservations always count. Confirmed ones count until the stock
        movement for their line is recorded, since only then does the cache drop.
        """
        params: list[Any] = [
            item_code,
            warehouse_code,
            RESERVATION_STATUS_PENDING,
            RESERVATION_STATUS_CONFIRMED,
            self._now_iso(),
        ]
        if batch_number is None:
            sql = """
                SELECT r.reservation_id, r.external_reference, r.status, l.line_num, l.quantity
                FROM stock_reservations r
                JOIN stock_reservation_lines l ON l.reservation_id = r.reservation_id
                WHERE l.item_code = ? AND l.warehouse_code = ?
                  AND r.status IN (?, ?) AND r.expires_at > ?
            """
        else:
            sql = """
                SELECT r.reservation_id, r.external_reference, r.status, l.line_num, b.quantity
                FROM stock_reservations r
                JOIN stock_reservation_lines l ON l.reservation_id = r.reservation_id
                JOIN stock_reservation_batches b
                  ON b.reservation_id = l.reservation_id AND b.line_num = l.line_num
                WHERE l.item_code = ? AND l.warehouse_code = ?
                  AND r.status IN (?, ?) AND r.expires_at > ?
                  AND b.batch_number = ?
            """
            params.append(batch_number)
        if exclude_reservation_id:
            sql += " AND r.reservation_id <> ?"
            params.append(exclude_reservation_id)

        total = ZERO
        for row in self._db.execute(sql, tuple(params)).fetchall():
            if str(row["status"]) == RESERVATION_STATUS_CONFIRMED and self._line_committed(
                item_code, warehouse_code, str(row["external_reference"]), int(row["line_num"])
            ):
                continue
            total += to_decimal(row["quantity"])
        return total

    def _line_committed(self, item_code: str, warehouse_code: str, external_reference: str, line_num: int) -> bool:
        row = self._db.execute(
            """
            SELECT id FROM stock_movements
            WHERE item_code = ? AND warehouse_code = ? AND reason = ?
            LIMIT 1
            """,
            (item_code, warehouse_code, invoice_movement_reason(external_reference, line_num)),
        ).fetchone()
        return row is not None
