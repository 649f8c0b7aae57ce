from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from invoice_sync.contexts.inventory.domain.stock import BatchStockRecord, StockRecord
from invoice_sync.core.clock import parse_iso_utc
from invoice_sync.core.values import ZERO, decimal_str, to_decimal
from invoice_sync.infrastructure.repositories.base import BaseRepository


def _record_from_row(row: Any) -> StockRecord:
    return StockRecord(
        item_code=str(row["item_code"]),
        warehouse_code=str(row["warehouse_code"]),
        quantity_on_stock=to_decimal(row["quantity_on_stock"]),
        committed_quantity=to_decimal(row["committed_quantity"]),
        on_order_quantity=to_decimal(row["on_order_quantity"]),
        last_synced_at=parse_iso_utc(row["last_synced_at"]),
        updated_at=parse_iso_utc(row["updated_at"]),
    )


class StockRepository(BaseRepository):
    def __init__(self, db, *, clock=None) -> None:
        super().__init__(db, clock=clock)
        self._logger = logging.getLogger("invoice_sync")

    def _fetch_row(self, item_code: str, warehouse_code: str):
        return self._db.execute(
            """
            SELECT item_code, warehouse_code, quantity_on_stock, committed_quantity,
                   on_order_quantity, last_synced_at, updated_at
            FROM stock_records
            WHERE item_code = ? AND warehouse_code = ?
            """,
            (item_code, warehouse_code),
        ).fetchone()

    def get_record(self, item_code: str, warehouse_code: str) -> StockRecord | None:
        row = self._fetch_row(item_code, warehouse_code)
        if not row:
            return None
        return _record_from_row(row)

    def get_record_for_update(self, item_code: str, warehouse_code: str) -> tuple[StockRecord, Any] | None:
        """Return the record plus the raw stored quantity used as the compare-and-set token."""
        row = self._fetch_row(item_code, warehouse_code)
        if not row:
            return None
        return _record_from_row(row), row["quantity_on_stock"]

    def get_batch_record(self, item_code: str, warehouse_code: str, batch_number: str) -> BatchStockRecord | None:
        row = self._db.execute(
            """
            SELECT item_code, warehouse_code, batch_number, quantity, last_synced_at
            FROM batch_stock_records
            WHERE item_code = ? AND warehouse_code = ? AND batch_number = ?
            """,
            (item_code, warehouse_code, batch_number),
        ).fetchone()
        if not row:
            return None
        return BatchStockRecord(
            item_code=str(row["item_code"]),
            warehouse_code=str(row["warehouse_code"]),
            batch_number=str(row["batch_number"]),
            quantity=to_decimal(row["quantity"]),
            last_synced_at=parse_iso_utc(row["last_synced_at"]),
        )

    def sync_snapshot(
        self,
        item_code: str,
        warehouse_code: str,
        *,
        quantity_on_stock: Decimal,
        committed_quantity: Decimal = ZERO,
        on_order_quantity: Decimal = ZERO,
    ) -> StockRecord:
        quantity = to_decimal(quantity_on_stock)
        if quantity < ZERO:
            self._logger.warning(
                "stock_snapshot_negative_clamped",
                extra={
                    "item_code": item_code,
                    "warehouse_code": warehouse_code,
                    "remote_quantity": decimal_str(quantity),
                },
            )
            quantity = ZERO
        now_iso = self._now_iso()
        self._db.execute(
            """
            INSERT INTO stock_records (
                item_code, warehouse_code, quantity_on_stock, committed_quantity,
                on_order_quantity, last_synced_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (item_code, warehouse_code) DO UPDATE SET
                quantity_on_stock = excluded.quantity_on_stock,
                committed_quantity = excluded.committed_quantity,
                on_order_quantity = excluded.on_order_quantity,
                last_synced_at = excluded.last_synced_at,
                updated_at = excluded.updated_at
            """,
            (
                item_code,
                warehouse_code,
                decimal_str(quantity),
                decimal_str(to_decimal(committed_quantity)),
                decimal_str(to_decimal(on_order_quantity)),
                now_iso,
                now_iso,
            ),
        )
        self._db.commit()
        return self.get_record(item_code, warehouse_code)

    def sync_available(self, item_code: str, warehouse_code: str, *, available: Decimal) -> StockRecord:
        """Store a remote *available* figure without discarding cached committed/on-order values.

        ``quantity_on_stock`` is derived so that ``record.available`` equals the remote figure:
        on_stock = available + committed - on_order, floored at zero.
        """
        remote = to_decimal(available)
        if remote < ZERO:
            self._logger.warning(
                "stock_snapshot_negative_clamped",
                extra={
                    "item_code": item_code,
                    "warehouse_code": warehouse_code,
                    "remote_quantity": decimal_str(remote),
                },
            )
            remote = ZERO
        current = self.get_record(item_code, warehouse_code)
        committed = current.committed_quantity if current is not None else ZERO
        on_order = current.on_order_quantity if current is not None else ZERO
        return self.sync_snapshot(
            item_code,
            warehouse_code,
            quantity_on_stock=max(remote + committed - on_order, ZERO),
            committed_quantity=committed,
            on_order_quantity=on_order,
        )

    def sync_batch_snapshot(
        self, item_code: str, warehouse_code: str, batch_number: str, *, quantity: Decimal
    ) -> BatchStockRecord:
        value = to_decimal(quantity)
        if value < ZERO:
            self._logger.warning(
                "stock_batch_snapshot_negative_clamped",
                extra={
                    "item_code": item_code,
                    "warehouse_code": warehouse_code,
                    "batch_number": batch_number,
                    "remote_quantity": decimal_str(value),
                },
            )
            value = ZERO
        now_iso = self._now_iso()
        self._db.execute(
            """
            INSERT INTO batch_stock_records (
                item_code, warehouse_code, batch_number, quantity, last_synced_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (item_code, warehouse_code, batch_number) DO UPDATE SET
                quantity = excluded.quantity,
                last_synced_at = excluded.last_synced_at,
                updated_at = excluded.updated_at
            """,
            (item_code, warehouse_code, batch_number, decimal_str(value), now_iso, now_iso),
        )
        self._db.commit()
        return self.get_batch_record(item_code, warehouse_code, batch_number)

    def compare_and_set_quantity(
        self,
        item_code: str,
        warehouse_code: str,
        *,
        expected_raw: Any,
        new_quantity: Decimal,
        delta: Decimal,
        quantity_before: Decimal,
        reason: str,
    ) -> bool:
        """Write ``new_quantity`` only if the stored value still equals ``expected_raw``.

        The movement row is written in the same transaction; on a lost race nothing is written.
        """
        now_iso = self._now_iso()
        try:
            cursor = self._db.execute(
                """
                UPDATE stock_records
                SET quantity_on_stock = ?, updated_at = ?
                WHERE item_code = ? AND warehouse_code = ? AND quantity_on_stock = ?
                """,
                (decimal_str(new_quantity), now_iso, item_code, warehouse_code, expected_raw),
            )
            if int(cursor.rowcount or 0) != 1:
                self._db.rollback()
                return False
            self._db.execute(
                """
                INSERT INTO stock_movements (
                    item_code, warehouse_code, delta, quantity_before, quantity_after, reason, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_code,
                    warehouse_code,
                    decimal_str(delta),
                    decimal_str(quantity_before),
                    decimal_str(new_quantity),
                    reason,
                    now_iso,
                ),
            )
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        return True

    def movement_exists(self, item_code: str, warehouse_code: str, reason: str) -> bool:
        row = self._db.execute(
            """
            SELECT id FROM stock_movements
            WHERE item_code = ? AND warehouse_code = ? AND reason = ?
            LIMIT 1
            """,
            (item_code, warehouse_code, reason),
        ).fetchone()
        return row is not None

    def list_movements(self, item_code: str, warehouse_code: str, *, limit: int = 100) -> list[dict]:
        rows = self._db.execute(
            """
            SELECT id, item_code, warehouse_code, delta, quantity_before, quantity_after, reason, created_at
            FROM stock_movements
            WHERE item_code = ? AND warehouse_code = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (item_code, warehouse_code, int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)
