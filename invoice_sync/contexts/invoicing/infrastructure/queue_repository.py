from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List

from invoice_sync.contexts.erp.domain.contracts import FiscalizationResultV1
from invoice_sync.contexts.invoicing.domain.queue import (
    FISCALIZATION_FAILED,
    FISCALIZATION_NOT_REQUIRED,
    FISCALIZATION_PENDING,
    FISCALIZATION_SUCCEEDED,
    QUEUE_STATUS_COMPLETED,
    QUEUE_STATUS_FAILED,
    QUEUE_STATUS_PENDING,
    QUEUE_STATUS_PROCESSING,
    QUEUE_STATUS_REQUIRES_REVIEW,
    InvoiceRequest,
    QueueEntry,
    ensure_transition,
)
from invoice_sync.core.clock import iso_utc, parse_iso_utc
from invoice_sync.core.values import decimal_str, safe_str, to_decimal
from invoice_sync.db import QUEUE_STATUS_VALUES
from invoice_sync.errors import ConflictError, NotFoundError
from invoice_sync.infrastructure.repositories.base import BaseRepository


_SELECT_ENTRY = """
    SELECT id, external_reference, reservation_id, customer_code, payload, status, retry_count,
           max_retries, requires_fiscalization, fiscalization_status, error_message, fiscal_error,
           external_doc_id, external_doc_num, fiscal_device_serial, fiscal_receipt_number,
           fiscal_verification_code, source_system, warehouse_code, total_amount, currency,
           created_by, request_id, created_at, next_eligible_at, processing_started_at,
           processed_at, updated_at
    FROM invoice_queue
"""


def _json_loads(value: str | None) -> Dict[str, Any]:
    raw = str(value or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _json_dumps(value: Dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True)


def _entry_from_row(row: Any) -> QueueEntry:
    return QueueEntry(
        id=int(row["id"]),
        external_reference=str(row["external_reference"]),
        reservation_id=str(row["reservation_id"]),
        customer_code=str(row["customer_code"]),
        payload=_json_loads(row["payload"]),
        status=str(row["status"]),
        retry_count=int(row["retry_count"] or 0),
        max_retries=int(row["max_retries"] or 0),
        requires_fiscalization=bool(row["requires_fiscalization"]),
        fiscalization_status=str(row["fiscalization_status"] or FISCALIZATION_NOT_REQUIRED),
        error_message=safe_str(row["error_message"]),
        fiscal_error=safe_str(row["fiscal_error"]),
        external_doc_id=safe_str(row["external_doc_id"]),
        external_doc_num=safe_str(row["external_doc_num"]),
        fiscal_device_serial=safe_str(row["fiscal_device_serial"]),
        fiscal_receipt_number=safe_str(row["fiscal_receipt_number"]),
        fiscal_verification_code=safe_str(row["fiscal_verification_code"]),
        source_system=str(row["source_system"] or "desktop"),
        warehouse_code=safe_str(row["warehouse_code"]),
        total_amount=to_decimal(row["total_amount"]),
        currency=str(row["currency"] or "USD"),
        created_by=safe_str(row["created_by"]),
        request_id=safe_str(row["request_id"]),
        created_at=parse_iso_utc(row["created_at"]),
        next_eligible_at=parse_iso_utc(row["next_eligible_at"]),
        processing_started_at=parse_iso_utc(row["processing_started_at"]),
        processed_at=parse_iso_utc(row["processed_at"]),
        updated_at=parse_iso_utc(row["updated_at"]),
    )


class QueueRepository(BaseRepository):
    """Durable invoice posting queue.

    Every status change goes through a conditional UPDATE on the status that was
    read, and is recorded in ``queue_status_events``.
    """

    def __init__(self, db, *, clock=None, default_max_retries: int = 3) -> None:
        super().__init__(db, clock=clock)
        self._default_max_retries = max(1, int(default_max_retries))
        self._logger = logging.getLogger("invoice_sync")

    def _insert_status_event(
        self, entry_id: int, from_status: str | None, to_status: str, reason: str, created_at: str
    ) -> None:
        self._db.execute(
            """
            INSERT INTO queue_status_events (entry_id, from_status, to_status, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (int(entry_id), from_status, to_status, reason, created_at),
        )

    def enqueue(
        self,
        request: InvoiceRequest,
        *,
        reservation_id: str,
        max_retries: int | None = None,
        request_id: str | None = None,
    ) -> tuple[QueueEntry, bool]:
        """Insert a Pending entry; an existing external reference returns the stored entry instead."""
        existing = self.get_by_external_reference(request.external_reference)
        if existing is not None:
            return existing, False

        now_iso = self._now_iso()
        retries = max(1, int(max_retries or self._default_max_retries))
        try:
            cursor = self._db.execute(
                """
                INSERT INTO invoice_queue (
                    external_reference, reservation_id, customer_code, payload, status, retry_count,
                    max_retries, requires_fiscalization, fiscalization_status, source_system,
                    warehouse_code, total_amount, currency, created_by, request_id,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    request.external_reference,
                    reservation_id,
                    request.customer_code,
                    _json_dumps(request.to_payload()),
                    QUEUE_STATUS_PENDING,
                    retries,
                    1 if request.requires_fiscalization else 0,
                    FISCALIZATION_PENDING if request.requires_fiscalization else FISCALIZATION_NOT_REQUIRED,
                    request.source_system,
                    request.primary_warehouse,
                    decimal_str(request.total_amount),
                    request.currency,
                    request.created_by,
                    request_id,
                    now_iso,
                    now_iso,
                ),
            )
            entry_id = self.inserted_id(cursor)
            self._insert_status_event(entry_id, None, QUEUE_STATUS_PENDING, "enqueued", now_iso)
            self._db.commit()
        except Exception:
            self._db.rollback()
            # A concurrent enqueue of the same reference wins the unique constraint.
            existing = self.get_by_external_reference(request.external_reference)
            if existing is not None:
                return existing, False
            raise
        return self.get(entry_id), True

    def get(self, entry_id: int) -> QueueEntry | None:
        row = self._db.execute(_SELECT_ENTRY + " WHERE id = ?", (int(entry_id),)).fetchone()
        return _entry_from_row(row) if row else None

    def require(self, entry_id: int) -> QueueEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise NotFoundError(code="queue_entry_not_found", message_key="queue_entry_not_found")
        return entry

    def get_by_external_reference(self, external_reference: str) -> QueueEntry | None:
        row = self._db.execute(
            _SELECT_ENTRY + " WHERE external_reference = ?",
            (external_reference,),
        ).fetchone()
        return _entry_from_row(row) if row else None

    def fetch_eligible_batch(self, limit: int) -> List[QueueEntry]:
        rows = self._db.execute(
            _SELECT_ENTRY
            + """
            WHERE status = ?
               OR (status = ? AND retry_count < max_retries
                   AND (next_eligible_at IS NULL OR next_eligible_at <= ?))
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (QUEUE_STATUS_PENDING, QUEUE_STATUS_FAILED, self._now_iso(), max(1, int(limit))),
        ).fetchall()
        return [_entry_from_row(row) for row in rows]

    def mark_processing(self, entry_id: int) -> bool:
        """Claim an eligible entry. False means another writer moved it first or it is not eligible."""
        row = self._db.execute("SELECT status FROM invoice_queue WHERE id = ?", (int(entry_id),)).fetchone()
        if not row:
            return False
        from_status = str(row["status"])
        if from_status not in {QUEUE_STATUS_PENDING, QUEUE_STATUS_FAILED}:
            return False
        now_iso = self._now_iso()
        cursor = self._db.execute(
            """
            UPDATE invoice_queue
            SET status = ?, processing_started_at = ?, updated_at = ?
            WHERE id = ?
              AND status = ?
              AND (status = ? OR (retry_count < max_retries
                                  AND (next_eligible_at IS NULL OR next_eligible_at <= ?)))
            """,
            (
                QUEUE_STATUS_PROCESSING,
                now_iso,
                now_iso,
                int(entry_id),
                from_status,
                QUEUE_STATUS_PENDING,
                now_iso,
            ),
        )
        if int(cursor.rowcount or 0) != 1:
            self._db.rollback()
            return False
        self._insert_status_event(entry_id, from_status, QUEUE_STATUS_PROCESSING, "claimed", now_iso)
        self._db.commit()
        return True

    def record_external_document(self, entry_id: int, external_id: str, external_num: str | None) -> None:
        self._db.execute(
            """
            UPDATE invoice_queue
            SET external_doc_id = ?, external_doc_num = ?, updated_at = ?
            WHERE id = ?
            """,
            (external_id, external_num, self._now_iso(), int(entry_id)),
        )
        self._db.commit()

    def update_result(
        self,
        entry_id: int,
        status: str,
        *,
        external_id: str | None = None,
        external_num: str | None = None,
        error: str | None = None,
        fiscal: FiscalizationResultV1 | None = None,
        fiscal_error: str | None = None,
        retry_count: int | None = None,
        next_eligible_at: datetime | None = None,
        reason: str | None = None,
    ) -> QueueEntry:
        current = self.require(entry_id)
        ensure_transition(current.status, status)

        now_iso = self._now_iso()
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, now_iso]

        if external_id is not None:
            assignments += ["external_doc_id = ?", "external_doc_num = ?"]
            params += [external_id, external_num]

        if status == QUEUE_STATUS_COMPLETED:
            assignments += ["processed_at = ?", "error_message = NULL", "next_eligible_at = NULL"]
            params.append(now_iso)
        elif status == QUEUE_STATUS_FAILED:
            assignments += ["error_message = ?", "next_eligible_at = ?"]
            params += [error, iso_utc(next_eligible_at) if next_eligible_at else now_iso]
        elif status == QUEUE_STATUS_REQUIRES_REVIEW:
            assignments += ["error_message = ?", "processed_at = ?", "next_eligible_at = NULL"]
            params += [error, now_iso]

        if retry_count is not None:
            assignments.append("retry_count = ?")
            params.append(int(retry_count))

        fiscal_assignments, fiscal_params = self._fiscal_assignments(fiscal, fiscal_error)
        assignments += fiscal_assignments
        params += fiscal_params

        params += [int(entry_id), current.status]
        cursor = self._db.execute(
            f"UPDATE invoice_queue SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
        )
        if int(cursor.rowcount or 0) != 1:
            self._db.rollback()
            raise ConflictError(
                code="queue_entry_changed",
                details=f"Queue entry {entry_id} changed status while being updated.",
            )
        self._insert_status_event(entry_id, current.status, status, reason or status, now_iso)
        self._db.commit()
        return self.require(entry_id)

    @staticmethod
    def _fiscal_assignments(
        fiscal: FiscalizationResultV1 | None, fiscal_error: str | None
    ) -> tuple[list[str], list[Any]]:
        if fiscal is not None and fiscal.success:
            return (
                [
                    "fiscalization_status = ?",
                    "fiscal_error = NULL",
                    "fiscal_device_serial = ?",
                    "fiscal_receipt_number = ?",
                    "fiscal_verification_code = ?",
                ],
                [FISCALIZATION_SUCCEEDED, fiscal.device_serial, fiscal.receipt_number, fiscal.verification_code],
            )
        if fiscal is not None or fiscal_error is not None:
            message = fiscal_error or (fiscal.error if fiscal is not None else None) or "Fiscalization failed."
            return (["fiscalization_status = ?", "fiscal_error = ?"], [FISCALIZATION_FAILED, message])
        return [], []

    def schedule_retry(
        self, entry_id: int, *, retry_count: int, next_eligible_at: datetime, error: str
    ) -> QueueEntry:
        return self.update_result(
            entry_id,
            QUEUE_STATUS_FAILED,
            error=error,
            retry_count=retry_count,
            next_eligible_at=next_eligible_at,
            reason="retry_scheduled",
        )

    def update_fiscalization(
        self, entry_id: int, fiscal: FiscalizationResultV1 | None, *, error: str | None = None
    ) -> QueueEntry:
        """Write fiscal fields only; the queue status is left untouched."""
        self.require(entry_id)
        assignments, params = self._fiscal_assignments(fiscal, error)
        if not assignments:
            return self.require(entry_id)
        assignments.append("updated_at = ?")
        params += [self._now_iso(), int(entry_id)]
        self._db.execute(f"UPDATE invoice_queue SET {', '.join(assignments)} WHERE id = ?", params)
        self._db.commit()
        return self.require(entry_id)

    def retry_now(self, entry_id: int) -> QueueEntry:
        """Make a Failed entry eligible on the next cycle without touching its retry budget."""
        entry = self.require(entry_id)
        if entry.status != QUEUE_STATUS_FAILED:
            raise ConflictError(details=f"Only failed entries can be retried; entry is {entry.status}.")
        now_iso = self._now_iso()
        cursor = self._db.execute(
            """
            UPDATE invoice_queue
            SET next_eligible_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (now_iso, now_iso, int(entry_id), QUEUE_STATUS_FAILED),
        )
        if int(cursor.rowcount or 0) != 1:
            self._db.rollback()
            raise ConflictError(details="Entry changed status before it could be rescheduled.")
        self._db.commit()
        return self.require(entry_id)

    def recover_stale_processing(self, older_than: timedelta) -> int:
        now = self._clock.now()
        cutoff_iso = iso_utc(now - older_than)
        rows = self._db.execute(
            """
            SELECT id FROM invoice_queue
            WHERE status = ? AND (processing_started_at IS NULL OR processing_started_at <= ?)
            ORDER BY id ASC
            """,
            (QUEUE_STATUS_PROCESSING, cutoff_iso),
        ).fetchall()
        recovered = 0
        now_iso = iso_utc(now)
        for row in rows:
            entry_id = int(row["id"])
            cursor = self._db.execute(
                """
                UPDATE invoice_queue
                SET status = ?, next_eligible_at = ?, updated_at = ?,
                    error_message = COALESCE(error_message, 'Processing was interrupted; returned to the queue.')
                WHERE id = ? AND status = ?
                """,
                (QUEUE_STATUS_FAILED, now_iso, now_iso, entry_id, QUEUE_STATUS_PROCESSING),
            )
            if int(cursor.rowcount or 0) == 1:
                self._insert_status_event(entry_id, QUEUE_STATUS_PROCESSING, QUEUE_STATUS_FAILED, "stale_recovered", now_iso)
                recovered += 1
        self._db.commit()
        if recovered:
            self._logger.warning("invoice_queue_stale_processing_recovered", extra={"recovered": recovered})
        return recovered

    def list_by_status(self, statuses: tuple[str, ...], *, limit: int = 100) -> List[QueueEntry]:
        placeholders = ",".join("?" for _ in statuses)
        rows = self._db.execute(
            _SELECT_ENTRY + f" WHERE status IN ({placeholders}) ORDER BY created_at ASC, id ASC LIMIT ?",
            (*statuses, max(1, int(limit))),
        ).fetchall()
        return [_entry_from_row(row) for row in rows]

    def list_requiring_review(self, *, limit: int = 100) -> List[QueueEntry]:
        return self.list_by_status((QUEUE_STATUS_REQUIRES_REVIEW,), limit=limit)

    def list_pending(self, *, limit: int = 100) -> List[QueueEntry]:
        return self.list_by_status((QUEUE_STATUS_PENDING, QUEUE_STATUS_FAILED), limit=limit)

    def list_status_events(self, entry_id: int) -> list[dict]:
        rows = self._db.execute(
            """
            SELECT id, entry_id, from_status, to_status, reason, created_at
            FROM queue_status_events
            WHERE entry_id = ?
            ORDER BY id ASC
            """,
            (int(entry_id),),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def stats(self) -> Dict[str, Any]:
        rows = self._db.execute(
            "SELECT status, COUNT(*) AS total FROM invoice_queue GROUP BY status"
        ).fetchall()
        by_status = {status: 0 for status in QUEUE_STATUS_VALUES}
        for row in rows:
            by_status[str(row["status"])] = int(row["total"] or 0)

        oldest = self._db.execute(
            "SELECT MIN(created_at) AS oldest FROM invoice_queue WHERE status IN (?, ?)",
            (QUEUE_STATUS_PENDING, QUEUE_STATUS_FAILED),
        ).fetchone()
        fiscal_failed = self._db.execute(
            "SELECT COUNT(*) AS total FROM invoice_queue WHERE fiscalization_status = ?",
            (FISCALIZATION_FAILED,),
        ).fetchone()

        oldest_at = parse_iso_utc(oldest["oldest"]) if oldest else None
        oldest_age = int((self._clock.now() - oldest_at).total_seconds()) if oldest_at else 0
        return {
            "total": int(sum(by_status.values())),
            "by_status": by_status,
            "oldest_pending_at": iso_utc(oldest_at) if oldest_at else None,
            "oldest_pending_age_seconds": max(0, oldest_age),
            "fiscalization_failed": int(fiscal_failed["total"] or 0) if fiscal_failed else 0,
        }
