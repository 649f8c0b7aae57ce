from __future__ import annotations

import threading
import unittest
from decimal import Decimal
from unittest.mock import patch

from invoice_sync.contexts.erp.domain.gateway import InsufficientStockError, NetworkError
from invoice_sync.contexts.inventory.application.stock_guard import StockGuard
from invoice_sync.contexts.inventory.infrastructure.stock_repository import StockRepository
from invoice_sync.contexts.invoicing.application.queue_processor import (
    CYCLE_STATUS_CANCELLED,
    CYCLE_STATUS_COMPLETED,
    CYCLE_STATUS_FAILED,
    CYCLE_STATUS_SKIPPED,
    ENTRY_OUTCOME_COMPLETED,
    ENTRY_OUTCOME_REQUEUED,
    ENTRY_OUTCOME_REVIEW,
    QueueProcessor,
)
from invoice_sync.contexts.invoicing.domain.queue import (
    FISCALIZATION_FAILED,
    FISCALIZATION_SUCCEEDED,
    QUEUE_STATUS_COMPLETED,
    QUEUE_STATUS_FAILED,
    QUEUE_STATUS_REQUIRES_REVIEW,
    InvoiceRequest,
)
from invoice_sync.contexts.invoicing.domain.reservation import invoice_movement_reason
from invoice_sync.contexts.invoicing.domain.retry import RetryPolicy
from invoice_sync.contexts.invoicing.infrastructure.queue_repository import QueueRepository
from invoice_sync.contexts.invoicing.infrastructure.reservation_repository import ReservationRepository
from invoice_sync.core.clock import ManualClock
from invoice_sync.errors import ConflictError
from invoice_sync.observability import metrics_snapshot, reset_metrics_for_tests
from tests.helpers.fakes import ScriptedFiscalGateway, ScriptedPostingGateway, invoice_payload
from tests.helpers.temp_db import TempDbSandbox


class QueueProcessorTestBase(unittest.TestCase):
    reservation_ttl_seconds = 86400

    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="queue_processor")
        self.db = self._temp_db.connect()
        self.clock = ManualClock()
        self.queue = QueueRepository(self.db, clock=self.clock, default_max_retries=3)
        self.reservations = ReservationRepository(
            self.db, clock=self.clock, ttl_seconds=self.reservation_ttl_seconds
        )
        self.stock = StockRepository(self.db, clock=self.clock)
        self.stock.sync_snapshot("ITEM-1", "WH-01", quantity_on_stock=Decimal("100"))
        self.posting = ScriptedPostingGateway()
        self.fiscal = ScriptedFiscalGateway()
        self.processor = self._build_processor()

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _build_processor(self, **overrides) -> QueueProcessor:
        options = {
            "queue": self.queue,
            "reservations": self.reservations,
            "stock_guard": StockGuard(self.stock, clock=self.clock),
            "posting_gateway": self.posting,
            "fiscal_gateway": self.fiscal,
            "clock": self.clock,
            "retry_policy": RetryPolicy(base_delay_seconds=30),
            "batch_size": 5,
        }
        options.update(overrides)
        return QueueProcessor(**options)

    def _queue_invoice(self, reference: str, **extra):
        request = InvoiceRequest.from_payload(invoice_payload(reference, **extra))
        reservation = self.reservations.create(
            external_reference=reference, customer_code=request.customer_code, lines=request.lines
        )
        entry, created = self.queue.enqueue(request, reservation_id=reservation.reservation_id)
        self.assertTrue(created)
        self.clock.advance(0.001)
        return entry


class QueueProcessorBatchTest(QueueProcessorTestBase):
    def test_business_failure_is_isolated_within_batch(self) -> None:
        entries = [self._queue_invoice(f"INV-{index}") for index in range(1, 6)]
        self.posting.fail("INV-3", InsufficientStockError("ITEM-1 short in ERP"))

        result = self.processor.run_cycle()

        self.assertEqual(result.status, CYCLE_STATUS_COMPLETED)
        self.assertEqual(result.fetched, 5)
        self.assertEqual(result.count(ENTRY_OUTCOME_COMPLETED), 4)
        self.assertEqual(result.count(ENTRY_OUTCOME_REVIEW), 1)

        rejected = self.queue.require(entries[2].id)
        self.assertEqual(rejected.status, QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(rejected.retry_count, 0)
        self.assertIn("short", rejected.error_message)
        for entry in entries[:2] + entries[3:]:
            posted = self.queue.require(entry.id)
            self.assertEqual(posted.status, QUEUE_STATUS_COMPLETED)
            self.assertTrue(posted.external_doc_id)
        self.assertEqual(self.stock.get_record("ITEM-1", "WH-01").quantity_on_stock, Decimal("92"))
        self.assertEqual(self.reservations.get(rejected.reservation_id).status, "pending")

    def test_batch_size_limits_entries_per_cycle(self) -> None:
        for index in range(7):
            self._queue_invoice(f"INV-B{index}")

        self.assertEqual(self.processor.run_cycle().fetched, 5)
        self.assertEqual(self.processor.run_cycle().fetched, 2)
        self.assertEqual(self.processor.run_cycle().fetched, 0)
        self.assertEqual(self.posting.calls, [f"INV-B{index}" for index in range(7)])

    def test_transient_failures_back_off_then_exhaust(self) -> None:
        entry = self._queue_invoice("INV-T")
        self.posting.fail("INV-T", NetworkError("reset"), NetworkError("reset"), NetworkError("reset"))

        first = self.processor.run_cycle()
        self.assertEqual(first.count(ENTRY_OUTCOME_REQUEUED), 1)
        failed = self.queue.require(entry.id)
        self.assertEqual((failed.status, failed.retry_count), (QUEUE_STATUS_FAILED, 1))
        self.assertGreaterEqual((failed.next_eligible_at - self.clock.now()).total_seconds(), 30)

        self.assertEqual(self.processor.run_cycle().fetched, 0)

        self.clock.advance(30)
        self.processor.run_cycle()
        failed = self.queue.require(entry.id)
        self.assertEqual((failed.status, failed.retry_count), (QUEUE_STATUS_FAILED, 2))

        self.clock.advance(60)
        last = self.processor.run_cycle()
        self.assertEqual(last.count(ENTRY_OUTCOME_REVIEW), 1)
        exhausted = self.queue.require(entry.id)
        self.assertEqual(exhausted.status, QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(exhausted.retry_count, 2)
        self.assertEqual(len(self.posting.calls), 3)
        self.assertEqual(metrics_snapshot()["invoice_queue"]["retry_backoff_count"], 2)

    def test_transient_failure_then_success(self) -> None:
        entry = self._queue_invoice("INV-RECOVER")
        self.posting.fail("INV-RECOVER", TimeoutError("read timeout"))

        self.processor.run_cycle()
        self.clock.advance(31)
        self.processor.run_cycle()

        done = self.queue.require(entry.id)
        self.assertEqual(done.status, QUEUE_STATUS_COMPLETED)
        self.assertEqual(done.retry_count, 1)
        self.assertIsNone(done.error_message)

    def test_local_stock_shortfall_after_post_still_completes(self) -> None:
        self.stock.sync_snapshot("ITEM-1", "WH-01", quantity_on_stock=Decimal("1"))
        entry = self._queue_invoice("INV-SHORT")

        self.processor.run_cycle()

        self.assertEqual(self.queue.require(entry.id).status, QUEUE_STATUS_COMPLETED)
        self.assertEqual(self.stock.get_record("ITEM-1", "WH-01").quantity_on_stock, Decimal("1"))
        self.assertEqual(metrics_snapshot()["stock"]["commits"], {"rejected": 1})

    def test_stop_request_cancels_cycle(self) -> None:
        self._queue_invoice("INV-STOP")
        self.processor.stop_event.set()

        result = self.processor.run_cycle()

        self.assertEqual(result.status, CYCLE_STATUS_CANCELLED)
        self.assertEqual(self.posting.calls, [])


class QueueProcessorReservationTest(QueueProcessorTestBase):
    reservation_ttl_seconds = 60

    def test_expired_reservation_goes_to_review_without_posting(self) -> None:
        entry = self._queue_invoice("INV-EXP")
        self.clock.advance(61)

        result = self.processor.run_cycle()

        self.assertEqual(result.expired_reservations, 1)
        reviewed = self.queue.require(entry.id)
        self.assertEqual(reviewed.status, QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(self.posting.calls, [])

    def test_successful_post_confirms_reservation(self) -> None:
        entry = self._queue_invoice("INV-CONF")
        self.processor.run_cycle()
        self.assertEqual(self.reservations.get(entry.reservation_id).status, "confirmed")


class QueueProcessorFiscalizationTest(QueueProcessorTestBase):
    def test_fiscal_failure_keeps_entry_completed(self) -> None:
        self.fiscal.success = False
        entry = self._queue_invoice("INV-F", requires_fiscalization=True)

        self.processor.run_cycle()

        done = self.queue.require(entry.id)
        self.assertEqual(done.status, QUEUE_STATUS_COMPLETED)
        self.assertEqual(done.fiscalization_status, FISCALIZATION_FAILED)
        self.assertIsNone(done.fiscal_receipt_number)
        self.assertIsNone(done.fiscal_device_serial)
        self.assertEqual(done.fiscal_error, "Printer out of paper.")

        self.fiscal.success = True
        retried = self.processor.retry_fiscalization(entry.id)
        self.assertEqual(retried.status, QUEUE_STATUS_COMPLETED)
        self.assertEqual(retried.fiscalization_status, FISCALIZATION_SUCCEEDED)
        self.assertEqual(retried.fiscal_receipt_number, f"R-{done.external_doc_id}")
        self.assertIsNone(retried.fiscal_error)

    def test_fiscal_exception_keeps_entry_completed(self) -> None:
        self.fiscal.error = NetworkError("device unreachable")
        entry = self._queue_invoice("INV-FX", requires_fiscalization=True)

        self.processor.run_cycle()

        done = self.queue.require(entry.id)
        self.assertEqual(done.status, QUEUE_STATUS_COMPLETED)
        self.assertEqual(done.fiscalization_status, FISCALIZATION_FAILED)
        self.assertIn("unreachable", done.fiscal_error)

    def test_fiscalization_skipped_when_not_required(self) -> None:
        entry = self._queue_invoice("INV-NF")
        self.processor.run_cycle()
        self.assertEqual(self.fiscal.calls, [])
        self.assertEqual(self.queue.require(entry.id).fiscalization_status, "not_required")

    def test_retry_fiscalization_rejects_unposted_entries(self) -> None:
        entry = self._queue_invoice("INV-NP", requires_fiscalization=True)
        with self.assertRaises(ConflictError):
            self.processor.retry_fiscalization(entry.id)


class QueueProcessorResilienceTest(QueueProcessorTestBase):
    def test_overlapping_cycle_is_skipped(self) -> None:
        self._queue_invoice("INV-SF")
        self.posting.block = threading.Event()
        results = []
        worker = threading.Thread(target=lambda: results.append(self.processor.run_cycle()))
        worker.start()
        try:
            self.assertTrue(self.posting.entered.wait(5))
            self.assertTrue(self.processor.is_running)

            overlapping = self.processor.run_cycle()

            self.assertEqual(overlapping.status, CYCLE_STATUS_SKIPPED)
            self.assertEqual(overlapping.fetched, 0)
        finally:
            self.posting.block.set()
            worker.join(5)

        self.assertEqual(results[0].count(ENTRY_OUTCOME_COMPLETED), 1)
        self.assertEqual(self.posting.calls, ["INV-SF"])
        self.assertFalse(self.processor.is_running)

    def test_consecutive_cycle_failures_trigger_cooldown(self) -> None:
        processor = self._build_processor(max_consecutive_errors=3, cooldown_seconds=60)
        with patch.object(self.queue, "fetch_eligible_batch", side_effect=RuntimeError("db gone")):
            for expected in (1, 2):
                self.assertEqual(processor.run_cycle().status, CYCLE_STATUS_FAILED)
                self.assertEqual(processor.consecutive_errors, expected)
                self.assertEqual(processor.next_delay(10), 10)
            processor.run_cycle()

        self.assertTrue(processor.cooldown_pending)
        self.assertEqual(processor.consecutive_errors, 0)
        self.assertEqual(processor.next_delay(10), 70)
        self.assertEqual(processor.next_delay(10), 10)
        self.assertEqual(metrics_snapshot()["invoice_queue"]["cooldowns_total"], 1)

    def test_successful_cycle_resets_error_counter(self) -> None:
        with patch.object(self.queue, "fetch_eligible_batch", side_effect=RuntimeError("db gone")):
            self.processor.run_cycle()
            self.processor.run_cycle()
        self.assertEqual(self.processor.consecutive_errors, 2)

        self.processor.run_cycle()
        self.assertEqual(self.processor.consecutive_errors, 0)

    def test_interrupted_entry_resumes_without_reposting(self) -> None:
        entry = self._queue_invoice("INV-CRASH")
        self.assertTrue(self.queue.mark_processing(entry.id))
        self.queue.record_external_document(entry.id, "777", "N-777")
        StockGuard(self.stock, clock=self.clock).commit(
            "ITEM-1", "WH-01", Decimal("-2"), reason=invoice_movement_reason("INV-CRASH", 1)
        )
        self.clock.advance(16 * 60)

        result = self.processor.run_cycle()

        self.assertEqual(result.recovered, 1)
        self.assertEqual(result.count(ENTRY_OUTCOME_COMPLETED), 1)
        self.assertEqual(self.posting.calls, [])
        done = self.queue.require(entry.id)
        self.assertEqual((done.status, done.external_doc_id, done.retry_count), (QUEUE_STATUS_COMPLETED, "777", 0))
        self.assertEqual(self.stock.get_record("ITEM-1", "WH-01").quantity_on_stock, Decimal("98"))
        reasons = [event["reason"] for event in self.queue.list_status_events(entry.id)]
        self.assertEqual(reasons, ["enqueued", "claimed", "stale_recovered", "claimed", "posted"])

    def test_resume_commits_remaining_lines_of_the_same_item(self) -> None:
        lines = [
            {"item_code": "ITEM-1", "warehouse_code": "WH-01", "quantity": "3", "unit_price": "1"},
            {"item_code": "ITEM-1", "warehouse_code": "WH-01", "quantity": "4", "unit_price": "1"},
        ]
        entry = self._queue_invoice("INV-SPLIT", lines=lines)
        self.assertTrue(self.queue.mark_processing(entry.id))
        self.queue.record_external_document(entry.id, "778", "N-778")
        StockGuard(self.stock, clock=self.clock).commit(
            "ITEM-1", "WH-01", Decimal("-3"), reason=invoice_movement_reason("INV-SPLIT", 1)
        )
        self.clock.advance(16 * 60)

        self.processor.run_cycle()

        self.assertEqual(self.queue.require(entry.id).status, QUEUE_STATUS_COMPLETED)
        self.assertEqual(self.posting.calls, [])
        self.assertEqual(self.stock.get_record("ITEM-1", "WH-01").quantity_on_stock, Decimal("93"))
        reasons = sorted(movement["reason"] for movement in self.stock.list_movements("ITEM-1", "WH-01"))
        self.assertEqual(reasons, ["invoice:INV-SPLIT:1", "invoice:INV-SPLIT:2"])


if __name__ == "__main__":
    unittest.main()
