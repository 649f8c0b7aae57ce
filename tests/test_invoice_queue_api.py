from __future__ import annotations

import unittest
from decimal import Decimal

from invoice_sync import create_app
from invoice_sync.config import Config
from invoice_sync.contexts.erp.domain.gateway import NetworkError
from invoice_sync.contexts.inventory.infrastructure.stock_repository import StockRepository
from invoice_sync.contexts.invoicing.application.queue_processor import build_queue_processor
from invoice_sync.core.clock import ManualClock
from invoice_sync.db import close_db, get_db
from invoice_sync.observability import reset_metrics_for_tests
from invoice_sync.ui_strings import error_message
from tests.helpers.fakes import (
    FakeStockSource,
    ScriptedFiscalGateway,
    ScriptedPostingGateway,
    fake_gateways,
    invoice_payload,
)
from tests.helpers.temp_db import TempDbSandbox


class InvoiceQueueApiTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="invoice_queue_api")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True, PROPAGATE_EXCEPTIONS=False))
        self.clock = ManualClock()
        self.posting = ScriptedPostingGateway()
        self.fiscal = ScriptedFiscalGateway(success=False)
        self.source = FakeStockSource({("ITEM-1", "WH-01"): Decimal("7")})
        self.gateways = fake_gateways(self.posting, self.fiscal, self.source)
        self.app.extensions["invoice_sync.clock"] = self.clock
        self.app.extensions["invoice_sync.erp_gateways"] = self.gateways
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _run_cycle(self):
        with self.app.app_context():
            processor = build_queue_processor(get_db(), self.app.config, gateways=self.gateways, clock=self.clock)
            return processor.run_cycle()

    def test_enqueue_returns_created_then_existing(self) -> None:
        response = self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-1"))
        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertTrue(body["created"])
        self.assertEqual(body["entry"]["status"], "pending")
        self.assertEqual(body["entry"]["total_amount"], "21")
        self.assertTrue(response.headers.get("X-Request-Id"))

        again = self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-1", quantity="3"))
        self.assertEqual(again.status_code, 200)
        self.assertFalse(again.get_json()["created"])
        self.assertEqual(again.get_json()["entry"]["id"], body["entry"]["id"])

    def test_enqueue_rejects_insufficient_stock(self) -> None:
        response = self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-2", quantity="10"))

        self.assertEqual(response.status_code, 409)
        body = response.get_json()
        self.assertEqual(body["error"], "insufficient_stock")
        self.assertEqual(body["message"], error_message("insufficient_stock"))
        errors = body["validation"]["errors"]
        self.assertEqual(len(errors), 1)
        self.assertEqual((errors[0]["requested_quantity"], errors[0]["available_quantity"]), ("10", "7"))

        missing = self.client.get("/api/invoice-queue/INV-API-2")
        self.assertEqual(missing.status_code, 404)

    def test_reserved_stock_is_not_offered_to_a_second_invoice(self) -> None:
        self.source.stock[("ITEM-1", "WH-01")] = Decimal("10")

        first = self.client.post("/api/invoice-queue", json=invoice_payload("INV-HOLD-1", quantity="7"))
        self.assertEqual(first.status_code, 201)

        second = self.client.post("/api/invoice-queue", json=invoice_payload("INV-HOLD-2", quantity="7"))
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.get_json()["error"], "insufficient_stock")
        self.assertEqual(second.get_json()["validation"]["errors"][0]["available_quantity"], "3")

        self._run_cycle()

        with self.app.app_context():
            record = StockRepository(get_db(), clock=self.clock).get_record("ITEM-1", "WH-01")
        self.assertEqual(record.quantity_on_stock, Decimal("3"))
        check = self.client.post(
            "/api/invoice-queue/stock/validate",
            json={"lines": [{"item_code": "ITEM-1", "warehouse_code": "WH-01", "quantity": "3"}]},
        )
        self.assertTrue(check.get_json()["is_valid"])

    def test_enqueue_rejects_non_finite_quantity(self) -> None:
        for raw in ("NaN", "Infinity", "-Infinity"):
            response = self.client.post("/api/invoice-queue", json=invoice_payload(f"INV-NF-{raw}", quantity=raw))
            self.assertEqual(response.status_code, 400, raw)
            self.assertEqual(response.get_json()["error"], "quantity_invalid")

        check = self.client.post(
            "/api/invoice-queue/stock/validate",
            json={"lines": [{"item_code": "ITEM-1", "warehouse_code": "WH-01", "quantity": "NaN"}]},
        )
        self.assertEqual(check.status_code, 200)
        self.assertEqual(check.get_json()["errors"][0]["reason"], "quantity_invalid")

    def test_enqueue_rejects_duplicate_line_numbers(self) -> None:
        line = {"line_num": 1, "item_code": "ITEM-1", "warehouse_code": "WH-01", "quantity": "1"}
        response = self.client.post("/api/invoice-queue", json=invoice_payload("INV-DUP", lines=[line, dict(line)]))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "line_number_duplicate")

    def test_enqueue_validates_payload(self) -> None:
        response = self.client.post("/api/invoice-queue", json={"external_reference": "INV-API-3", "lines": []})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "customer_code_required")

        response = self.client.post("/api/invoice-queue", data="not json", content_type="text/plain")
        self.assertEqual(response.status_code, 400)

    def test_entry_detail_review_and_fiscal_retry(self) -> None:
        self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-4", requires_fiscalization=True))
        self._run_cycle()

        detail = self.client.get("/api/invoice-queue/INV-API-4").get_json()
        self.assertEqual(detail["entry"]["status"], "completed")
        self.assertEqual(detail["entry"]["fiscalization_status"], "failed")
        self.assertEqual([event["to_status"] for event in detail["events"]], ["pending", "processing", "completed"])

        self.fiscal.success = True
        fiscal = self.client.post("/api/invoice-queue/INV-API-4/fiscalize")
        self.assertEqual(fiscal.status_code, 200)
        self.assertEqual(fiscal.get_json()["entry"]["fiscalization_status"], "succeeded")

    def test_retry_now_for_failed_entry(self) -> None:
        self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-5"))
        self.posting.fail("INV-API-5", NetworkError("down"))
        self._run_cycle()

        conflict = self.client.post("/api/invoice-queue/INV-API-404/retry-now")
        self.assertEqual(conflict.status_code, 404)

        response = self.client.post("/api/invoice-queue/INV-API-5/retry-now")
        self.assertEqual(response.status_code, 200)
        entry = response.get_json()["entry"]
        self.assertEqual(entry["status"], "failed")
        self.assertEqual(entry["retry_count"], 1)

        self._run_cycle()
        self.assertEqual(self.client.get("/api/invoice-queue/INV-API-5").get_json()["entry"]["status"], "completed")

    def test_review_list_and_stats(self) -> None:
        self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-6"))
        self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-7"))
        self.posting.fail("INV-API-6", KeyError("mapping"), KeyError("mapping"), KeyError("mapping"))
        self.app.config["QUEUE_BACKOFF_SECONDS"] = 0
        for _ in range(3):
            self._run_cycle()

        review = self.client.get("/api/invoice-queue/review").get_json()
        self.assertEqual([item["external_reference"] for item in review["items"]], ["INV-API-6"])

        stats = self.client.get("/api/invoice-queue/stats").get_json()
        self.assertEqual(stats["by_status"]["requires_review"], 1)
        self.assertEqual(stats["by_status"]["completed"], 1)

    def test_stock_validate_endpoint(self) -> None:
        response = self.client.post(
            "/api/invoice-queue/stock/validate",
            json={"lines": [{"item_code": "ITEM-1", "warehouse_code": "WH-01", "quantity": "10"}]},
        )
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertFalse(body["is_valid"])
        self.assertEqual(len(body["errors"]), 1)

        with self.app.app_context():
            record = StockRepository(get_db(), clock=self.clock).get_record("ITEM-1", "WH-01")
        self.assertEqual(record.quantity_on_stock, Decimal("7"))

    def test_health_and_metrics(self) -> None:
        self.client.post("/api/invoice-queue", json=invoice_payload("INV-API-8"))

        health = self.client.get("/health")
        self.assertEqual(health.status_code, 200)
        payload = health.get_json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["queue"]["by_status"]["pending"], 1)

        metrics = self.client.get("/metrics")
        self.assertEqual(metrics.status_code, 200)
        text = metrics.get_data(as_text=True)
        self.assertIn('invoice_queue_size{status="pending"} 1', text)
        self.assertIn("http_request_total", text)


if __name__ == "__main__":
    unittest.main()
