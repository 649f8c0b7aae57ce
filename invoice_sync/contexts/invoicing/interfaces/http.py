from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from invoice_sync.contexts.erp.interfaces.workers.runtime import build_erp_gateways
from invoice_sync.contexts.inventory.application.stock_guard import StockGuard
from invoice_sync.contexts.inventory.domain.stock import stock_lines_from_payload
from invoice_sync.contexts.inventory.infrastructure.stock_repository import StockRepository
from invoice_sync.contexts.invoicing.application.enqueue_service import InvoiceEnqueueService
from invoice_sync.contexts.invoicing.application.queue_processor import build_queue_processor
from invoice_sync.contexts.invoicing.domain.queue import QueueEntry
from invoice_sync.contexts.invoicing.infrastructure.queue_repository import QueueRepository
from invoice_sync.contexts.invoicing.infrastructure.reservation_repository import ReservationRepository
from invoice_sync.core.clock import SystemClock
from invoice_sync.db import get_db
from invoice_sync.errors import NotFoundError, ValidationError
from invoice_sync.observability import current_request_id
from invoice_sync.ui_strings import success_message


invoice_queue_bp = Blueprint("invoice_queue", __name__, url_prefix="/api/invoice-queue")


def _clock():
    return current_app.extensions.get("invoice_sync.clock") or SystemClock()


def _gateways():
    return current_app.extensions.get("invoice_sync.erp_gateways") or build_erp_gateways()


def _queue_repository() -> QueueRepository:
    return QueueRepository(
        get_db(),
        clock=_clock(),
        default_max_retries=int(current_app.config.get("QUEUE_MAX_RETRIES", 3)),
    )


def _reservations() -> ReservationRepository:
    return ReservationRepository(
        get_db(), clock=_clock(), ttl_seconds=int(current_app.config.get("RESERVATION_TTL_SECONDS", 1800))
    )


def _stock_guard(reservations: ReservationRepository | None = None) -> StockGuard:
    clock = _clock()
    return StockGuard(
        StockRepository(get_db(), clock=clock),
        _gateways().stock,
        reservations=reservations or _reservations(),
        clock=clock,
        freshness_seconds=int(current_app.config.get("STOCK_FRESHNESS_SECONDS", 300)),
    )


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError(code="validation_error", message_key="action_invalid", details="JSON object expected.")
    return payload


def _limit_arg(default: int = 100) -> int:
    raw = request.args.get("limit")
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        value = default
    return max(1, min(500, value))


def _require_entry(queue: QueueRepository, external_reference: str) -> QueueEntry:
    entry = queue.get_by_external_reference(external_reference)
    if entry is None:
        raise NotFoundError(code="queue_entry_not_found", message_key="queue_entry_not_found")
    return entry


@invoice_queue_bp.route("", methods=["POST"])
def enqueue_invoice():
    reservations = _reservations()
    service = InvoiceEnqueueService(
        queue=_queue_repository(),
        reservations=reservations,
        stock_guard=_stock_guard(reservations),
        max_retries=int(current_app.config.get("QUEUE_MAX_RETRIES", 3)),
    )
    result = service.enqueue(_json_body(), request_id=current_request_id())
    message_key = "invoice_queued" if result.created else "invoice_already_queued"
    body = {
        "message": success_message(message_key),
        "created": result.created,
        "entry": result.entry.to_dict(),
        "warnings": result.warnings,
    }
    return jsonify(body), 201 if result.created else 200


@invoice_queue_bp.route("/review", methods=["GET"])
def list_review():
    entries = _queue_repository().list_requiring_review(limit=_limit_arg())
    return jsonify({"items": [entry.to_dict() for entry in entries], "count": len(entries)})


@invoice_queue_bp.route("/stats", methods=["GET"])
def queue_stats():
    return jsonify(_queue_repository().stats())


@invoice_queue_bp.route("/<external_reference>", methods=["GET"])
def get_entry(external_reference: str):
    queue = _queue_repository()
    entry = _require_entry(queue, external_reference)
    return jsonify({"entry": entry.to_dict(), "events": queue.list_status_events(entry.id)})


@invoice_queue_bp.route("/<external_reference>/retry-now", methods=["POST"])
def retry_now(external_reference: str):
    queue = _queue_repository()
    entry = _require_entry(queue, external_reference)
    updated = queue.retry_now(entry.id)
    return jsonify({"message": success_message("retry_scheduled"), "entry": updated.to_dict()})


@invoice_queue_bp.route("/<external_reference>/fiscalize", methods=["POST"])
def fiscalize(external_reference: str):
    queue = _queue_repository()
    entry = _require_entry(queue, external_reference)
    processor = build_queue_processor(get_db(), current_app.config, gateways=_gateways(), clock=_clock())
    updated = processor.retry_fiscalization(entry.id)
    body = {"entry": updated.to_dict()}
    if updated.fiscalization_status == "succeeded":
        body["message"] = success_message("fiscalization_succeeded")
    return jsonify(body)


@invoice_queue_bp.route("/stock/validate", methods=["POST"])
def validate_stock():
    payload = _json_body()
    lines = stock_lines_from_payload(payload.get("lines"))
    if not lines:
        raise ValidationError(code="lines_required", message_key="lines_required")
    result = _stock_guard().validate(lines)
    body = result.to_dict()
    if result.is_valid:
        body["message"] = success_message("stock_valid")
    return jsonify(body)
