from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_QUEUE_PROCESSING_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_QUEUE_BACKOFF_BUCKETS_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id and request_id != "n/a":
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


def _label(value: str | None) -> str:
    return str(value or "unknown").strip().lower() or "unknown"


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        self._requests_total = 0
        self._errors_total = 0
        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._queue_entries_total: Dict[str, int] = {}
        self._queue_cycles_total: Dict[str, int] = {}
        self._queue_cooldowns_total = 0
        self._queue_stale_recovered_total = 0
        self._queue_processing_time = self._new_histogram_state(_QUEUE_PROCESSING_BUCKETS_MS)
        self._queue_retry_backoff_seconds = self._new_histogram_state(_QUEUE_BACKOFF_BUCKETS_SECONDS)

        self._fiscalization_total: Dict[str, int] = {}
        self._stock_commit_total: Dict[str, int] = {}
        self._stock_validation_total: Dict[str, int] = {}
        self._stock_remote_fallback_total = 0
        self._reservations_expired_total = 0
        self._erp_simulator_result_total: Dict[tuple[str, str], int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _bump(counter: dict, key, increment: int = 1) -> None:
        counter[key] = int(counter.get(key, 0)) + increment

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._bump(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_queue_entry(self, outcome: str, duration_ms: float | None = None) -> None:
        with self._lock:
            self._bump(self._queue_entries_total, _label(outcome))
            if duration_ms is not None:
                self._observe_histogram(self._queue_processing_time, duration_ms, _QUEUE_PROCESSING_BUCKETS_MS)

    def observe_queue_retry_backoff(self, backoff_seconds: float) -> None:
        with self._lock:
            self._observe_histogram(
                self._queue_retry_backoff_seconds, float(backoff_seconds), _QUEUE_BACKOFF_BUCKETS_SECONDS
            )

    def observe_queue_cycle(self, status: str) -> None:
        with self._lock:
            self._bump(self._queue_cycles_total, _label(status))

    def observe_queue_cooldown(self) -> None:
        with self._lock:
            self._queue_cooldowns_total += 1

    def observe_queue_stale_recovered(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._queue_stale_recovered_total += increment

    def observe_fiscalization(self, result: str) -> None:
        with self._lock:
            self._bump(self._fiscalization_total, _label(result))

    def observe_stock_commit(self, result: str) -> None:
        with self._lock:
            self._bump(self._stock_commit_total, _label(result))

    def observe_stock_validation(self, result: str) -> None:
        with self._lock:
            self._bump(self._stock_validation_total, _label(result))

    def observe_stock_remote_fallback(self) -> None:
        with self._lock:
            self._stock_remote_fallback_total += 1

    def observe_reservations_expired(self, count: int) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._reservations_expired_total += increment

    def observe_erp_simulator_result(self, operation: str, result: str) -> None:
        with self._lock:
            self._bump(self._erp_simulator_result_total, (_label(operation), _label(result)))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "invoice_queue": {
                    "entries": dict(sorted(self._queue_entries_total.items())),
                    "cycles": dict(sorted(self._queue_cycles_total.items())),
                    "cooldowns_total": int(self._queue_cooldowns_total),
                    "stale_recovered_total": int(self._queue_stale_recovered_total),
                    "processing_count": int(self._queue_processing_time["count"]),
                    "retry_backoff_count": int(self._queue_retry_backoff_seconds["count"]),
                },
                "fiscalization": dict(sorted(self._fiscalization_total.items())),
                "stock": {
                    "commits": dict(sorted(self._stock_commit_total.items())),
                    "validations": dict(sorted(self._stock_validation_total.items())),
                    "remote_fallback_total": int(self._stock_remote_fallback_total),
                    "reservations_expired_total": int(self._reservations_expired_total),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route} | _copy_histogram(state)
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "invoice_queue_entries_total": dict(self._queue_entries_total),
                "invoice_queue_cycles_total": dict(self._queue_cycles_total),
                "invoice_queue_cooldowns_total": int(self._queue_cooldowns_total),
                "invoice_queue_stale_recovered_total": int(self._queue_stale_recovered_total),
                "invoice_queue_processing_time_ms": _copy_histogram(self._queue_processing_time),
                "invoice_queue_retry_backoff_seconds": _copy_histogram(self._queue_retry_backoff_seconds),
                "invoice_fiscalization_total": dict(self._fiscalization_total),
                "stock_commit_total": dict(self._stock_commit_total),
                "stock_validation_total": dict(self._stock_validation_total),
                "stock_remote_fallback_total": int(self._stock_remote_fallback_total),
                "stock_reservations_expired_total": int(self._reservations_expired_total),
                "erp_simulator_result_total": [
                    {"operation": operation, "result": result, "value": value}
                    for (operation, result), value in sorted(self._erp_simulator_result_total.items())
                ],
            }


def _copy_histogram(state: dict) -> dict:
    return {"count": int(state["count"]), "sum": float(state["sum"]), "buckets": dict(state["buckets"])}


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_queue_entry(outcome: str, duration_ms: float | None = None) -> None:
    _METRICS.observe_queue_entry(outcome, duration_ms)


def observe_queue_retry_backoff(backoff_seconds: float) -> None:
    _METRICS.observe_queue_retry_backoff(backoff_seconds)


def observe_queue_cycle(status: str) -> None:
    _METRICS.observe_queue_cycle(status)


def observe_queue_cooldown() -> None:
    _METRICS.observe_queue_cooldown()


def observe_queue_stale_recovered(count: int = 1) -> None:
    _METRICS.observe_queue_stale_recovered(count)


def observe_fiscalization(result: str) -> None:
    _METRICS.observe_fiscalization(result)


def observe_stock_commit(result: str) -> None:
    _METRICS.observe_stock_commit(result)


def observe_stock_validation(result: str) -> None:
    _METRICS.observe_stock_validation(result)


def observe_stock_remote_fallback() -> None:
    _METRICS.observe_stock_remote_fallback()


def observe_reservations_expired(count: int) -> None:
    _METRICS.observe_reservations_expired(count)


def observe_erp_simulator_result(operation: str, result: str) -> None:
    _METRICS.observe_erp_simulator_result(operation, result)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def _prom_counter_by_label(lines: list[str], name: str, help_text: str, label: str, values: dict) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} counter")
    for key, value in sorted(values.items()):
        lines.append(_prom_line(name, int(value), labels={label: key}))


def prometheus_metrics_text(*, queue_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    by_status = dict((queue_state or {}).get("by_status") or {}) if isinstance(queue_state, dict) else {}
    lines.append("# HELP invoice_queue_size Invoice queue entries by status.")
    lines.append("# TYPE invoice_queue_size gauge")
    for status in ("pending", "processing", "completed", "failed", "requires_review"):
        lines.append(_prom_line("invoice_queue_size", int(by_status.get(status) or 0), labels={"status": status}))

    _prom_counter_by_label(
        lines,
        "invoice_queue_entries_total",
        "Invoice queue entries processed by outcome.",
        "outcome",
        snapshot["invoice_queue_entries_total"],
    )
    _prom_counter_by_label(
        lines,
        "invoice_queue_cycles_total",
        "Invoice queue processing cycles by status.",
        "status",
        snapshot["invoice_queue_cycles_total"],
    )

    lines.append("# HELP invoice_queue_cooldowns_total Cooldowns triggered by consecutive cycle failures.")
    lines.append("# TYPE invoice_queue_cooldowns_total counter")
    lines.append(_prom_line("invoice_queue_cooldowns_total", int(snapshot["invoice_queue_cooldowns_total"])))

    lines.append("# HELP invoice_queue_stale_recovered_total Entries recovered from a stale processing state.")
    lines.append("# TYPE invoice_queue_stale_recovered_total counter")
    lines.append(
        _prom_line("invoice_queue_stale_recovered_total", int(snapshot["invoice_queue_stale_recovered_total"]))
    )

    lines.append("# HELP invoice_queue_processing_time_ms Invoice queue entry processing time in milliseconds.")
    lines.append("# TYPE invoice_queue_processing_time_ms histogram")
    _prom_histogram(lines, "invoice_queue_processing_time_ms", snapshot["invoice_queue_processing_time_ms"])

    lines.append("# HELP invoice_queue_retry_backoff_seconds Backoff scheduled for retried entries.")
    lines.append("# TYPE invoice_queue_retry_backoff_seconds histogram")
    _prom_histogram(lines, "invoice_queue_retry_backoff_seconds", snapshot["invoice_queue_retry_backoff_seconds"])

    _prom_counter_by_label(
        lines,
        "invoice_fiscalization_total",
        "Fiscalization attempts by result.",
        "result",
        snapshot["invoice_fiscalization_total"],
    )
    _prom_counter_by_label(
        lines,
        "stock_commit_total",
        "Local stock commits by result.",
        "result",
        snapshot["stock_commit_total"],
    )
    _prom_counter_by_label(
        lines,
        "stock_validation_total",
        "Stock validations by result.",
        "result",
        snapshot["stock_validation_total"],
    )

    lines.append("# HELP stock_remote_fallback_total Stock lookups served from a stale cache after a remote failure.")
    lines.append("# TYPE stock_remote_fallback_total counter")
    lines.append(_prom_line("stock_remote_fallback_total", int(snapshot["stock_remote_fallback_total"])))

    lines.append("# HELP stock_reservations_expired_total Reservations expired by the sweep.")
    lines.append("# TYPE stock_reservations_expired_total counter")
    lines.append(_prom_line("stock_reservations_expired_total", int(snapshot["stock_reservations_expired_total"])))

    lines.append("# HELP erp_simulator_result_total Deterministic ERP simulator outcomes.")
    lines.append("# TYPE erp_simulator_result_total counter")
    for sample in snapshot["erp_simulator_result_total"]:
        lines.append(
            _prom_line(
                "erp_simulator_result_total",
                int(sample["value"]),
                labels={"operation": sample["operation"], "result": sample["result"]},
            )
        )

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    with _METRICS._lock:
        _METRICS.reset()
    set_log_request_id(None)
