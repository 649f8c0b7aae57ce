import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from invoice_sync.config import Config
from invoice_sync.db import close_db, init_db
from invoice_sync.db_migrations import register_db_cli
from invoice_sync.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("db_auto_init_ignored", extra={"flask_env": flask_env})
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from invoice_sync.contexts.invoicing.interfaces.http import invoice_queue_bp

    app.register_blueprint(invoice_queue_bp)


def _register_scheduler(app: Flask) -> None:
    from invoice_sync.scheduler import start_queue_scheduler

    start_queue_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from invoice_sync.contexts.erp.domain.gateway import ErpGatewayError, TransientGatewayError
    from invoice_sync.errors import AppError, IntegrationError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(ErpGatewayError)
    def _handle_erp_error(exc: ErpGatewayError):
        request_id = ensure_request_id()
        if isinstance(exc, TransientGatewayError):
            message_key, http_status = "erp_temporarily_unavailable", 503
        else:
            message_key, http_status = "erp_rejected", 422
        mapped = IntegrationError(
            code=exc.code,
            message_key=message_key,
            http_status=http_status,
            critical=False,
            details=str(exc),
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _queue_stats() -> dict:
    from invoice_sync.contexts.invoicing.infrastructure.queue_repository import QueueRepository
    from invoice_sync.db import get_db

    return QueueRepository(get_db()).stats()


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        scheduler = app.extensions.get("invoice_queue_scheduler")
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "metrics": {
                "http": metrics_snapshot(),
            },
            "worker": {
                "enabled": scheduler is not None,
                "cooling_down": bool(scheduler and scheduler.processor.cooldown_pending),
            },
        }
        try:
            payload["queue"] = _queue_stats()
        except Exception:
            app.logger.warning("health_queue_stats_unavailable", exc_info=True)
            payload["status"] = "degraded"
            payload["queue"] = {"total": 0, "by_status": {}}
        return payload, 200

    @app.route("/metrics")
    def metrics():
        try:
            queue_state = _queue_stats()
        except Exception:
            app.logger.warning("metrics_queue_stats_unavailable", exc_info=True)
            queue_state = None
        return Response(prometheus_metrics_text(queue_state=queue_state), mimetype="text/plain")
