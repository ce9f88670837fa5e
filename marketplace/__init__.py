import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from marketplace.config import Config
from marketplace.db import close_db, init_db
from marketplace.db_migrations import register_db_cli
from marketplace.observability import (
    configure_json_logging,
    ensure_request_id,
    expiry_health,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)
from marketplace.security import apply_security_headers, enforce_rate_limit


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_security(app)
    _register_tenant(app)
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
        # Tests build their own throwaway schema without running migrations.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from marketplace.routes.cart_routes import cart_bp
    from marketplace.routes.order_routes import order_bp
    from marketplace.routes.payment_routes import payment_bp
    from marketplace.routes.quotation_routes import quotation_bp

    app.register_blueprint(cart_bp)
    app.register_blueprint(quotation_bp)
    app.register_blueprint(order_bp)
    app.register_blueprint(payment_bp)


def _register_scheduler(app: Flask) -> None:
    from marketplace.scheduler import start_expiry_scheduler

    start_expiry_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from marketplace.application.order_service import gateway_integration_error
    from marketplace.errors import AppError, SystemError
    from marketplace.payments.gateway import PaymentGatewayError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        response = observe_response(response)
        return apply_security_headers(response)

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

    @app.errorhandler(PaymentGatewayError)
    def _handle_gateway_error(exc: PaymentGatewayError):
        request_id = ensure_request_id()
        mapped = gateway_integration_error(exc)
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


def _register_security(app: Flask) -> None:
    @app.before_request
    def _rate_limit_guard():
        return enforce_rate_limit()


def _register_tenant(app: Flask) -> None:
    from marketplace.tenant import load_request_tenant

    app.before_request(load_request_tenant)


def _register_health(app: Flask) -> None:
    def _scheduler_state() -> dict:
        scheduler = app.extensions.get("expiry_scheduler")
        if scheduler is None:
            return {"running": False}
        return scheduler.snapshot()

    @app.route("/health")
    def health():
        from marketplace.db import get_db
        from marketplace.infrastructure.repositories.base import utc_now_iso
        from marketplace.payments.circuit_breaker import payment_circuit_snapshot

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "payment_gateway": {
                "mode": app.config.get("PAYMENT_GATEWAY_MODE", "mock"),
                "circuit": payment_circuit_snapshot(),
            },
            "metrics": {
                "http": metrics_snapshot(),
            },
            "scheduler": _scheduler_state(),
        }
        try:
            payload["expiry"] = expiry_health(get_db(), now_iso=utc_now_iso())
        except Exception:
            payload["status"] = "degraded"
            payload["expiry"] = {"overdue_quotations": 0, "open_quotations": 0, "backlog": False}
        return payload, 200

    @app.route("/api/ui-strings")
    def ui_strings():
        from marketplace.ui_strings import frontend_bundle

        return jsonify(frontend_bundle())

    @app.route("/metrics")
    def metrics():
        from marketplace.db import get_db
        from marketplace.infrastructure.repositories.base import utc_now_iso
        from marketplace.payments.circuit_breaker import payment_circuit_snapshot

        try:
            expiry_state = expiry_health(get_db(), now_iso=utc_now_iso())
        except Exception:
            expiry_state = None
        body = prometheus_metrics_text(expiry_state=expiry_state, circuit_state=payment_circuit_snapshot())
        return body, 200, {"Content-Type": "text/plain; version=0.0.4; charset=utf-8"}
