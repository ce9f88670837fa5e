from __future__ import annotations

from flask import Flask, current_app

from marketplace.payments.circuit_breaker import get_payment_circuit_breaker
from marketplace.payments.gateway import PaymentGateway, PaymentGatewayError
from marketplace.payments.http_gateway import HttpPaymentGateway
from marketplace.payments.mock_gateway import MockPaymentGateway


_EXTENSION_KEY = "payment_gateway"


def build_payment_gateway(app: Flask) -> PaymentGateway:
    mode = str(app.config.get("PAYMENT_GATEWAY_MODE") or "mock").strip().lower()
    if mode == "mock":
        return MockPaymentGateway()
    if mode != "http":
        raise PaymentGatewayError(f"Invalid PAYMENT_GATEWAY_MODE: {mode}", code="gateway_not_configured")

    breaker = get_payment_circuit_breaker()
    breaker.configure(
        enabled=bool(app.config.get("PAYMENT_CIRCUIT_ENABLED", True)),
        error_rate_threshold=float(app.config.get("PAYMENT_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6) or 0.6),
        min_samples=int(app.config.get("PAYMENT_CIRCUIT_MIN_SAMPLES", 5) or 5),
        window_seconds=int(app.config.get("PAYMENT_CIRCUIT_WINDOW_SECONDS", 120) or 120),
        open_seconds=int(app.config.get("PAYMENT_CIRCUIT_OPEN_SECONDS", 30) or 30),
    )
    return HttpPaymentGateway(
        base_url=str(app.config.get("PAYMENT_GATEWAY_BASE_URL") or ""),
        api_key=app.config.get("PAYMENT_GATEWAY_API_KEY"),
        timeout_seconds=int(app.config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 20) or 20),
        retry_attempts=int(app.config.get("PAYMENT_GATEWAY_RETRY_ATTEMPTS", 2) or 2),
        retry_backoff_ms=int(app.config.get("PAYMENT_GATEWAY_RETRY_BACKOFF_MS", 300) or 0),
        circuit_breaker=breaker,
    )


def get_payment_gateway() -> PaymentGateway:
    app = current_app._get_current_object()
    gateway = app.extensions.get(_EXTENSION_KEY)
    if gateway is None:
        gateway = build_payment_gateway(app)
        app.extensions[_EXTENSION_KEY] = gateway
    return gateway
