from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from decimal import Decimal
from typing import Any, Dict

from marketplace.observability import observe_gateway_call
from marketplace.payments.circuit_breaker import PaymentCircuitBreaker, get_payment_circuit_breaker
from marketplace.payments.gateway import CheckoutSession, PaymentGateway, PaymentGatewayError, SessionVerification
from marketplace.workflow.money import to_money


logger = logging.getLogger(__name__)

_PAID_SESSION_STATES = {"paid", "complete", "succeeded"}


def _to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def _from_minor_units(value: Any) -> Decimal:
    try:
        return to_money(Decimal(int(value)) / 100)
    except (TypeError, ValueError):
        return to_money(0)


class HttpPaymentGateway(PaymentGateway):
    """Hosted-checkout gateway speaking the Stripe REST dialect (form-encoded requests, JSON responses)."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout_seconds: int = 20,
        retry_attempts: int = 2,
        retry_backoff_ms: int = 300,
        circuit_breaker: PaymentCircuitBreaker | None = None,
    ) -> None:
        if not base_url:
            raise PaymentGatewayError("PAYMENT_GATEWAY_BASE_URL is not configured.", code="gateway_not_configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_backoff_ms = max(0, int(retry_backoff_ms))
        self.circuit_breaker = circuit_breaker or get_payment_circuit_breaker()

    def create_checkout_session(
        self,
        *,
        order_id: str,
        order_number: str | None,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        form = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": order_id,
            "metadata[order_id]": order_id,
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": currency,
            "line_items[0][price_data][unit_amount]": str(_to_minor_units(amount)),
            "line_items[0][price_data][product_data][name]": f"Order {order_number or order_id}",
        }
        payload = self._request(
            "POST",
            "/checkout/sessions",
            form=form,
            idempotency_key=f"checkout-{order_id}-{_to_minor_units(amount)}",
        )
        session_id = str(payload.get("id") or "").strip()
        if not session_id:
            raise PaymentGatewayError("Gateway did not return a session id.", code="invalid_response")
        return CheckoutSession(
            session_id=session_id,
            url=payload.get("url"),
            amount=to_money(amount),
            currency=currency,
        )

    def verify_session(self, session_id: str) -> SessionVerification:
        quoted = urllib.parse.quote(session_id, safe="")
        payload = self._request("GET", f"/checkout/sessions/{quoted}")
        payment_status = str(payload.get("payment_status") or "").lower()
        status = str(payload.get("status") or "").lower()
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        return SessionVerification(
            session_id=str(payload.get("id") or session_id),
            paid=payment_status == "paid" or status == "complete",
            status=payment_status or status or "unknown",
            amount=_from_minor_units(payload.get("amount_total")),
            currency=payload.get("currency"),
            payment_intent_id=payload.get("payment_intent") if isinstance(payload.get("payment_intent"), str) else None,
            order_id=metadata.get("order_id") or payload.get("client_reference_id"),
            raw=payload,
        )

    def verify_transaction(self, transaction_ref: str, *, method: str) -> SessionVerification:
        quoted = urllib.parse.quote(transaction_ref, safe="")
        payload = self._request("GET", f"/payment_intents/{quoted}")
        status = str(payload.get("status") or "").lower()
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        return SessionVerification(
            session_id=str(payload.get("id") or transaction_ref),
            paid=status in _PAID_SESSION_STATES,
            status=status or "unknown",
            amount=_from_minor_units(payload.get("amount_received") or payload.get("amount")),
            currency=payload.get("currency"),
            payment_intent_id=str(payload.get("id") or transaction_ref),
            order_id=metadata.get("order_id"),
            raw=payload,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        form: Dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        may_call, circuit_state = self.circuit_breaker.before_call()
        if not may_call:
            observe_gateway_call("circuit_open")
            raise PaymentGatewayError(
                f"Payment gateway circuit is {circuit_state}.",
                code="gateway_circuit_open",
            )

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        data = None
        if form is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            data = urllib.parse.urlencode(form).encode("utf-8")

        request = urllib.request.Request(f"{self.base_url}{path}", data=data, headers=headers, method=method.upper())
        # POSTs carry an idempotency key, so they are as safe to retry as GETs.
        attempts = self.retry_attempts if (method.upper() == "GET" or idempotency_key) else 1

        for attempt in range(attempts):
            try:
                with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                    body = response.read().decode("utf-8")
                    parsed = json.loads(body) if body else {}
                self.circuit_breaker.record_success()
                observe_gateway_call("success")
                if not isinstance(parsed, dict):
                    raise PaymentGatewayError("Gateway returned a non-object JSON payload.", code="invalid_response")
                return parsed
            except urllib.error.HTTPError as exc:  # noqa: PERF203
                error_body = exc.read().decode("utf-8") if exc.fp else ""
                definitive = 400 <= exc.code < 500 and exc.code not in {408, 429}
                should_retry = attempt < attempts - 1 and not definitive
                if should_retry:
                    time.sleep(self.retry_backoff_ms / 1000)
                    continue
                if not definitive:
                    self.circuit_breaker.record_failure()
                observe_gateway_call("http_error")
                logger.warning(
                    "payment_gateway_http_error",
                    extra={"gateway_path": path, "http_status": exc.code, "attempt": attempt + 1},
                )
                raise PaymentGatewayError(
                    f"Gateway HTTP {exc.code}: {error_body[:200]}",
                    code="gateway_http_error",
                    definitive=definitive,
                ) from exc
            except urllib.error.URLError as exc:
                if attempt < attempts - 1:
                    time.sleep(self.retry_backoff_ms / 1000)
                    continue
                self.circuit_breaker.record_failure()
                observe_gateway_call("connection_error")
                raise PaymentGatewayError(f"Gateway connection error: {exc.reason}", code="gateway_unreachable") from exc
            except json.JSONDecodeError as exc:
                self.circuit_breaker.record_failure()
                observe_gateway_call("invalid_response")
                raise PaymentGatewayError("Gateway returned invalid JSON.", code="invalid_response") from exc

        raise PaymentGatewayError("Payment gateway call failed.", code="gateway_unreachable")
