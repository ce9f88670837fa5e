from __future__ import annotations

import hashlib
import itertools
import threading
from decimal import Decimal
from typing import Dict

from marketplace.observability import observe_gateway_call
from marketplace.payments.gateway import CheckoutSession, PaymentGateway, PaymentGatewayError, SessionVerification
from marketplace.workflow.money import to_money


class MockPaymentGateway(PaymentGateway):
    """In-process hosted checkout simulator.

    Sessions stay ``open`` until ``complete_session`` is called (the mock
    checkout page does this), which makes redirect reconciliation testable
    without network access. Card/UPI transaction references are judged by
    prefix: ``fail_`` fails, ``pending_`` stays processing, and any other
    reference must have been captured with ``capture_transaction`` first.
    """

    def __init__(self, seed: int = 42, checkout_base_url: str = "/payments/mock-checkout") -> None:
        self.seed = int(seed)
        self.checkout_base_url = checkout_base_url.rstrip("/")
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._sessions: Dict[str, dict] = {}
        self._transactions: Dict[str, dict] = {}

    def _session_id(self, order_id: str, amount: Decimal) -> str:
        nonce = next(self._counter)
        digest = hashlib.sha256(f"{self.seed}:{order_id}:{amount}:{nonce}".encode("utf-8")).hexdigest()
        return f"cs_mock_{digest[:24]}"

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
        amount = to_money(amount)
        with self._lock:
            session_id = self._session_id(order_id, amount)
            self._sessions[session_id] = {
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "status": "open",
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        observe_gateway_call("success")
        return CheckoutSession(
            session_id=session_id,
            url=f"{self.checkout_base_url}/{session_id}",
            amount=amount,
            currency=currency,
        )

    def complete_session(self, session_id: str) -> dict:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise PaymentGatewayError("Unknown checkout session.", code="session_not_found", definitive=True)
            session["status"] = "paid"
            return dict(session)

    def verify_session(self, session_id: str) -> SessionVerification:
        with self._lock:
            session = dict(self._sessions.get(session_id) or {})
        if not session:
            observe_gateway_call("http_error")
            raise PaymentGatewayError("Unknown checkout session.", code="session_not_found", definitive=True)
        observe_gateway_call("success")
        return SessionVerification(
            session_id=session_id,
            paid=session["status"] == "paid",
            status=session["status"],
            amount=session["amount"],
            currency=session["currency"],
            payment_intent_id=f"pi_{session_id[len('cs_'):]}",
            order_id=session["order_id"],
        )

    def capture_transaction(
        self,
        transaction_ref: str,
        *,
        amount,
        order_id: str | None = None,
        currency: str | None = None,
    ) -> None:
        """Records a card/UPI payment taken outside the hosted checkout."""
        with self._lock:
            self._transactions[str(transaction_ref).strip()] = {
                "amount": to_money(amount),
                "order_id": order_id,
                "currency": currency,
            }

    def verify_transaction(self, transaction_ref: str, *, method: str) -> SessionVerification:
        ref = str(transaction_ref or "").strip()
        if not ref:
            raise PaymentGatewayError("Missing transaction reference.", code="transaction_ref_required", definitive=True)
        with self._lock:
            captured = dict(self._transactions.get(ref) or {})
        if ref.startswith("fail_"):
            status = "failed"
        elif ref.startswith("pending_"):
            status = "processing"
        elif captured:
            status = "succeeded"
        else:
            observe_gateway_call("http_error")
            raise PaymentGatewayError(
                f"gateway HTTP 404: unknown transaction {ref}",
                code="transaction_not_found",
                definitive=True,
            )
        observe_gateway_call("success")
        return SessionVerification(
            session_id=ref,
            paid=status == "succeeded",
            status=status,
            amount=captured.get("amount", to_money(0)),
            currency=captured.get("currency"),
            payment_intent_id=ref,
            order_id=captured.get("order_id"),
        )
