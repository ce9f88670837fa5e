"""Exactly-once reconciliation of hosted-checkout redirects.

A redirect may be delivered any number of times (reloads, back button,
duplicate tabs). The durable marker keyed by gateway session id is what makes
repeated delivery harmless; the gateway reference on the payment row is the
second line of defence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

from marketplace.errors import NotFoundError, ValidationError
from marketplace.observability import observe_reconciliation
from marketplace.payments.gateway import PaymentGateway, PaymentGatewayError, SessionVerification
from marketplace.workflow.canonical_status import OrderFacts, is_order_paid


logger = logging.getLogger(__name__)

RECONCILED = "reconciled"
ALREADY_RECONCILED = "already_reconciled"
CONFIRMED_FROM_ORDER = "confirmed_from_order"
NOT_PAID = "not_paid"
VERIFICATION_FAILED = "verification_failed"
ORDER_MISMATCH = "order_mismatch"

_NOTICE_KEYS = {
    RECONCILED: "notice.payment_confirmed",
    ALREADY_RECONCILED: "notice.payment_already_confirmed",
    CONFIRMED_FROM_ORDER: "notice.payment_confirmed",
    NOT_PAID: "notice.payment_not_paid",
    VERIFICATION_FAILED: "notice.payment_verification_failed",
    ORDER_MISMATCH: "notice.payment_verification_failed",
}

PaymentRecorder = Callable[[Any, Mapping[str, Any], SessionVerification], str]


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: str
    session_id: str
    order_id: str
    payment_id: str | None = None
    marker_set: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome in {RECONCILED, ALREADY_RECONCILED, CONFIRMED_FROM_ORDER}

    @property
    def notice_key(self) -> str:
        return _NOTICE_KEYS.get(self.outcome, "notice.payment_verification_failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "session_id": self.session_id,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "marker_set": self.marker_set,
            "succeeded": self.succeeded,
            "notice_key": self.notice_key,
        }


class PaymentReconciler:
    def __init__(
        self,
        *,
        gateway: PaymentGateway,
        marker_repository,
        order_repository,
        payment_recorder: PaymentRecorder,
    ) -> None:
        self.gateway = gateway
        self.markers = marker_repository
        self.orders = order_repository
        self.payment_recorder = payment_recorder

    def _order_facts(self, db, order: Mapping[str, Any]) -> OrderFacts:
        payments = self.orders.list_payments(db, str(order["id"]))
        return OrderFacts.from_row(order, payments)

    def _finish(self, result: ReconciliationResult) -> ReconciliationResult:
        observe_reconciliation(result.outcome)
        log_method = logger.info if result.succeeded else logger.warning
        log_method(
            "payment_reconciliation",
            extra={
                "outcome": result.outcome,
                "session_id": result.session_id,
                "order_id": result.order_id,
                "payment_id": result.payment_id,
            },
        )
        return result

    def reconcile(self, db, *, session_id: str | None, order_id: str | None) -> ReconciliationResult:
        session_key = str(session_id or "").strip()
        order_key = str(order_id or "").strip()
        if not session_key:
            raise ValidationError(code="session_id_required", message_key="session_id_required")

        marker = self.markers.find_marker(db, session_key)
        if marker:
            return self._finish(
                ReconciliationResult(
                    outcome=ALREADY_RECONCILED,
                    session_id=session_key,
                    order_id=str(marker.get("order_id") or order_key),
                    payment_id=marker.get("payment_id"),
                    marker_set=True,
                )
            )

        order = self.orders.get_order(db, order_key) if order_key else None
        if order is None:
            raise NotFoundError(code="order_not_found", message_key="order_not_found", payload={"order_id": order_key})

        try:
            verification = self.gateway.verify_session(session_key)
        except PaymentGatewayError as exc:
            logger.warning(
                "payment_verification_failed",
                extra={"session_id": session_key, "order_id": order_key, "gateway_code": exc.code},
            )
            refreshed = self.orders.get_order(db, order_key) or order
            if is_order_paid(self._order_facts(db, refreshed)):
                self.markers.create_marker(
                    db,
                    session_id=session_key,
                    order_id=order_key,
                    payment_id=None,
                    outcome=CONFIRMED_FROM_ORDER,
                )
                return self._finish(
                    ReconciliationResult(
                        outcome=CONFIRMED_FROM_ORDER,
                        session_id=session_key,
                        order_id=order_key,
                        marker_set=True,
                    )
                )
            return self._finish(
                ReconciliationResult(outcome=VERIFICATION_FAILED, session_id=session_key, order_id=order_key)
            )

        if verification.order_id and str(verification.order_id) != order_key:
            return self._finish(
                ReconciliationResult(outcome=ORDER_MISMATCH, session_id=session_key, order_id=order_key)
            )
        if not verification.paid:
            return self._finish(ReconciliationResult(outcome=NOT_PAID, session_id=session_key, order_id=order_key))

        payment_id = self.payment_recorder(db, order, verification)
        marker = self.markers.create_marker(
            db,
            session_id=session_key,
            order_id=order_key,
            payment_id=payment_id,
            outcome=RECONCILED,
        )
        return self._finish(
            ReconciliationResult(
                outcome=RECONCILED,
                session_id=session_key,
                order_id=order_key,
                payment_id=str(marker.get("payment_id") or payment_id),
                marker_set=True,
            )
        )
