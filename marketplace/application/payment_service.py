from __future__ import annotations

import logging
from typing import Any, Mapping

from marketplace.application.guards import ensure_action, ensure_roles, not_found
from marketplace.application.order_service import OrderService, gateway_integration_error, outstanding_amount
from marketplace.application.serializers import serialize_payment
from marketplace.domain.contracts import Actor, PaymentInitInput, ServiceOutput
from marketplace.errors import PaymentNotConfirmedError, StateConflictError, ValidationError
from marketplace.infrastructure.repositories import OrderRepository, ReconciliationMarkerRepository
from marketplace.infrastructure.repositories.base import utc_now_iso
from marketplace.observability import observe_payment_recorded
from marketplace.payments.gateway import PaymentGateway, PaymentGatewayError, SessionVerification
from marketplace.payments.reconciliation import PaymentReconciler, ReconciliationResult
from marketplace.ui_strings import success_message
from marketplace.workflow.money import ZERO, parse_money, to_money


logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("bank_transfer", "card", "upi")
SYSTEM_ACTOR = Actor(role="system", user_id=None)


class PaymentService:
    def __init__(self, order_service: OrderService | None = None) -> None:
        self.order_service = order_service or OrderService()

    def _payment_type(self, order: Mapping[str, Any], payment_input: PaymentInitInput) -> str:
        explicit = str(payment_input.payment_type or "").strip().lower()
        if explicit in {"advance", "balance", "full"}:
            return explicit
        return "advance" if to_money(order.get("paid_amount")) <= ZERO else "balance"

    def _verified_amount(self, *, order_id: str, claimed, verification: SessionVerification):
        """Amount the gateway captured for this order; the claimed amount must match it."""
        if verification.order_id and str(verification.order_id) != str(order_id):
            raise StateConflictError(
                code="payment_order_mismatch",
                message_key="payment_order_mismatch",
                payload={"order_id": order_id, "transaction_ref": verification.payment_intent_id},
            )
        captured = to_money(verification.amount)
        if captured != claimed:
            raise ValidationError(
                code="payment_amount_mismatch",
                message_key="payment_amount_mismatch",
                http_status=422,
                payload={"amount": str(claimed), "captured_amount": str(captured)},
            )
        return captured

    def apply_payment(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        order_id: str,
        amount,
        method: str,
        source: str,
    ) -> dict:
        """Books a settled amount; a fully paid order is confirmed and forwarded to ops."""
        orders = OrderRepository(tenant_id=tenant_id)
        orders.add_paid_amount(db, order_id, amount)
        observe_payment_recorded(method)
        order = orders.get_order(db, order_id)
        if outstanding_amount(order) > ZERO:
            return order
        if not order.get("payment_confirmed_at"):
            orders.update_order(
                db,
                order_id,
                {"payment_confirmed_at": utc_now_iso(), "payment_confirmation_source": source},
            )
        if not order.get("forwarded_to_ops_at"):
            self.order_service.mark_forwarded(
                db, tenant_id=tenant_id, actor=actor, order=order, reason="auto_forwarded_after_payment"
            )
            logger.info(
                "order_auto_forwarded",
                extra={"tenant_id": tenant_id, "order_id": order_id, "source": source},
            )
        return orders.get_order(db, order_id)

    def initiate_payment(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        order_id: str,
        payment_input: PaymentInitInput,
        gateway: PaymentGateway,
        return_url: str,
        currency: str,
    ) -> ServiceOutput:
        ensure_roles(actor, "buyer", "sales")
        order = self.order_service.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        ensure_action("order", order.get("status"), "record_payment")
        if not order.get("payment_link_sent_at"):
            raise ValidationError(
                code="payment_link_required",
                message_key="payment_link_required",
                http_status=409,
                payload={"order_id": order_id},
            )
        method = str(payment_input.method or "").strip().lower()
        if method not in PAYMENT_METHODS:
            raise ValidationError(
                code="payment_method_invalid",
                message_key="payment_method_invalid",
                payload={"method": payment_input.method, "allowed_methods": list(PAYMENT_METHODS)},
            )
        amount = parse_money(payment_input.amount)
        if amount is None or amount <= ZERO:
            raise ValidationError(code="payment_amount_invalid", message_key="payment_amount_invalid")
        outstanding = outstanding_amount(order)
        if amount > outstanding:
            raise ValidationError(
                code="payment_exceeds_outstanding",
                message_key="payment_exceeds_outstanding",
                payload={"amount": str(amount), "outstanding_amount": str(outstanding)},
            )

        orders = OrderRepository(tenant_id=tenant_id)
        payment_type = self._payment_type(order, payment_input)
        transaction_ref = str(payment_input.transaction_ref or "").strip() or None

        if method == "bank_transfer":
            payment_id = orders.add_payment(
                db,
                order_id,
                amount=amount,
                method=method,
                status="pending",
                payment_type=payment_type,
                gateway_ref=None,
                transaction_ref=transaction_ref,
                created_by=actor.user_id,
            )
            return ServiceOutput(
                payload={
                    "payment": serialize_payment(orders.get_payment(db, payment_id)),
                    "requires_confirmation": True,
                    "message": success_message("payment_recorded"),
                },
                status_code=201,
            )

        if transaction_ref is None:
            if method != "card":
                raise ValidationError(code="transaction_ref_required", message_key="transaction_ref_required")
            session = self.order_service.start_checkout(
                db,
                tenant_id=tenant_id,
                actor=actor,
                order=order,
                amount=amount,
                gateway=gateway,
                return_url=return_url,
                currency=currency,
            )
            return ServiceOutput(
                payload={
                    "order_id": order_id,
                    "checkout_url": session.url,
                    "session_id": session.session_id,
                    "amount": str(session.amount),
                },
                status_code=201,
            )

        # A gateway reference settles at most one payment per tenant.
        if orders.find_payment_by_reference(db, transaction_ref):
            raise StateConflictError(
                code="payment_duplicate",
                message_key="payment_duplicate",
                payload={"order_id": order_id, "transaction_ref": transaction_ref},
            )
        try:
            verification = gateway.verify_transaction(transaction_ref, method=method)
        except PaymentGatewayError as exc:
            raise gateway_integration_error(exc) from exc
        if not verification.paid:
            raise PaymentNotConfirmedError(
                payload={"order_id": order_id, "gateway_status": verification.status},
            )
        settled = self._verified_amount(order_id=order_id, claimed=amount, verification=verification)

        payment_id = orders.add_payment(
            db,
            order_id,
            amount=settled,
            method=method,
            status="paid",
            payment_type=payment_type,
            gateway_ref=transaction_ref,
            transaction_ref=transaction_ref,
            created_by=actor.user_id,
            paid_at=utc_now_iso(),
        )
        updated = self.apply_payment(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=order_id,
            amount=settled,
            method=method,
            source=f"gateway_{method}",
        )
        return ServiceOutput(
            payload={
                "payment": serialize_payment(orders.get_payment(db, payment_id)),
                "paid_amount": str(to_money(updated.get("paid_amount"))),
                "outstanding_amount": str(outstanding_amount(updated)),
                "message": success_message("payment_recorded"),
            },
            status_code=201,
        )

    def confirm_payment(self, db, *, tenant_id: str, actor: Actor, payment_id: str) -> ServiceOutput:
        ensure_roles(actor, "sales", "ops")
        orders = OrderRepository(tenant_id=tenant_id)
        payment = orders.get_payment(db, payment_id)
        if not payment:
            raise not_found("payment_not_found", payment_id=payment_id)
        if payment.get("status") != "pending" or payment.get("method") != "bank_transfer":
            raise StateConflictError(
                code="payment_not_pending",
                message_key="payment_not_pending",
                payload={"payment_id": payment_id, "status": payment.get("status"), "method": payment.get("method")},
            )
        order = orders.get_order(db, payment["order_id"])
        if not order:
            raise not_found("order_not_found", order_id=payment["order_id"])
        ensure_action("order", order.get("status"), "record_payment")

        amount = min(to_money(payment.get("amount")), outstanding_amount(order))
        orders.update_payment(
            db,
            payment_id,
            {"status": "completed", "amount": str(amount), "paid_at": utc_now_iso(), "confirmed_by": actor.user_id},
        )
        updated = self.apply_payment(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=str(order["id"]),
            amount=amount,
            method="bank_transfer",
            source="manual_confirmation",
        )
        return ServiceOutput(
            payload={
                "payment": serialize_payment(orders.get_payment(db, payment_id)),
                "order_id": order["id"],
                "paid_amount": str(to_money(updated.get("paid_amount"))),
                "outstanding_amount": str(outstanding_amount(updated)),
                "forwarded_to_ops": bool(updated.get("forwarded_to_ops_at")),
                "message": success_message("payment_confirmed"),
            },
            status_code=200,
        )

    def record_verified_gateway_payment(
        self,
        db,
        *,
        tenant_id: str,
        order: Mapping[str, Any],
        verification: SessionVerification,
    ) -> str:
        """Completes the pending checkout payment of the session, or books one when none exists."""
        orders = OrderRepository(tenant_id=tenant_id)
        order_id = str(order["id"])
        existing = orders.find_payment_by_gateway_ref(db, order_id, verification.gateway_reference)
        if existing and existing.get("status") in {"paid", "completed"}:
            return str(existing["id"])

        fresh = orders.get_order(db, order_id) or order
        outstanding = outstanding_amount(fresh)
        if existing:
            amount = min(to_money(existing.get("amount")), outstanding)
            payment_id = str(existing["id"])
            orders.update_payment(
                db,
                payment_id,
                {
                    "status": "paid",
                    "amount": str(amount),
                    "paid_at": utc_now_iso(),
                    "transaction_ref": verification.payment_intent_id,
                },
            )
        else:
            amount = min(to_money(verification.amount), outstanding)
            payment_id = orders.add_payment(
                db,
                order_id,
                amount=amount,
                method="card",
                status="paid",
                payment_type="advance" if to_money(fresh.get("paid_amount")) <= ZERO else "balance",
                gateway_ref=verification.gateway_reference,
                transaction_ref=verification.payment_intent_id,
                created_by=None,
                paid_at=utc_now_iso(),
            )
        self.apply_payment(
            db,
            tenant_id=tenant_id,
            actor=SYSTEM_ACTOR,
            order_id=order_id,
            amount=amount,
            method="card",
            source="gateway_redirect",
        )
        logger.info(
            "payment_reconciled",
            extra={
                "tenant_id": tenant_id,
                "order_id": order_id,
                "payment_id": payment_id,
                "session_id": verification.session_id,
                "amount": str(amount),
            },
        )
        return payment_id

    def reconcile(
        self,
        db,
        *,
        tenant_id: str,
        session_id: str | None,
        order_id: str | None,
        gateway: PaymentGateway,
    ) -> ReconciliationResult:
        def recorder(inner_db, order: Mapping[str, Any], verification: SessionVerification) -> str:
            return self.record_verified_gateway_payment(
                inner_db, tenant_id=tenant_id, order=order, verification=verification
            )

        reconciler = PaymentReconciler(
            gateway=gateway,
            marker_repository=ReconciliationMarkerRepository(tenant_id=tenant_id),
            order_repository=OrderRepository(tenant_id=tenant_id),
            payment_recorder=recorder,
        )
        result = reconciler.reconcile(db, session_id=session_id, order_id=order_id)
        if not result.succeeded:
            logger.warning(
                "payment_reconciliation_failed",
                extra={"tenant_id": tenant_id, "session_id": result.session_id, "outcome": result.outcome},
            )
        return result
