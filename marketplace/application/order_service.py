from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Sequence, Tuple

from marketplace.application.guards import ensure_action, ensure_buyer_owns, ensure_roles, not_found
from marketplace.application.serializers import serialize_order
from marketplace.domain.contracts import Actor, OrderStatusInput, ServiceOutput
from marketplace.errors import IntegrationError, StateConflictError, ValidationError, classify_gateway_failure
from marketplace.infrastructure.repositories import (
    CartRepository,
    OrderRepository,
    QuotationRepository,
    StatusEventRepository,
)
from marketplace.infrastructure.repositories.base import utc_now_iso
from marketplace.payments.gateway import PaymentGateway, PaymentGatewayError
from marketplace.ui_strings import success_message
from marketplace.workflow.canonical_status import (
    OrderFacts,
    derive_canonical_workflow_status,
    is_order_paid,
    order_ops_final_check,
)
from marketplace.workflow.flow_policy import flow_meta, order_transition_allowed
from marketplace.workflow.money import ZERO, to_money


logger = logging.getLogger(__name__)


def gateway_integration_error(exc: PaymentGatewayError) -> IntegrationError:
    code, http_status = classify_gateway_failure(str(exc), definitive=exc.definitive)
    return IntegrationError(
        code=code,
        http_status=http_status,
        details=str(exc),
        payload={"gateway_code": exc.code},
    )


def outstanding_amount(order: Mapping[str, Any]):
    return max(ZERO, to_money(order.get("total_amount")) - to_money(order.get("paid_amount")))


class OrderService:
    def load_order(self, db, *, tenant_id: str, actor: Actor, order_id: str) -> dict:
        order = OrderRepository(tenant_id=tenant_id).get_order(db, order_id)
        if not order:
            raise not_found("order_not_found", order_id=order_id)
        if actor.role == "buyer":
            cart = CartRepository(tenant_id=tenant_id).get_cart(db, order["cart_id"]) or {}
            ensure_buyer_owns(actor, {"id": order["cart_id"], "buyer_id": cart.get("buyer_id")})
        return order

    def order_facts(self, db, *, tenant_id: str, order: Mapping[str, Any]) -> OrderFacts:
        payments = OrderRepository(tenant_id=tenant_id).list_payments(db, str(order["id"]))
        return OrderFacts.from_row(order, payments)

    def live_order_for_cart(self, db, *, tenant_id: str, cart_id: str) -> dict | None:
        live = [
            row
            for row in OrderRepository(tenant_id=tenant_id).list_for_cart(db, cart_id)
            if row.get("status") != "cancelled"
        ]
        return live[-1] if live else None

    def ensure_no_live_order(self, db, *, tenant_id: str, cart_id: str, quotation_id: str | None = None) -> None:
        """A cart yields one order; only a cancelled order frees it for a new quotation."""
        order = self.live_order_for_cart(db, tenant_id=tenant_id, cart_id=cart_id)
        if order is None or (quotation_id is not None and str(order.get("quotation_id")) == str(quotation_id)):
            return
        raise StateConflictError(
            code="order_exists",
            message_key="order_exists",
            payload={"cart_id": cart_id, "order_id": order["id"], "order_status": order.get("status")},
        )

    def create_order_from_basis(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation: Mapping[str, Any],
        cart: Mapping[str, Any],
        negotiation_id: str | None,
        basis_items: Sequence[Dict[str, Any]],
    ) -> Tuple[dict, bool]:
        """Creates the single order of an accepted quotation; returns (order, created)."""
        orders = OrderRepository(tenant_id=tenant_id)
        existing = orders.get_by_quotation(db, str(quotation["id"]))
        if existing:
            return existing, False
        self.ensure_no_live_order(db, tenant_id=tenant_id, cart_id=str(cart["id"]), quotation_id=str(quotation["id"]))

        total = sum((to_money(item["line_total"]) for item in basis_items), ZERO)
        try:
            order_id = orders.create_order(
                db,
                quotation_id=str(quotation["id"]),
                cart_id=str(cart["id"]),
                negotiation_id=negotiation_id,
                buyer_id=cart.get("buyer_id"),
                currency=quotation.get("currency"),
                items=basis_items,
                total_amount=total,
            )
        except Exception as exc:
            if not db.is_integrity_error(exc):
                raise
            existing = orders.get_by_quotation(db, str(quotation["id"]))
            if existing is None:
                raise
            return existing, False

        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="order",
            entity_id=order_id,
            from_status=None,
            to_status="pending_payment",
            reason="order_created",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        logger.info(
            "order_created",
            extra={
                "tenant_id": tenant_id,
                "order_id": order_id,
                "quotation_id": quotation["id"],
                "negotiation_id": negotiation_id,
                "total_amount": str(total),
            },
        )
        return orders.get_order(db, order_id), True

    def order_payload(self, db, *, tenant_id: str, order: Mapping[str, Any]) -> Dict[str, Any]:
        orders = OrderRepository(tenant_id=tenant_id)
        payments = orders.list_payments(db, str(order["id"]))
        payload = serialize_order(order, orders.list_items(db, str(order["id"])), payments)
        payload["canonical_status"] = derive_canonical_workflow_status(
            "quoted",
            "accepted",
            order=OrderFacts.from_row(order, payments),
        )
        payload["flow"] = flow_meta("order", order.get("status"))
        payload["history"] = StatusEventRepository(tenant_id=tenant_id).list_for(db, "order", str(order["id"]))
        return payload

    def get_order(self, db, *, tenant_id: str, actor: Actor, order_id: str) -> ServiceOutput:
        order = self.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        return ServiceOutput(payload={"order": self.order_payload(db, tenant_id=tenant_id, order=order)}, status_code=200)

    def _record_event(self, db, *, tenant_id: str, actor: Actor, order_id: str, from_status, to_status, reason) -> None:
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="order",
            entity_id=order_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            actor_id=actor.user_id,
            actor_role=actor.role,
        )

    def approve_final_check(self, db, *, tenant_id: str, actor: Actor, order_id: str) -> ServiceOutput:
        ensure_roles(actor, "ops")
        order = self.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        ensure_action("order", order.get("status"), "approve_final_check")
        check = order_ops_final_check(self.order_facts(db, tenant_id=tenant_id, order=order))
        if check == "approved":
            return ServiceOutput(payload={"order_id": order_id, "ops_final_check": "approved"}, status_code=200)
        if check == "rejected":
            raise StateConflictError(
                code="ops_check_already_resolved",
                message_key="ops_check_already_resolved",
                payload={"order_id": order_id, "ops_final_check": check},
            )

        now = utc_now_iso()
        OrderRepository(tenant_id=tenant_id).update_order(
            db,
            order_id,
            {
                "ops_final_check_status": "approved",
                "ops_final_check_at": now,
                "ops_final_check_by": actor.user_id,
            },
        )
        self._record_event(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=order_id,
            from_status="ops_check_pending",
            to_status="ops_check_approved",
            reason="final_check_approved",
        )
        return ServiceOutput(
            payload={
                "order_id": order_id,
                "ops_final_check": "approved",
                "message": success_message("final_check_approved"),
            },
            status_code=200,
        )

    def reject_final_check(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        order_id: str,
        payload: Dict[str, Any],
        require_confirmation_fn,
    ) -> ServiceOutput:
        ensure_roles(actor, "ops")
        order = self.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        ensure_action("order", order.get("status"), "reject_final_check")
        facts = self.order_facts(db, tenant_id=tenant_id, order=order)
        check = order_ops_final_check(facts)
        if check == "rejected" or facts.payment_link_sent_at or is_order_paid(facts):
            raise StateConflictError(
                code="ops_check_already_resolved",
                message_key="ops_check_already_resolved",
                payload={"order_id": order_id, "ops_final_check": check},
            )
        reason = str(payload.get("reason") or "").strip()
        if not reason:
            raise ValidationError(code="reason_required", message_key="reason_required")
        require_confirmation_fn("reject_final_check", entity="order", entity_id=order_id, payload=payload)

        now = utc_now_iso()
        OrderRepository(tenant_id=tenant_id).update_order(
            db,
            order_id,
            {
                "status": "cancelled",
                "cancelled_at": now,
                "ops_final_check_status": "rejected",
                "ops_final_check_reason": reason,
                "ops_final_check_at": now,
                "ops_final_check_by": actor.user_id,
            },
        )
        self._record_event(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=order_id,
            from_status=order.get("status"),
            to_status="cancelled",
            reason="final_check_rejected",
        )

        quotations = QuotationRepository(tenant_id=tenant_id)
        quotation = quotations.get_quotation(db, order["quotation_id"])
        if quotation and quotation.get("status") != "rejected":
            quotations.mark_rejected(db, quotation["id"], reason)
            StatusEventRepository(tenant_id=tenant_id).record(
                db,
                entity_type="quotation",
                entity_id=quotation["id"],
                from_status=quotation.get("status"),
                to_status="rejected",
                reason="final_check_rejected",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        carts = CartRepository(tenant_id=tenant_id)
        cart = carts.get_cart(db, order["cart_id"])
        if cart and cart.get("status") != "closed":
            carts.update_status(db, cart["id"], "closed")
            StatusEventRepository(tenant_id=tenant_id).record(
                db,
                entity_type="cart",
                entity_id=cart["id"],
                from_status=cart.get("status"),
                to_status="closed",
                reason="final_check_rejected",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        logger.warning("final_check_rejected", extra={"tenant_id": tenant_id, "order_id": order_id, "reason": reason})
        return ServiceOutput(
            payload={
                "order_id": order_id,
                "status": "cancelled",
                "ops_final_check": "rejected",
                "message": success_message("final_check_rejected"),
            },
            status_code=200,
        )

    def send_payment_link(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        order_id: str,
        gateway: PaymentGateway,
        return_url: str,
        currency: str,
    ) -> ServiceOutput:
        ensure_roles(actor, "sales")
        order = self.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        ensure_action("order", order.get("status"), "send_payment_link")
        if order.get("payment_link_sent_at"):
            return ServiceOutput(
                payload={
                    "order_id": order_id,
                    "payment_link_url": order.get("payment_link_url"),
                    "session_id": order.get("payment_session_id"),
                    "payment_link_sent_at": order.get("payment_link_sent_at"),
                },
                status_code=200,
            )
        check = order_ops_final_check(self.order_facts(db, tenant_id=tenant_id, order=order))
        if check != "approved":
            raise ValidationError(
                code="ops_check_not_approved",
                message_key="ops_check_not_approved",
                http_status=409,
                payload={"order_id": order_id, "ops_final_check": check},
            )

        amount = outstanding_amount(order)
        if amount <= ZERO:
            raise ValidationError(code="payment_amount_invalid", message_key="payment_amount_invalid")
        session = self.start_checkout(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order=order,
            amount=amount,
            gateway=gateway,
            return_url=return_url,
            currency=currency,
        )
        now = utc_now_iso()
        OrderRepository(tenant_id=tenant_id).update_order(
            db,
            order_id,
            {
                "payment_link_sent_at": now,
                "payment_link_url": session.url,
                "payment_session_id": session.session_id,
            },
        )
        self._record_event(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=order_id,
            from_status=order.get("status"),
            to_status=order.get("status"),
            reason="payment_link_sent",
        )
        logger.info(
            "payment_link_sent",
            extra={"tenant_id": tenant_id, "order_id": order_id, "session_id": session.session_id, "amount": str(amount)},
        )
        return ServiceOutput(
            payload={
                "order_id": order_id,
                "payment_link_url": session.url,
                "session_id": session.session_id,
                "payment_link_sent_at": now,
                "amount": str(amount),
                "message": success_message("payment_link_sent"),
            },
            status_code=200,
        )

    def start_checkout(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        order: Mapping[str, Any],
        amount,
        gateway: PaymentGateway,
        return_url: str,
        currency: str,
    ):
        """Opens a hosted checkout session and books its pending card payment under the session id."""
        order_id = str(order["id"])
        separator = "&" if "?" in return_url else "?"
        success_url = f"{return_url}{separator}session_id={{CHECKOUT_SESSION_ID}}&order_id={order_id}"
        try:
            session = gateway.create_checkout_session(
                order_id=order_id,
                order_number=order.get("order_number"),
                amount=amount,
                currency=str(order.get("currency") or currency),
                success_url=success_url,
                cancel_url=f"{return_url}{separator}order_id={order_id}&cancelled=1",
            )
        except PaymentGatewayError as exc:
            raise gateway_integration_error(exc) from exc
        OrderRepository(tenant_id=tenant_id).add_payment(
            db,
            order_id,
            amount=amount,
            method="card",
            status="pending",
            payment_type="advance" if to_money(order.get("paid_amount")) <= ZERO else "balance",
            gateway_ref=session.session_id,
            transaction_ref=None,
            created_by=actor.user_id,
        )
        return session

    def forward_to_ops(self, db, *, tenant_id: str, actor: Actor, order_id: str) -> ServiceOutput:
        ensure_roles(actor, "sales")
        order = self.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        ensure_action("order", order.get("status"), "forward_to_ops")
        if order.get("forwarded_to_ops_at"):
            raise StateConflictError(
                code="order_already_forwarded",
                message_key="order_already_forwarded",
                payload={"order_id": order_id, "forwarded_to_ops_at": order.get("forwarded_to_ops_at")},
            )
        if not is_order_paid(self.order_facts(db, tenant_id=tenant_id, order=order)):
            raise ValidationError(
                code="order_not_paid",
                message_key="order_not_paid",
                http_status=409,
                payload={"order_id": order_id, "outstanding_amount": str(outstanding_amount(order))},
            )
        self.mark_forwarded(db, tenant_id=tenant_id, actor=actor, order=order, reason="forwarded_to_ops")
        return ServiceOutput(
            payload={"order_id": order_id, "forwarded": True, "message": success_message("forwarded_to_ops")},
            status_code=200,
        )

    def mark_forwarded(self, db, *, tenant_id: str, actor: Actor, order: Mapping[str, Any], reason: str) -> None:
        OrderRepository(tenant_id=tenant_id).update_order(db, str(order["id"]), {"forwarded_to_ops_at": utc_now_iso()})
        self._record_event(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=str(order["id"]),
            from_status=order.get("status"),
            to_status=order.get("status"),
            reason=reason,
        )

    def transition_status(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        order_id: str,
        status_input: OrderStatusInput,
        payload: Dict[str, Any],
        require_confirmation_fn,
    ) -> ServiceOutput:
        ensure_roles(actor, "ops")
        order = self.load_order(db, tenant_id=tenant_id, actor=actor, order_id=order_id)
        current = str(order.get("status") or "")
        target = str(status_input.status or "").strip()
        action = "cancel_order" if target == "cancelled" else "update_order_status"
        ensure_action("order", current, action)
        if not order_transition_allowed(current, target):
            raise ValidationError(
                code="order_transition_invalid",
                message_key="order_transition_invalid",
                http_status=409,
                payload={"order_id": order_id, "from_status": current, "to_status": target},
            )
        if target == "confirmed":
            facts = self.order_facts(db, tenant_id=tenant_id, order=order)
            if not is_order_paid(facts):
                raise ValidationError(code="order_not_paid", message_key="order_not_paid", http_status=409)
            if not order.get("forwarded_to_ops_at"):
                raise ValidationError(code="order_not_forwarded", message_key="order_not_forwarded", http_status=409)

        changes: Dict[str, Any] = {"status": target}
        if target == "cancelled":
            require_confirmation_fn("cancel_order", entity="order", entity_id=order_id, payload=payload)
            changes["cancelled_at"] = utc_now_iso()
        OrderRepository(tenant_id=tenant_id).update_order(db, order_id, changes)
        self._record_event(
            db,
            tenant_id=tenant_id,
            actor=actor,
            order_id=order_id,
            from_status=current,
            to_status=target,
            reason=(status_input.reason or "").strip() or "order_status_updated",
        )
        return ServiceOutput(
            payload={
                "order_id": order_id,
                "from_status": current,
                "status": target,
                "message": success_message("order_status_updated"),
            },
            status_code=200,
        )
