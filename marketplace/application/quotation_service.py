from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping

from marketplace.application.guards import ensure_action, ensure_buyer_owns, ensure_roles, not_found
from marketplace.application.order_service import OrderService
from marketplace.application.serializers import serialize_order, serialize_quotation
from marketplace.application.workflow_service import active_quotation, visible_quotations
from marketplace.domain.contracts import Actor, QuotationCreateInput, QuotationUpdateInput, ServiceOutput
from marketplace.errors import StateConflictError, ValidationError
from marketplace.infrastructure.repositories import (
    CartRepository,
    NegotiationRepository,
    OrderRepository,
    QuotationRepository,
    StatusEventRepository,
)
from marketplace.infrastructure.repositories.base import to_iso, utc_now
from marketplace.ui_strings import success_message
from marketplace.workflow.canonical_status import is_expired, is_expiring_soon
from marketplace.workflow.flow_policy import flow_meta
from marketplace.workflow.inventory_validator import all_items_validated
from marketplace.workflow.money import ZERO
from marketplace.workflow.negotiation import NEGOTIATION_ACTIVE_STATUSES, build_round_items


logger = logging.getLogger(__name__)


def quotation_lines(cart_items: List[dict], proposed_items: Any) -> List[Dict[str, Any]]:
    """Prices every cart item exactly once; quantities default to the requested ones."""
    expected = [{"cart_item_id": item["id"], "quantity": item.get("quantity")} for item in cart_items]
    names = {item["id"]: item.get("product_name") for item in cart_items}
    try:
        priced = build_round_items(expected, proposed_items if isinstance(proposed_items, list) else None)
    except ValidationError as exc:
        raise ValidationError(
            code="quotation_items_invalid",
            message_key="quotation_items_invalid",
            payload=exc.payload,
        ) from exc
    return [
        {
            "cart_item_id": line.cart_item_id,
            "product_name": names.get(line.cart_item_id),
            "unit_price": line.unit_price,
            "quantity": line.quantity,
            "line_total": line.line_total,
        }
        for line in priced
    ]


class QuotationService:
    def __init__(self, order_service: OrderService | None = None) -> None:
        self.order_service = order_service or OrderService()

    def _cart_for(self, db, *, tenant_id: str, actor: Actor, cart_id: str) -> dict:
        cart = CartRepository(tenant_id=tenant_id).get_cart(db, cart_id)
        if not cart:
            raise not_found("cart_not_found", cart_id=cart_id)
        ensure_buyer_owns(actor, cart)
        return cart

    def load_quotation(self, db, *, tenant_id: str, actor: Actor, quotation_id: str) -> dict:
        quotation = QuotationRepository(tenant_id=tenant_id).get_quotation(db, quotation_id)
        if not quotation or (actor.role == "buyer" and quotation.get("status") == "draft"):
            raise not_found("quotation_not_found", quotation_id=quotation_id)
        self._cart_for(db, tenant_id=tenant_id, actor=actor, cart_id=quotation["cart_id"])
        return quotation

    def active_for_cart(self, db, *, tenant_id: str, cart_id: str) -> Mapping[str, Any] | None:
        return active_quotation(QuotationRepository(tenant_id=tenant_id).list_for_cart(db, cart_id))

    def ensure_active(self, db, *, tenant_id: str, quotation: Mapping[str, Any]) -> None:
        active = self.active_for_cart(db, tenant_id=tenant_id, cart_id=quotation["cart_id"])
        if active is not None and str(active["id"]) != str(quotation["id"]):
            raise StateConflictError(
                code="quotation_not_active",
                message_key="quotation_not_active",
                payload={
                    "quotation_id": quotation["id"],
                    "latest_quotation_id": active["id"],
                    "latest_quotation_status": active.get("status"),
                },
            )

    def expire_if_due(
        self,
        db,
        *,
        tenant_id: str,
        quotation: Mapping[str, Any],
        now: datetime,
        actor_role: str | None = None,
    ) -> dict:
        """Flips a sent quotation past its validity window to expired and ends its live negotiation."""
        if quotation.get("status") != "sent" or not is_expired(quotation.get("expires_at"), now):
            return dict(quotation)
        quotations = QuotationRepository(tenant_id=tenant_id)
        if not quotations.mark_expired(db, quotation["id"]):
            return quotations.get_quotation(db, quotation["id"]) or dict(quotation)
        events = StatusEventRepository(tenant_id=tenant_id)
        events.record(
            db,
            entity_type="quotation",
            entity_id=quotation["id"],
            from_status="sent",
            to_status="expired",
            reason="quotation_expired",
            actor_role=actor_role,
        )
        negotiation = NegotiationRepository(tenant_id=tenant_id).reject_active_for_quotation(
            db, quotation["id"], "quotation_expired"
        )
        if negotiation:
            events.record(
                db,
                entity_type="negotiation",
                entity_id=negotiation["id"],
                from_status=negotiation.get("status"),
                to_status="rejected",
                reason="quotation_expired",
                actor_role=actor_role,
            )
        logger.info(
            "quotation_expired",
            extra={"tenant_id": tenant_id, "quotation_id": quotation["id"], "expires_at": quotation.get("expires_at")},
        )
        return quotations.get_quotation(db, quotation["id"]) or dict(quotation)

    def expire_overdue(self, db, *, tenant_id: str, now: datetime | None = None) -> int:
        current = now or utc_now()
        expired = 0
        for row in QuotationRepository(tenant_id=tenant_id).list_overdue(db, to_iso(current)):
            quotation = QuotationRepository(tenant_id=tenant_id).get_quotation(db, row["id"])
            if quotation is None:
                continue
            refreshed = self.expire_if_due(db, tenant_id=tenant_id, quotation=quotation, now=current, actor_role="system")
            if refreshed.get("status") == "expired":
                expired += 1
        return expired

    def quotation_payload(
        self,
        db,
        *,
        tenant_id: str,
        quotation: Mapping[str, Any],
        now: datetime,
        expiring_soon_window: timedelta | None = None,
    ) -> Dict[str, Any]:
        payload = serialize_quotation(quotation, QuotationRepository(tenant_id=tenant_id).list_items(db, quotation["id"]))
        negotiation = NegotiationRepository(tenant_id=tenant_id).get_by_quotation(db, quotation["id"])
        order = OrderRepository(tenant_id=tenant_id).get_by_quotation(db, quotation["id"])
        payload["negotiation"] = (
            {"id": negotiation["id"], "status": negotiation.get("status")} if negotiation else None
        )
        payload["order_id"] = order["id"] if order else None
        if expiring_soon_window is None:
            payload["is_expiring_soon"] = is_expiring_soon(quotation.get("expires_at"), now)
        else:
            payload["is_expiring_soon"] = is_expiring_soon(quotation.get("expires_at"), now, expiring_soon_window)
        payload["flow"] = flow_meta("quotation", quotation.get("status"))
        return payload

    def list_for_cart(self, db, *, tenant_id: str, actor: Actor, cart_id: str, now: datetime | None = None) -> ServiceOutput:
        self._cart_for(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        current = now or utc_now()
        rows = QuotationRepository(tenant_id=tenant_id).list_for_cart(db, cart_id)
        rows = [self.expire_if_due(db, tenant_id=tenant_id, quotation=row, now=current) for row in rows]
        if actor.role == "buyer":
            rows = visible_quotations(rows)
        active = active_quotation(rows)
        return ServiceOutput(
            payload={
                "items": [self.quotation_payload(db, tenant_id=tenant_id, quotation=row, now=current) for row in rows],
                "active_quotation_id": active["id"] if active else None,
            },
            status_code=200,
        )

    def create_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        cart_id: str,
        create_input: QuotationCreateInput,
        default_currency: str,
    ) -> ServiceOutput:
        ensure_roles(actor, "sales")
        cart = self._cart_for(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        ensure_action("cart", cart.get("status"), "create_quotation")
        self.order_service.ensure_no_live_order(db, tenant_id=tenant_id, cart_id=cart_id)
        cart_items = CartRepository(tenant_id=tenant_id).list_items(db, cart_id)
        if not all_items_validated(cart_items):
            raise ValidationError(
                code="cart_not_validated",
                message_key="cart_not_validated",
                http_status=409,
                payload={"cart_id": cart_id},
            )
        lines = quotation_lines(cart_items, create_input.items)
        total = sum((line["line_total"] for line in lines), ZERO)

        quotation = QuotationRepository(tenant_id=tenant_id).create_quotation(
            db,
            cart_id=cart_id,
            items=lines,
            total_amount=total,
            currency=(create_input.currency or default_currency or "").strip().lower() or None,
            terms=(create_input.terms or "").strip() or None,
            is_final_offer=bool(create_input.is_final_offer),
            created_by=actor.user_id,
        )
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="quotation",
            entity_id=quotation["id"],
            from_status=None,
            to_status="draft",
            reason="quotation_created",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        return ServiceOutput(
            payload={
                "quotation": self.quotation_payload(db, tenant_id=tenant_id, quotation=quotation, now=utc_now()),
                "message": success_message("quotation_created"),
            },
            status_code=201,
        )

    def update_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        update_input: QuotationUpdateInput,
    ) -> ServiceOutput:
        ensure_roles(actor, "sales")
        quotations = QuotationRepository(tenant_id=tenant_id)
        quotation = self.load_quotation(db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id)
        if quotation.get("status") != "draft":
            raise ValidationError(
                code="quotation_not_editable",
                message_key="quotation_not_editable",
                http_status=409,
                payload={"quotation_id": quotation_id, "status": quotation.get("status")},
            )
        ensure_action("quotation", quotation.get("status"), "edit_quotation")

        changes: Dict[str, Any] = {}
        if update_input.items is not None:
            cart_items = CartRepository(tenant_id=tenant_id).list_items(db, quotation["cart_id"])
            lines = quotation_lines(cart_items, update_input.items)
            quotations.replace_items(db, quotation_id, lines)
            changes["total_amount"] = str(sum((line["line_total"] for line in lines), ZERO))
        if update_input.terms is not None:
            changes["terms"] = update_input.terms.strip() or None
        if update_input.is_final_offer is not None:
            changes["is_final_offer"] = 1 if update_input.is_final_offer else 0
        if not changes:
            raise ValidationError(code="no_changes", message_key="action_invalid")
        quotations.update_fields(db, quotation_id, changes)
        updated = quotations.get_quotation(db, quotation_id)
        return ServiceOutput(
            payload={"quotation": self.quotation_payload(db, tenant_id=tenant_id, quotation=updated, now=utc_now())},
            status_code=200,
        )

    def send_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        validity_days: int,
        now: datetime | None = None,
    ) -> ServiceOutput:
        ensure_roles(actor, "sales")
        quotation = self.load_quotation(db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id)
        ensure_action("quotation", quotation.get("status"), "send_quotation")
        self.order_service.ensure_no_live_order(db, tenant_id=tenant_id, cart_id=quotation["cart_id"])
        current = now or utc_now()
        sent_at = to_iso(current)
        expires_at = to_iso(current + timedelta(days=max(1, int(validity_days))))
        QuotationRepository(tenant_id=tenant_id).mark_sent(db, quotation_id, sent_at=sent_at, expires_at=expires_at)

        events = StatusEventRepository(tenant_id=tenant_id)
        events.record(
            db,
            entity_type="quotation",
            entity_id=quotation_id,
            from_status="draft",
            to_status="sent",
            reason="quotation_sent",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        carts = CartRepository(tenant_id=tenant_id)
        cart = carts.get_cart(db, quotation["cart_id"])
        if cart and cart.get("status") != "quoted":
            carts.update_status(db, cart["id"], "quoted")
            events.record(
                db,
                entity_type="cart",
                entity_id=cart["id"],
                from_status=cart.get("status"),
                to_status="quoted",
                reason="quotation_sent",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        logger.info(
            "quotation_sent",
            extra={
                "tenant_id": tenant_id,
                "quotation_id": quotation_id,
                "quotation_number": quotation.get("quotation_number"),
                "expires_at": expires_at,
            },
        )
        return ServiceOutput(
            payload={
                "quotation_id": quotation_id,
                "status": "sent",
                "sent_at": sent_at,
                "expires_at": expires_at,
                "message": success_message("quotation_sent"),
            },
            status_code=200,
        )

    def get_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        now: datetime | None = None,
        expiring_soon_window: timedelta | None = None,
    ) -> ServiceOutput:
        current = now or utc_now()
        quotation = self.load_quotation(db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id)
        quotation = self.expire_if_due(db, tenant_id=tenant_id, quotation=quotation, now=current)
        if quotation.get("status") != "draft":
            active = self.active_for_cart(db, tenant_id=tenant_id, cart_id=quotation["cart_id"])
            if active is not None and str(active["id"]) != str(quotation_id):
                return ServiceOutput(
                    payload={
                        "redirect_to": active["id"],
                        "requested_quotation_id": quotation_id,
                        "active_quotation_id": active["id"],
                    },
                    status_code=303,
                )
        return ServiceOutput(
            payload={
                "quotation": self.quotation_payload(
                    db,
                    tenant_id=tenant_id,
                    quotation=quotation,
                    now=current,
                    expiring_soon_window=expiring_soon_window,
                )
            },
            status_code=200,
        )

    def accept_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        now: datetime | None = None,
    ) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        current = now or utc_now()
        quotation = self.load_quotation(db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id)
        quotation = self.expire_if_due(db, tenant_id=tenant_id, quotation=quotation, now=current)
        orders = OrderRepository(tenant_id=tenant_id)

        if quotation.get("status") == "accepted":
            existing = orders.get_by_quotation(db, quotation_id)
            if existing:
                return ServiceOutput(
                    payload={
                        "quotation_id": quotation_id,
                        "already_accepted": True,
                        "order": serialize_order(existing),
                        "message": success_message("quotation_already_accepted"),
                    },
                    status_code=200,
                )
        if quotation.get("status") == "expired":
            raise StateConflictError(
                code="quotation_expired",
                message_key="quotation_expired",
                payload={"quotation_id": quotation_id, "status": "expired", "expires_at": quotation.get("expires_at")},
            )
        ensure_action("quotation", quotation.get("status"), "accept_quotation")
        self.ensure_active(db, tenant_id=tenant_id, quotation=quotation)

        negotiation = NegotiationRepository(tenant_id=tenant_id).get_by_quotation(db, quotation_id)
        if negotiation and negotiation.get("status") in NEGOTIATION_ACTIVE_STATUSES:
            raise StateConflictError(
                code="negotiation_active",
                message_key="negotiation_active",
                payload={
                    "quotation_id": quotation_id,
                    "negotiation_id": negotiation["id"],
                    "negotiation_status": negotiation.get("status"),
                },
            )

        basis = QuotationRepository(tenant_id=tenant_id).list_items(db, quotation_id)
        return self.complete_acceptance(
            db,
            tenant_id=tenant_id,
            actor=actor,
            quotation=quotation,
            negotiation_id=None,
            basis_items=basis,
            reason="quotation_accepted",
        )

    def complete_acceptance(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation: Mapping[str, Any],
        negotiation_id: str | None,
        basis_items: List[Dict[str, Any]],
        reason: str,
    ) -> ServiceOutput:
        """Marks the quotation accepted and creates its order in the same unit of work."""
        quotations = QuotationRepository(tenant_id=tenant_id)
        cart = CartRepository(tenant_id=tenant_id).get_cart(db, quotation["cart_id"]) or {"id": quotation["cart_id"]}
        order, created = self.order_service.create_order_from_basis(
            db,
            tenant_id=tenant_id,
            actor=actor,
            quotation=quotation,
            cart=cart,
            negotiation_id=negotiation_id,
            basis_items=basis_items,
        )
        if quotation.get("status") != "accepted":
            quotations.mark_accepted(db, quotation["id"])
            StatusEventRepository(tenant_id=tenant_id).record(
                db,
                entity_type="quotation",
                entity_id=quotation["id"],
                from_status=quotation.get("status"),
                to_status="accepted",
                reason=reason,
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        return ServiceOutput(
            payload={
                "quotation_id": quotation["id"],
                "already_accepted": not created,
                "order": serialize_order(order),
                "message": success_message("quotation_accepted" if created else "quotation_already_accepted"),
            },
            status_code=201 if created else 200,
        )

    def reject_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        payload: Dict[str, Any],
        require_confirmation_fn,
        now: datetime | None = None,
    ) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        quotation = self.load_quotation(db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id)
        quotation = self.expire_if_due(db, tenant_id=tenant_id, quotation=quotation, now=now or utc_now())
        ensure_action("quotation", quotation.get("status"), "reject_quotation")
        require_confirmation_fn("reject_quotation", entity="quotation", entity_id=quotation_id, payload=payload)

        reason = str(payload.get("reason") or "").strip() or None
        QuotationRepository(tenant_id=tenant_id).mark_rejected(db, quotation_id, reason)
        events = StatusEventRepository(tenant_id=tenant_id)
        events.record(
            db,
            entity_type="quotation",
            entity_id=quotation_id,
            from_status=quotation.get("status"),
            to_status="rejected",
            reason=reason or "quotation_rejected",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        negotiation = NegotiationRepository(tenant_id=tenant_id).reject_active_for_quotation(
            db, quotation_id, "quotation_rejected"
        )
        if negotiation:
            events.record(
                db,
                entity_type="negotiation",
                entity_id=negotiation["id"],
                from_status=negotiation.get("status"),
                to_status="rejected",
                reason="quotation_rejected",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        return ServiceOutput(
            payload={
                "quotation_id": quotation_id,
                "status": "rejected",
                "negotiation_status": "rejected" if negotiation else None,
                "message": success_message("quotation_rejected"),
            },
            status_code=200,
        )
