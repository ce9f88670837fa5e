from __future__ import annotations

import logging
from typing import Any, Dict, List

from marketplace.application.guards import (
    ensure_action,
    ensure_buyer_owns,
    ensure_roles,
    forbidden_action,
    not_found,
)
from marketplace.application.order_service import OrderService
from marketplace.application.serializers import serialize_cart, serialize_cart_item, serialize_quotation
from marketplace.application.workflow_service import WorkflowService, active_quotation, visible_quotations
from marketplace.domain.contracts import Actor, CartCreateInput, CartItemInput, ServiceOutput
from marketplace.errors import ValidationError
from marketplace.infrastructure.repositories import (
    CartRepository,
    NegotiationRepository,
    QuotationRepository,
    StatusEventRepository,
)
from marketplace.ui_strings import success_message
from marketplace.workflow.flow_policy import CART_STATUS_TRANSITIONS, cart_transition_allowed, flow_meta


logger = logging.getLogger(__name__)


def parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        value = None
    try:
        quantity = int(str(value).strip()) if value is not None else 0
    except (TypeError, ValueError):
        quantity = 0
    if quantity < 1:
        raise ValidationError(code="quantity_invalid", message_key="quantity_invalid", payload={"quantity": value})
    return quantity


def _clean(value: Any) -> str | None:
    return str(value or "").strip() or None


class CartService:
    def __init__(self, workflow_service: WorkflowService | None = None) -> None:
        self.workflow_service = workflow_service or WorkflowService()

    def load_cart(self, db, *, tenant_id: str, actor: Actor, cart_id: str) -> dict:
        cart = CartRepository(tenant_id=tenant_id).get_cart(db, cart_id)
        if not cart:
            raise not_found("cart_not_found", cart_id=cart_id)
        ensure_buyer_owns(actor, cart)
        return cart

    def _parse_item(self, item_input: CartItemInput) -> Dict[str, Any]:
        product_name = _clean(item_input.product_name)
        if not product_name:
            raise ValidationError(code="product_name_required", message_key="product_name_required")
        sku_code = _clean(item_input.sku_code)
        catalog_item_id = _clean(item_input.catalog_item_id)
        if not sku_code and not catalog_item_id:
            raise ValidationError(code="catalog_reference_required", message_key="catalog_reference_required")
        return {
            "product_name": product_name,
            "quantity": parse_quantity(item_input.quantity),
            "sku_code": sku_code,
            "catalog_item_id": catalog_item_id,
            "customization_note": _clean(item_input.customization_note),
        }

    def create_cart(self, db, *, tenant_id: str, actor: Actor, create_input: CartCreateInput) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        parsed_items = []
        for raw in create_input.items:
            if not isinstance(raw, dict):
                raise ValidationError(code="product_name_required", message_key="product_name_required")
            parsed_items.append(
                self._parse_item(
                    CartItemInput(
                        product_name=raw.get("product_name"),
                        quantity=raw.get("quantity"),
                        sku_code=raw.get("sku_code"),
                        catalog_item_id=raw.get("catalog_item_id"),
                        customization_note=raw.get("customization_note"),
                    )
                )
            )

        carts = CartRepository(tenant_id=tenant_id)
        cart = carts.create_cart(
            db,
            buyer_id=actor.user_id,
            title=_clean(create_input.title),
            notes=_clean(create_input.notes),
        )
        for item in parsed_items:
            carts.add_item(db, cart["id"], **item)
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="cart",
            entity_id=cart["id"],
            from_status=None,
            to_status="draft",
            reason="cart_created",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        items = carts.list_items(db, cart["id"])
        return ServiceOutput(
            payload={"cart": serialize_cart(cart, items), "message": success_message("cart_created")},
            status_code=201,
        )

    def list_carts(self, db, *, tenant_id: str, actor: Actor, status: str | None = None) -> ServiceOutput:
        buyer_id = actor.user_id if actor.role == "buyer" else None
        rows = CartRepository(tenant_id=tenant_id).list_carts(db, buyer_id=buyer_id, status=_clean(status))
        items = []
        for row in rows:
            payload = serialize_cart(row)
            payload["workflow"] = self.workflow_service.describe(db, tenant_id=tenant_id, cart=row)
            items.append(payload)
        return ServiceOutput(payload={"items": items}, status_code=200)

    def get_cart(self, db, *, tenant_id: str, actor: Actor, cart_id: str) -> ServiceOutput:
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        carts = CartRepository(tenant_id=tenant_id)
        quotations = QuotationRepository(tenant_id=tenant_id).list_for_cart(db, cart_id)
        if actor.role == "buyer":
            quotations = visible_quotations(quotations)
        active = active_quotation(quotations)
        payload = serialize_cart(cart, carts.list_items(db, cart_id))
        payload["quotations"] = [serialize_quotation(row) for row in quotations]
        payload["active_quotation_id"] = active["id"] if active else None
        payload["flow"] = flow_meta("cart", cart.get("status"))
        payload["workflow"] = self.workflow_service.describe(db, tenant_id=tenant_id, cart=cart)
        return ServiceOutput(payload={"cart": payload}, status_code=200)

    def workflow(self, db, *, tenant_id: str, actor: Actor, cart_id: str) -> ServiceOutput:
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        return self.workflow_service.cart_workflow(db, tenant_id=tenant_id, cart=cart)

    def add_item(self, db, *, tenant_id: str, actor: Actor, cart_id: str, item_input: CartItemInput) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        ensure_action("cart", cart.get("status"), "add_item")
        item = CartRepository(tenant_id=tenant_id).add_item(db, cart_id, **self._parse_item(item_input))
        return ServiceOutput(payload={"item": serialize_cart_item(item)}, status_code=201)

    def update_item(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        cart_id: str,
        item_id: str,
        payload: Dict[str, Any],
    ) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        ensure_action("cart", cart.get("status"), "edit_item")
        carts = CartRepository(tenant_id=tenant_id)
        if not carts.get_item(db, cart_id, item_id):
            raise not_found("cart_item_not_found", cart_id=cart_id, item_id=item_id)

        changes: Dict[str, Any] = {}
        if "quantity" in payload:
            changes["quantity"] = parse_quantity(payload.get("quantity"))
        if "customization_note" in payload:
            changes["customization_note"] = _clean(payload.get("customization_note"))
        if not changes:
            raise ValidationError(code="no_changes", message_key="action_invalid")
        item = carts.update_item(db, cart_id, item_id, changes)
        return ServiceOutput(payload={"item": serialize_cart_item(item)}, status_code=200)

    def remove_item(self, db, *, tenant_id: str, actor: Actor, cart_id: str, item_id: str) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        ensure_action("cart", cart.get("status"), "remove_item")
        carts = CartRepository(tenant_id=tenant_id)
        if not carts.get_item(db, cart_id, item_id):
            raise not_found("cart_item_not_found", cart_id=cart_id, item_id=item_id)
        carts.delete_item(db, cart_id, item_id)
        return ServiceOutput(payload={"deleted": True, "item_id": item_id}, status_code=200)

    def submit_cart(self, db, *, tenant_id: str, actor: Actor, cart_id: str) -> ServiceOutput:
        ensure_roles(actor, "buyer")
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        ensure_action("cart", cart.get("status"), "submit_cart")
        carts = CartRepository(tenant_id=tenant_id)
        if not carts.list_items(db, cart_id):
            raise ValidationError(code="cart_empty", message_key="cart_empty", payload={"cart_id": cart_id})
        carts.update_status(db, cart_id, "submitted", submitted=True)
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="cart",
            entity_id=cart_id,
            from_status=cart.get("status"),
            to_status="submitted",
            reason="cart_submitted",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        logger.info("cart_submitted", extra={"tenant_id": tenant_id, "cart_id": cart_id})
        return ServiceOutput(
            payload={"cart_id": cart_id, "status": "submitted", "message": success_message("cart_submitted")},
            status_code=200,
        )

    def forward_to_sales(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        cart_id: str,
        sales_person_id: str | None,
    ) -> ServiceOutput:
        ensure_roles(actor, "ops")
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        ensure_action("cart", cart.get("status"), "forward_to_sales")
        sales_person = _clean(sales_person_id)
        if not sales_person:
            raise ValidationError(code="sales_person_required", message_key="sales_person_required")
        CartRepository(tenant_id=tenant_id).assign_sales(db, cart_id, sales_person)
        if cart.get("status") != "under_review":
            StatusEventRepository(tenant_id=tenant_id).record(
                db,
                entity_type="cart",
                entity_id=cart_id,
                from_status=cart.get("status"),
                to_status="under_review",
                reason="forwarded_to_sales",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        return ServiceOutput(
            payload={
                "cart_id": cart_id,
                "status": "under_review",
                "assigned_sales_id": sales_person,
                "message": success_message("forwarded_to_sales"),
            },
            status_code=200,
        )

    def update_status(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        cart_id: str,
        payload: Dict[str, Any],
    ) -> ServiceOutput:
        ensure_roles(actor, "sales", "ops")
        cart = self.load_cart(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id)
        previous_status = cart.get("status")
        target = str(payload.get("status") or "").strip()
        if target not in {status for targets in CART_STATUS_TRANSITIONS.values() for status in targets}:
            raise ValidationError(code="status_invalid", message_key="status_invalid", payload={"status": target})
        if target == previous_status:
            return ServiceOutput(payload={"cart_id": cart_id, "status": target}, status_code=200)
        if target == "closed":
            ensure_action("cart", previous_status, "close_request")
        if not cart_transition_allowed(previous_status, target):
            forbidden_action("cart", previous_status, "update_request_status")

        reason = _clean(payload.get("reason"))
        if target == "closed":
            self._close_request(db, tenant_id=tenant_id, actor=actor, cart_id=cart_id, reason=reason)

        CartRepository(tenant_id=tenant_id).update_status(db, cart_id, target)
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="cart",
            entity_id=cart_id,
            from_status=previous_status,
            to_status=target,
            reason=reason or "request_status_updated",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        return ServiceOutput(payload={"cart_id": cart_id, "status": target}, status_code=200)

    def _close_request(self, db, *, tenant_id: str, actor: Actor, cart_id: str, reason: str | None) -> None:
        OrderService().ensure_no_live_order(db, tenant_id=tenant_id, cart_id=cart_id)

        quotations = QuotationRepository(tenant_id=tenant_id)
        negotiations = NegotiationRepository(tenant_id=tenant_id)
        events = StatusEventRepository(tenant_id=tenant_id)
        closed_quotations: List[str] = []
        for quotation in quotations.list_for_cart(db, cart_id):
            if quotation.get("status") != "sent":
                continue
            quotations.mark_rejected(db, quotation["id"], reason or "request_closed")
            closed_quotations.append(quotation["id"])
            events.record(
                db,
                entity_type="quotation",
                entity_id=quotation["id"],
                from_status="sent",
                to_status="rejected",
                reason="request_closed",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
            negotiation = negotiations.reject_active_for_quotation(db, quotation["id"], "request_closed")
            if negotiation:
                events.record(
                    db,
                    entity_type="negotiation",
                    entity_id=negotiation["id"],
                    from_status=negotiation.get("status"),
                    to_status="rejected",
                    reason="request_closed",
                    actor_id=actor.user_id,
                    actor_role=actor.role,
                )
        logger.info(
            "request_closed",
            extra={"tenant_id": tenant_id, "cart_id": cart_id, "closed_quotations": closed_quotations},
        )
