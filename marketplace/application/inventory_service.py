from __future__ import annotations

import logging
from typing import List

from marketplace.application.guards import ensure_action, ensure_roles, not_found
from marketplace.domain.contracts import Actor, ServiceOutput
from marketplace.errors import ValidationError
from marketplace.infrastructure.repositories import CartRepository, CatalogRepository, StatusEventRepository
from marketplace.infrastructure.repositories.base import utc_now_iso
from marketplace.ui_strings import success_message
from marketplace.workflow.inventory_validator import (
    DEFAULT_LEAD_TIME_RISK_DAYS,
    SOURCE_INTERNAL,
    ExternalSource,
    InternalSource,
    ValidationRequest,
    validate_inventory,
)


logger = logging.getLogger(__name__)


class InventoryService:
    def build_requests(self, db, *, tenant_id: str, cart_items: List[dict]) -> List[ValidationRequest]:
        catalog = CatalogRepository(tenant_id=tenant_id)
        requests: List[ValidationRequest] = []
        for item in cart_items:
            sku_code = item.get("sku_code") or None
            catalog_item_id = item.get("catalog_item_id") or None
            internal_rows = catalog.list_internal_sources(db, sku_code)
            external_rows = catalog.list_external_sources(db, sku_code=sku_code, catalog_item_id=catalog_item_id)

            source_type = SOURCE_INTERNAL if sku_code else None
            if catalog_item_id:
                picked = next((row for row in external_rows if row.get("catalog_item_id") == catalog_item_id), None)
                if picked:
                    source_type = picked.get("source") or source_type

            requests.append(
                ValidationRequest(
                    cart_item_id=str(item["id"]),
                    product_name=str(item.get("product_name") or ""),
                    requested_qty=int(item.get("quantity") or 0),
                    sku_code=sku_code,
                    source_type=source_type,
                    internal_sources=tuple(InternalSource.from_row(row) for row in internal_rows),
                    external_sources=tuple(ExternalSource.from_row(row) for row in external_rows),
                )
            )
        return requests

    def validate_cart(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        cart_id: str,
        lead_time_risk_days: int = DEFAULT_LEAD_TIME_RISK_DAYS,
    ) -> ServiceOutput:
        ensure_roles(actor, "ops")
        carts = CartRepository(tenant_id=tenant_id)
        cart = carts.get_cart(db, cart_id)
        if not cart:
            raise not_found("cart_not_found", cart_id=cart_id)
        previous_status = cart.get("status")
        ensure_action("cart", previous_status, "validate_inventory")

        cart_items = carts.list_items(db, cart_id)
        if not cart_items:
            raise ValidationError(code="cart_empty", message_key="cart_empty", payload={"cart_id": cart_id})

        report = validate_inventory(
            self.build_requests(db, tenant_id=tenant_id, cart_items=cart_items),
            lead_time_risk_days=lead_time_risk_days,
        )

        validated_at = utc_now_iso()
        for item in report.items:
            carts.save_item_validation(
                db,
                item.cart_item_id,
                inventory_status=item.inventory_status,
                available_source=item.available_source,
                validated_quantity=item.available_qty,
                validated_by=actor.user_id,
                validated_at=validated_at,
                validation=item.to_dict(),
            )
        carts.mark_validated(db, cart_id, validated_by=actor.user_id, validated_at=validated_at)

        next_status = previous_status
        if previous_status == "submitted":
            next_status = "under_review"
            carts.update_status(db, cart_id, next_status)
            StatusEventRepository(tenant_id=tenant_id).record(
                db,
                entity_type="cart",
                entity_id=cart_id,
                from_status=previous_status,
                to_status=next_status,
                reason="inventory_validated",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )

        summary = report.summary
        logger.info(
            "inventory_validated",
            extra={
                "tenant_id": tenant_id,
                "cart_id": cart_id,
                "total_items": summary.total_items,
                "total_shortfall": summary.total_shortfall,
                "low_confidence_items": summary.low_confidence_items,
            },
        )
        payload = report.to_dict()
        payload.update(
            {
                "cart_id": cart_id,
                "cart_status": next_status,
                "validated_at": validated_at,
                "message": success_message("inventory_validated"),
            }
        )
        return ServiceOutput(payload=payload, status_code=200)
