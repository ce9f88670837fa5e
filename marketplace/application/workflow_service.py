from __future__ import annotations

from typing import Any, Dict, List, Mapping

from marketplace.domain.contracts import ServiceOutput
from marketplace.infrastructure.repositories import (
    NegotiationRepository,
    OrderRepository,
    QuotationRepository,
)
from marketplace.workflow.canonical_status import (
    OrderFacts,
    WorkflowFacts,
    can_use_negotiation_chat,
    canonical_label,
    derive_from_facts,
    latest_quotation_for_thread,
    lifecycle_rank,
    sales_module_status,
)
from marketplace.workflow.flow_policy import build_process_steps, flow_meta, stage_for_canonical_status


def visible_quotations(quotations: List[dict]) -> List[dict]:
    """Drafts never take part in the thread; only quotations the buyer has seen do."""
    return [row for row in quotations if str(row.get("status") or "") != "draft"]


def active_quotation(quotations: List[dict]) -> Mapping[str, Any] | None:
    return latest_quotation_for_thread(visible_quotations(quotations))


class WorkflowService:
    def collect(self, db, *, tenant_id: str, cart: Mapping[str, Any]) -> Dict[str, Any]:
        quotations = QuotationRepository(tenant_id=tenant_id)
        negotiations = NegotiationRepository(tenant_id=tenant_id)
        orders = OrderRepository(tenant_id=tenant_id)

        cart_id = str(cart["id"])
        active = active_quotation(quotations.list_for_cart(db, cart_id))
        negotiation = negotiations.get_by_quotation(db, str(active["id"])) if active else None

        order = orders.get_by_quotation(db, str(active["id"])) if active else None
        order_facts = None
        if order is not None:
            order_facts = OrderFacts.from_row(order, orders.list_payments(db, str(order["id"])))

        facts = WorkflowFacts(
            cart_status=cart.get("status"),
            latest_quotation_status=active.get("status") if active else None,
            negotiation_status=negotiation.get("status") if negotiation else None,
            order=order_facts,
            sales_assigned=bool(cart.get("assigned_sales_id")),
            final_offer=bool(active.get("is_final_offer")) if active else False,
        )
        return {
            "facts": facts,
            "quotation": active,
            "negotiation": negotiation,
            "order": order,
        }

    def describe(self, db, *, tenant_id: str, cart: Mapping[str, Any]) -> Dict[str, Any]:
        context = self.collect(db, tenant_id=tenant_id, cart=cart)
        status = derive_from_facts(context["facts"])
        stage = stage_for_canonical_status(status)
        quotation = context["quotation"]
        negotiation = context["negotiation"]
        order = context["order"]
        return {
            "cart_id": cart["id"],
            "canonical_status": status,
            "label": canonical_label(status),
            "sales_status": sales_module_status(status),
            "rank": lifecycle_rank(status),
            "stage": stage,
            "process_steps": build_process_steps(stage),
            "can_use_negotiation_chat": can_use_negotiation_chat(status),
            "active_quotation_id": quotation["id"] if quotation else None,
            "negotiation_id": negotiation["id"] if negotiation else None,
            "order_id": order["id"] if order else None,
            "cart_flow": flow_meta("cart", cart.get("status")),
        }

    def cart_workflow(self, db, *, tenant_id: str, cart: Mapping[str, Any]) -> ServiceOutput:
        return ServiceOutput(payload=self.describe(db, tenant_id=tenant_id, cart=cart), status_code=200)
