from __future__ import annotations

from typing import Dict, List


PROCESS_STAGES: List[Dict[str, str]] = [
    {"key": "request", "label": "Request"},
    {"key": "review", "label": "Review"},
    {"key": "quotation", "label": "Quotation"},
    {"key": "order", "label": "Order"},
    {"key": "fulfillment", "label": "Fulfillment"},
]


ACTION_LABELS: Dict[str, str] = {
    "add_item": "Add item",
    "edit_item": "Edit item",
    "remove_item": "Remove item",
    "submit_cart": "Request quote",
    "validate_inventory": "Validate inventory",
    "forward_to_sales": "Forward to sales",
    "create_quotation": "Prepare quotation",
    "close_request": "Close request",
    "edit_quotation": "Edit quotation",
    "send_quotation": "Send quotation",
    "accept_quotation": "Accept offer",
    "reject_quotation": "Decline offer",
    "open_negotiation": "Negotiate",
    "view_order": "View order",
    "view_history": "View history",
    "approve_final_check": "Approve final check",
    "reject_final_check": "Reject final check",
    "send_payment_link": "Send payment link",
    "record_payment": "Pay",
    "forward_to_ops": "Forward to operations",
    "update_order_status": "Update status",
    "cancel_order": "Cancel order",
}


FLOW_POLICY: Dict[str, Dict[str, Dict[str, object]]] = {
    "cart": {
        "draft": {
            "allowed_actions": ["add_item", "edit_item", "remove_item", "submit_cart"],
            "primary_action": "submit_cart",
        },
        "submitted": {
            "allowed_actions": ["validate_inventory", "forward_to_sales", "close_request"],
            "primary_action": "validate_inventory",
        },
        "under_review": {
            "allowed_actions": [
                "validate_inventory",
                "forward_to_sales",
                "create_quotation",
                "close_request",
            ],
            "primary_action": "create_quotation",
        },
        "quoted": {
            "allowed_actions": ["create_quotation", "close_request", "view_history"],
            "primary_action": "view_history",
        },
        "closed": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
    },
    "quotation": {
        "draft": {
            "allowed_actions": ["edit_quotation", "send_quotation"],
            "primary_action": "send_quotation",
        },
        "sent": {
            "allowed_actions": ["accept_quotation", "reject_quotation", "open_negotiation"],
            "primary_action": "accept_quotation",
        },
        "accepted": {
            "allowed_actions": ["view_order", "view_history"],
            "primary_action": "view_order",
        },
        "rejected": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
        "expired": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
    },
    "order": {
        "pending_payment": {
            "allowed_actions": [
                "approve_final_check",
                "reject_final_check",
                "send_payment_link",
                "record_payment",
                "forward_to_ops",
                "update_order_status",
                "cancel_order",
            ],
            "primary_action": "record_payment",
        },
        "confirmed": {
            "allowed_actions": ["update_order_status", "cancel_order", "view_history"],
            "primary_action": "update_order_status",
        },
        "in_procurement": {
            "allowed_actions": ["update_order_status", "cancel_order", "view_history"],
            "primary_action": "update_order_status",
        },
        "processing": {
            "allowed_actions": ["update_order_status", "cancel_order", "view_history"],
            "primary_action": "update_order_status",
        },
        "partially_shipped": {
            "allowed_actions": ["update_order_status", "view_history"],
            "primary_action": "update_order_status",
        },
        "shipped": {
            "allowed_actions": ["update_order_status", "view_history"],
            "primary_action": "update_order_status",
        },
        "partially_delivered": {
            "allowed_actions": ["update_order_status", "view_history"],
            "primary_action": "update_order_status",
        },
        "delivered": {
            "allowed_actions": ["update_order_status", "view_history"],
            "primary_action": "view_history",
        },
        "completed": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
        "cancelled": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
    },
}


ORDER_TRANSITIONS: Dict[str, tuple[str, ...]] = {
    "pending_payment": ("confirmed", "cancelled"),
    "confirmed": ("in_procurement", "processing", "cancelled"),
    "in_procurement": ("processing", "partially_shipped", "shipped", "cancelled"),
    "processing": ("partially_shipped", "shipped", "cancelled"),
    "partially_shipped": ("shipped", "delivered"),
    "shipped": ("delivered", "partially_delivered"),
    "partially_delivered": ("delivered",),
    "delivered": ("completed",),
}


CART_STATUS_TRANSITIONS: Dict[str, tuple[str, ...]] = {
    "submitted": ("under_review", "closed"),
    "under_review": ("quoted", "closed"),
    "quoted": ("under_review", "closed"),
}


def _fallback_policy() -> Dict[str, object]:
    return {"allowed_actions": [], "primary_action": None}


def status_policy(stage: str, status: str | None) -> Dict[str, object]:
    if not status:
        return _fallback_policy()
    return FLOW_POLICY.get(stage, {}).get(str(status), _fallback_policy())


def allowed_actions(stage: str, status: str | None) -> List[str]:
    actions = status_policy(stage, status).get("allowed_actions") or []
    if not isinstance(actions, list):
        return []
    return [str(action) for action in actions]


def primary_action(stage: str, status: str | None) -> str | None:
    action = status_policy(stage, status).get("primary_action")
    if not action:
        return None
    return str(action)


def action_allowed(stage: str, status: str | None, action: str) -> bool:
    if not action:
        return False
    return action in set(allowed_actions(stage, status))


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def flow_meta(stage: str, status: str | None) -> Dict[str, object]:
    primary = primary_action(stage, status)
    return {
        "stage": stage,
        "status": status,
        "allowed_actions": allowed_actions(stage, status),
        "primary_action": primary,
        "primary_action_label": action_label(primary) if primary else None,
    }


def order_transition_allowed(current: str | None, target: str | None) -> bool:
    return str(target or "") in ORDER_TRANSITIONS.get(str(current or ""), ())


def cart_transition_allowed(current: str | None, target: str | None) -> bool:
    return str(target or "") in CART_STATUS_TRANSITIONS.get(str(current or ""), ())


def _stage_index(stage: str) -> int:
    for idx, item in enumerate(PROCESS_STAGES):
        if item["key"] == stage:
            return idx
    return 0


def build_process_steps(current_stage: str) -> List[Dict[str, object]]:
    current_idx = _stage_index(current_stage)
    steps: List[Dict[str, object]] = []
    for idx, stage in enumerate(PROCESS_STAGES):
        state = "future"
        if idx < current_idx:
            state = "completed"
        elif idx == current_idx:
            state = "current"
        steps.append(
            {
                "key": stage["key"],
                "label": stage["label"],
                "state": state,
            }
        )
    return steps


def stage_for_canonical_status(status: str | None) -> str:
    mapping = {
        "SUBMITTED": "request",
        "UNDER_REVIEW": "review",
        "OPS_FORWARDED": "review",
        "QUOTED": "quotation",
        "COUNTER": "quotation",
        "FINAL": "quotation",
        "ACCEPTED_PENDING_OPS_RECHECK": "order",
        "ACCEPTED_PAYMENT_PENDING": "order",
        "PAYMENT_LINK_SENT": "order",
        "PAID_CONFIRMED": "order",
        "READY_FOR_OPS": "fulfillment",
        "IN_OPS_PROCESSING": "fulfillment",
        "CLOSED_ACCEPTED": "fulfillment",
        "CLOSED_DECLINED": "request",
    }
    return mapping.get(str(status or "").strip(), "request")
