from __future__ import annotations

from typing import Dict, List

from marketplace.workflow.canonical_status import CANONICAL_STATUS_LABELS, LIFECYCLE_ORDER
from marketplace.workflow.flow_policy import ACTION_LABELS, PROCESS_STAGES


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Jewel Sourcing Marketplace",
    "cart": "Intended cart",
    "quotation": "Quotation",
    "negotiation": "Negotiation",
    "order": "Order",
    "payment": "Payment",
    "manufacturer": "Manufacturer",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "cart": [
        {"key": "draft", "label": "Draft", "description": "Buyer is still assembling the cart."},
        {"key": "submitted", "label": "Submitted", "description": "Quote requested, waiting for operations."},
        {"key": "under_review", "label": "Under review", "description": "Operations is validating inventory."},
        {"key": "quoted", "label": "Quoted", "description": "A quotation was sent to the buyer."},
        {"key": "closed", "label": "Closed", "description": "Request closed without further action."},
    ],
    "quotation": [
        {"key": "draft", "label": "Draft", "description": "Sales is preparing prices."},
        {"key": "sent", "label": "Sent", "description": "Offer sent and awaiting the buyer."},
        {"key": "accepted", "label": "Accepted", "description": "Buyer accepted the offer."},
        {"key": "rejected", "label": "Rejected", "description": "Buyer declined the offer."},
        {"key": "expired", "label": "Expired", "description": "Validity window elapsed."},
    ],
    "negotiation": [
        {"key": "open", "label": "Open", "description": "Negotiation opened on the quoted prices."},
        {"key": "counter_buyer", "label": "Buyer countered", "description": "Waiting for the sales team."},
        {"key": "counter_seller", "label": "Seller countered", "description": "Waiting for the buyer."},
        {"key": "accepted", "label": "Accepted", "description": "Latest round accepted."},
        {"key": "rejected", "label": "Rejected", "description": "Quotation was declined or expired."},
        {"key": "closed", "label": "Closed", "description": "Negotiation closed; quoted prices stand."},
    ],
    "order": [
        {"key": "pending_payment", "label": "Pending payment", "description": "Waiting for checks and payment."},
        {"key": "confirmed", "label": "Confirmed", "description": "Paid and confirmed by operations."},
        {"key": "in_procurement", "label": "In procurement", "description": "Sourcing from manufacturers."},
        {"key": "processing", "label": "Processing", "description": "Being produced or packed."},
        {"key": "partially_shipped", "label": "Partially shipped", "description": "Some items dispatched."},
        {"key": "shipped", "label": "Shipped", "description": "All items dispatched."},
        {"key": "partially_delivered", "label": "Partially delivered", "description": "Some items delivered."},
        {"key": "delivered", "label": "Delivered", "description": "All items delivered."},
        {"key": "completed", "label": "Completed", "description": "Order closed after delivery."},
        {"key": "cancelled", "label": "Cancelled", "description": "Order cancelled."},
    ],
    "payment": [
        {"key": "pending", "label": "Pending", "description": "Awaiting confirmation."},
        {"key": "paid", "label": "Paid", "description": "Confirmed by the gateway."},
        {"key": "completed", "label": "Completed", "description": "Confirmed manually."},
        {"key": "failed", "label": "Failed", "description": "Payment did not go through."},
    ],
}


UI_TEXTS: Dict[str, str] = {
    "label.expiring_soon": "Expiring soon",
    "label.final_offer": "Final offer",
    "label.initial_quote": "Initial quote",
    "label.counter_offer": "Counter offer",
    "label.original_quotation_prices": "Original quotation prices",
    "impact.reject_quotation": "The quotation is declined and any active negotiation ends.",
    "impact.reject_final_check": "The order is cancelled, the quotation rejected and the request closed.",
    "impact.cancel_order": "The order is cancelled and will not be fulfilled.",
    "impact.close_negotiation": "Negotiation ends; the original quoted prices remain valid.",
    "notice.payment_confirmed": "Payment confirmed. Your order is being forwarded to operations.",
    "notice.payment_already_confirmed": "This payment was already confirmed.",
    "notice.payment_not_paid": "The payment has not been completed yet.",
    "notice.payment_verification_failed": "We could not verify the payment right now. We will keep checking.",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "cart_created": "Cart created.",
        "cart_submitted": "Quote requested.",
        "inventory_validated": "Inventory validated.",
        "forwarded_to_sales": "Request forwarded to sales.",
        "quotation_created": "Quotation drafted.",
        "quotation_sent": "Quotation sent to the buyer.",
        "quotation_accepted": "Quotation accepted. Order created.",
        "quotation_already_accepted": "Quotation was already accepted.",
        "quotation_rejected": "Quotation declined.",
        "negotiation_opened": "Negotiation opened.",
        "round_submitted": "Counter offer submitted.",
        "negotiation_accepted": "Offer accepted.",
        "negotiation_closed": "Negotiation closed.",
        "final_check_approved": "Final check approved.",
        "final_check_rejected": "Final check rejected; order cancelled.",
        "payment_link_sent": "Payment link sent.",
        "payment_recorded": "Payment recorded.",
        "payment_confirmed": "Payment confirmed.",
        "forwarded_to_ops": "Order forwarded to operations.",
        "order_status_updated": "Order status updated.",
        "catalog_seeded": "Demo catalog loaded.",
    },
    "error": {
        "action_not_allowed_for_status": "This action is not allowed for the current status.",
        "action_invalid": "Invalid action for this operation.",
        "confirmation_required": "Explicitly confirm this critical action to continue.",
        "not_found": "Record not found.",
        "state_conflict": "This record changed in the meantime. Reload and try again.",
        "permission_denied": "You do not have permission to perform this action.",
        "rate_limit_exceeded": "Too many requests. Try again shortly.",
        "status_invalid": "Status is not valid for this step.",
        "unexpected_error": "The operation could not be completed. Try again shortly.",
        "payment_gateway_unavailable": "The payment provider is unavailable right now. Try again shortly.",
        "payment_gateway_rejected": "The payment provider rejected the request.",
        "cart_not_found": "Cart not found.",
        "cart_item_not_found": "Cart item not found.",
        "cart_locked": "The cart can no longer be edited.",
        "cart_empty": "Add at least one item before requesting a quote.",
        "cart_not_validated": "Validate inventory for every item first.",
        "catalog_reference_required": "Pick a recommended product for the item.",
        "quantity_invalid": "Quantity must be a whole number of at least 1.",
        "sales_person_required": "Select a sales person.",
        "reason_required": "A reason is required.",
        "quotation_not_found": "Quotation not found.",
        "quotation_not_editable": "Only draft quotations can be edited.",
        "quotation_items_invalid": "Price every cart item with a positive unit price.",
        "quotation_not_sent": "The quotation has not been sent.",
        "quotation_not_active": "A newer quotation replaced this one.",
        "quotation_expired": "The quotation has expired.",
        "quotation_already_accepted": "The quotation was already accepted.",
        "quotation_closed": "The quotation is no longer open.",
        "negotiation_not_found": "Negotiation not found.",
        "negotiation_exists": "A negotiation already exists for this quotation.",
        "negotiation_active": "Finish or close the negotiation before accepting the quotation directly.",
        "negotiation_terminal": "The negotiation has already ended.",
        "negotiation_out_of_turn": "It is the other party's turn.",
        "negotiation_round_limit": "The maximum number of rounds was reached.",
        "negotiation_round_conflict": "Another offer was submitted at the same time. Reload the negotiation.",
        "round_items_invalid": "Every quotation item must be priced exactly once.",
        "unit_price_invalid": "Unit price must be greater than zero.",
        "order_not_found": "Order not found.",
        "order_closed": "The order is closed.",
        "ops_check_not_approved": "Operations has not approved the final check.",
        "ops_check_already_resolved": "The final check was already resolved.",
        "payment_link_required": "Send the payment link first.",
        "payment_amount_invalid": "Payment amount must be greater than zero.",
        "payment_exceeds_outstanding": "Payment amount exceeds the outstanding balance.",
        "payment_method_invalid": "Payment method is not supported.",
        "payment_not_found": "Payment not found.",
        "payment_not_pending": "Only pending payments can be confirmed.",
        "payment_not_confirmed": "The payment provider did not confirm the payment.",
        "order_not_paid": "The order is not fully paid.",
        "order_not_forwarded": "The order has not been forwarded to operations.",
        "order_already_forwarded": "The order was already forwarded to operations.",
        "order_transition_invalid": "This status change is not allowed.",
        "session_id_required": "Missing payment session.",
        "order_exists": "An order already exists for this request.",
        "cart_access_denied": "This request belongs to another buyer.",
        "product_name_required": "Product name is required.",
        "payment_duplicate": "This payment reference was already recorded.",
        "payment_order_mismatch": "The payment provider recorded this transaction for another order.",
        "payment_amount_mismatch": "The captured amount does not match the payment amount.",
        "transaction_ref_required": "Provide the transaction reference of the payment.",
    },
    "confirm": {
        "reject_quotation": "Decline this quotation?",
        "reject_final_check": "Reject the final check and cancel the order?",
        "cancel_order": "Cancel this order?",
        "close_negotiation": "Close the negotiation and keep the quoted prices?",
    },
}


def status_label(group: str, key: str | None) -> str:
    for item in STATUS_GROUPS.get(group, []):
        if item["key"] == key:
            return item["label"]
    return str(key or "")


def canonical_status_items() -> List[Dict[str, str]]:
    return [{"key": status, "label": CANONICAL_STATUS_LABELS[status]} for status in LIFECYCLE_ORDER]


def get_ui_text(key: str, default: str | None = None) -> str:
    if key in UI_TEXTS:
        return UI_TEXTS[key]
    if default is not None:
        return default
    return key


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def confirm_message(key: str, default: str | None = None) -> str:
    return get_message("confirm", key, default)


def frontend_bundle() -> Dict[str, object]:
    return {
        "terms": FRIENDLY_TERMS,
        "status_groups": STATUS_GROUPS,
        "canonical_statuses": canonical_status_items(),
        "process_stages": PROCESS_STAGES,
        "action_labels": ACTION_LABELS,
        "texts": UI_TEXTS,
        "messages": MESSAGES,
    }
