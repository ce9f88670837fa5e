"""Single canonical workflow status derived from cart, quotation, negotiation and order facts.

Everything in this module is pure: no database access, no clock reads except
where a ``now`` is passed in explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from marketplace.workflow.money import ZERO, to_money


SUBMITTED = "SUBMITTED"
UNDER_REVIEW = "UNDER_REVIEW"
OPS_FORWARDED = "OPS_FORWARDED"
QUOTED = "QUOTED"
COUNTER = "COUNTER"
FINAL = "FINAL"
ACCEPTED_PENDING_OPS_RECHECK = "ACCEPTED_PENDING_OPS_RECHECK"
ACCEPTED_PAYMENT_PENDING = "ACCEPTED_PAYMENT_PENDING"
PAYMENT_LINK_SENT = "PAYMENT_LINK_SENT"
PAID_CONFIRMED = "PAID_CONFIRMED"
READY_FOR_OPS = "READY_FOR_OPS"
IN_OPS_PROCESSING = "IN_OPS_PROCESSING"
CLOSED_ACCEPTED = "CLOSED_ACCEPTED"
CLOSED_DECLINED = "CLOSED_DECLINED"

LIFECYCLE_ORDER = (
    SUBMITTED,
    UNDER_REVIEW,
    OPS_FORWARDED,
    QUOTED,
    COUNTER,
    FINAL,
    ACCEPTED_PENDING_OPS_RECHECK,
    ACCEPTED_PAYMENT_PENDING,
    PAYMENT_LINK_SENT,
    PAID_CONFIRMED,
    READY_FOR_OPS,
    IN_OPS_PROCESSING,
    CLOSED_ACCEPTED,
    CLOSED_DECLINED,
)

CANONICAL_STATUS_LABELS: Dict[str, str] = {
    SUBMITTED: "Submitted",
    UNDER_REVIEW: "Under Review",
    OPS_FORWARDED: "Forwarded to Sales",
    QUOTED: "Initial Quote",
    COUNTER: "Counter Offer",
    FINAL: "Final Offer",
    ACCEPTED_PENDING_OPS_RECHECK: "Accepted - Ops Recheck",
    ACCEPTED_PAYMENT_PENDING: "Accepted - Payment Pending",
    PAYMENT_LINK_SENT: "Payment Link Sent",
    PAID_CONFIRMED: "Paid",
    READY_FOR_OPS: "Ready for Ops",
    IN_OPS_PROCESSING: "In Fulfillment",
    CLOSED_ACCEPTED: "Closed Won",
    CLOSED_DECLINED: "Closed Lost",
}

CLOSED_LOST_ORDER_STATUSES = frozenset({"cancelled", "canceled", "rejected", "declined", "expired", "failed"})
CLOSED_WON_ORDER_STATUSES = frozenset({"delivered", "completed"})
OPS_PROCESSING_ORDER_STATUSES = frozenset(
    {"confirmed", "in_procurement", "processing", "partially_shipped", "shipped", "partially_delivered"}
)
PAID_PAYMENT_STATUSES = frozenset({"paid", "success", "completed", "captured", "confirmed"})
NEGOTIATION_ACTIVE_STATUSES = frozenset({"open", "counter_buyer", "counter_seller"})
QUOTATION_DECLINED_STATUSES = frozenset({"rejected", "expired"})

DEFAULT_EXPIRING_SOON_WINDOW = timedelta(hours=24)


def _normalize(value: Any) -> str:
    return str(value or "").strip().lower()


def _has_value(value: Any) -> bool:
    return bool(str(value or "").strip())


@dataclass(frozen=True)
class PaymentFacts:
    status: str
    amount: Decimal = ZERO

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PaymentFacts":
        return cls(status=_normalize(row.get("status")), amount=to_money(row.get("amount")))


@dataclass(frozen=True)
class OrderFacts:
    status: str
    total_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    ops_final_check_status: str | None = None
    payment_link_sent_at: str | None = None
    payment_confirmed_at: str | None = None
    forwarded_to_ops_at: str | None = None
    payments: tuple[PaymentFacts, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], payments: Iterable[Mapping[str, Any]] = ()) -> "OrderFacts":
        return cls(
            status=_normalize(row.get("status")),
            total_amount=to_money(row.get("total_amount")),
            paid_amount=to_money(row.get("paid_amount")),
            ops_final_check_status=_normalize(row.get("ops_final_check_status")) or None,
            payment_link_sent_at=row.get("payment_link_sent_at") or None,
            payment_confirmed_at=row.get("payment_confirmed_at") or None,
            forwarded_to_ops_at=row.get("forwarded_to_ops_at") or None,
            payments=tuple(PaymentFacts.from_row(payment) for payment in payments),
        )


@dataclass(frozen=True)
class WorkflowFacts:
    cart_status: str | None
    latest_quotation_status: str | None = None
    negotiation_status: str | None = None
    order: OrderFacts | None = None
    sales_assigned: bool = False
    final_offer: bool = False


def is_paid_payment_status(status: str | None) -> bool:
    return _normalize(status) in PAID_PAYMENT_STATUSES


def resolve_ops_final_check(
    status: str | None,
    *,
    payment_link_sent_at: str | None = None,
    payment_confirmed_at: str | None = None,
    forwarded_to_ops_at: str | None = None,
) -> str:
    """Explicit status wins; legacy rows without one count as approved once anything downstream happened."""
    normalized = _normalize(status)
    if normalized in {"pending", "approved", "rejected"}:
        return normalized
    if _has_value(payment_link_sent_at) or _has_value(payment_confirmed_at) or _has_value(forwarded_to_ops_at):
        return "approved"
    return "pending"


def order_ops_final_check(order: OrderFacts) -> str:
    return resolve_ops_final_check(
        order.ops_final_check_status,
        payment_link_sent_at=order.payment_link_sent_at,
        payment_confirmed_at=order.payment_confirmed_at,
        forwarded_to_ops_at=order.forwarded_to_ops_at,
    )


def is_order_paid(order: OrderFacts | None) -> bool:
    if order is None:
        return False
    if _has_value(order.payment_confirmed_at):
        return True
    if order.total_amount > ZERO and order.paid_amount >= order.total_amount:
        return True
    return any(is_paid_payment_status(payment.status) for payment in order.payments)


def _from_order(order: OrderFacts) -> str:
    if order.status in CLOSED_LOST_ORDER_STATUSES:
        return CLOSED_DECLINED
    if order.status in CLOSED_WON_ORDER_STATUSES:
        return CLOSED_ACCEPTED
    if order.status in OPS_PROCESSING_ORDER_STATUSES:
        return IN_OPS_PROCESSING
    if _has_value(order.forwarded_to_ops_at):
        return READY_FOR_OPS
    if is_order_paid(order):
        return PAID_CONFIRMED
    if _has_value(order.payment_link_sent_at):
        return PAYMENT_LINK_SENT
    if order_ops_final_check(order) == "approved":
        return ACCEPTED_PAYMENT_PENDING
    return ACCEPTED_PENDING_OPS_RECHECK


def derive_canonical_workflow_status(
    cart_status: str | None,
    latest_quotation_status: str | None = None,
    negotiation_status: str | None = None,
    order: OrderFacts | None = None,
    *,
    sales_assigned: bool = False,
    final_offer: bool = False,
) -> str:
    if order is not None:
        return _from_order(order)

    negotiation = _normalize(negotiation_status)
    quotation = _normalize(latest_quotation_status)
    if negotiation == "accepted" or quotation == "accepted":
        return ACCEPTED_PENDING_OPS_RECHECK
    if negotiation in NEGOTIATION_ACTIVE_STATUSES and quotation not in QUOTATION_DECLINED_STATUSES:
        return FINAL if final_offer else COUNTER
    if quotation == "sent":
        return FINAL if final_offer else QUOTED
    if quotation in QUOTATION_DECLINED_STATUSES:
        return CLOSED_DECLINED

    cart = _normalize(cart_status)
    if cart == "submitted":
        return SUBMITTED
    if cart == "under_review":
        return OPS_FORWARDED if sales_assigned else UNDER_REVIEW
    if cart == "quoted":
        return QUOTED
    if cart == "closed":
        return CLOSED_DECLINED
    return SUBMITTED


def derive_from_facts(facts: WorkflowFacts) -> str:
    return derive_canonical_workflow_status(
        facts.cart_status,
        facts.latest_quotation_status,
        facts.negotiation_status,
        facts.order,
        sales_assigned=facts.sales_assigned,
        final_offer=facts.final_offer,
    )


def sales_module_status(status: str) -> str:
    if status in {PAID_CONFIRMED, READY_FOR_OPS, IN_OPS_PROCESSING}:
        return CLOSED_ACCEPTED
    return status


def lifecycle_rank(status: str) -> int:
    try:
        return LIFECYCLE_ORDER.index(status)
    except ValueError:
        return -1


def canonical_label(status: str) -> str:
    return CANONICAL_STATUS_LABELS.get(status, status)


def can_use_negotiation_chat(status: str) -> bool:
    return status in {QUOTED, COUNTER}


def _thread_timestamp(quotation: Mapping[str, Any]) -> str:
    return str(quotation.get("updated_at") or quotation.get("sent_at") or quotation.get("created_at") or "")


def latest_quotation_for_thread(quotations: Iterable[Mapping[str, Any]] | None) -> Mapping[str, Any] | None:
    candidates = list(quotations or [])
    if not candidates:
        return None
    return max(candidates, key=_thread_timestamp)


def resolve_active_quotation_id(
    requested_id: str,
    quotations: Iterable[Mapping[str, Any]] | None,
) -> tuple[str, bool]:
    latest = latest_quotation_for_thread(quotations)
    if latest is None:
        return requested_id, False
    latest_id = str(latest.get("id"))
    return latest_id, latest_id != str(requested_id)


def _parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expiring_soon(
    expires_at: str | datetime | None,
    now: datetime,
    window: timedelta = DEFAULT_EXPIRING_SOON_WINDOW,
) -> bool:
    """Display decoration only; never feeds the derivation."""
    expiry = _parse_timestamp(expires_at)
    current = _parse_timestamp(now)
    if expiry is None or current is None:
        return False
    return current < expiry <= current + window


def is_expired(expires_at: str | datetime | None, now: datetime) -> bool:
    expiry = _parse_timestamp(expires_at)
    current = _parse_timestamp(now)
    if expiry is None or current is None:
        return False
    return expiry <= current


def derive_offer_iterations(rounds: Sequence[Mapping[str, Any]] | None) -> List[Dict[str, Any]]:
    ordered = sorted(rounds or [], key=lambda item: int(item.get("round_number") or 0))
    last_idx = len(ordered) - 1
    iterations: List[Dict[str, Any]] = []
    for idx, item in enumerate(ordered):
        if idx == 0:
            kind = "INITIAL"
        elif idx == last_idx:
            kind = "FINAL"
        else:
            kind = "COUNTER"
        iterations.append(
            {
                "round_number": int(item.get("round_number") or 0),
                "type": kind,
                "party": item.get("party"),
                "at": item.get("created_at"),
                "amount": str(to_money(item.get("proposed_total"))),
            }
        )
    return iterations


def derive_sales_payment_state(order: OrderFacts | None, local_link_sent: bool = False) -> Dict[str, Any]:
    link_sent = bool((order is not None and _has_value(order.payment_link_sent_at)) or local_link_sent)
    paid = is_order_paid(order)
    outstanding = ZERO
    if order is not None:
        outstanding = max(ZERO, order.total_amount - order.paid_amount)
    return {
        "link_status": "SENT" if link_sent else "NOT_SENT",
        "payment_status": "PAID" if paid else "UNPAID",
        "confirmed_at": order.payment_confirmed_at if order is not None else None,
        "outstanding_amount": str(outstanding),
    }
