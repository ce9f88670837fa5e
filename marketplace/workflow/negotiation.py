"""Turn-taking rules for the negotiation rounds of one quotation thread."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from marketplace.errors import StateConflictError, ValidationError
from marketplace.workflow.money import ZERO, line_total, parse_money, to_money


BUYER = "buyer"
SELLER = "seller"
PARTIES = (BUYER, SELLER)

OPEN = "open"
COUNTER_BUYER = "counter_buyer"
COUNTER_SELLER = "counter_seller"
ACCEPTED = "accepted"
REJECTED = "rejected"
CLOSED = "closed"

NEGOTIATION_STATUSES = (OPEN, COUNTER_BUYER, COUNTER_SELLER, ACCEPTED, REJECTED, CLOSED)
TERMINAL_STATUSES = frozenset({ACCEPTED, REJECTED, CLOSED})
NEGOTIATION_ACTIVE_STATUSES = frozenset({OPEN, COUNTER_BUYER, COUNTER_SELLER})

# Who may act next. Round 0 carries the seller's quoted prices, so in `open` the buyer accepts.
_COUNTER_TURNS: Dict[str, frozenset] = {
    OPEN: frozenset({BUYER, SELLER}),
    COUNTER_BUYER: frozenset({SELLER}),
    COUNTER_SELLER: frozenset({BUYER}),
}
_ACCEPT_TURNS: Dict[str, frozenset] = {
    OPEN: frozenset({BUYER}),
    COUNTER_BUYER: frozenset({SELLER}),
    COUNTER_SELLER: frozenset({BUYER}),
}

ORIGINAL_PRICES_MESSAGE = "Original quotation prices"


@dataclass(frozen=True)
class RoundItem:
    cart_item_id: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return line_total(self.unit_price, self.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cart_item_id": self.cart_item_id,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "line_total": str(self.line_total),
        }


@dataclass(frozen=True)
class RoundDraft:
    round_number: int
    party: str
    items: tuple[RoundItem, ...]
    message: str | None
    status_after: str

    @property
    def proposed_total(self) -> Decimal:
        return sum((item.line_total for item in self.items), ZERO)


def is_terminal(status: str | None) -> bool:
    return str(status or "") in TERMINAL_STATUSES


def may_counter(status: str | None, party: str) -> bool:
    return party in _COUNTER_TURNS.get(str(status or ""), frozenset())


def may_accept(status: str | None, party: str) -> bool:
    return party in _ACCEPT_TURNS.get(str(status or ""), frozenset())


def may_close(status: str | None, party: str) -> bool:
    return party in PARTIES and not is_terminal(status) and str(status or "") in NEGOTIATION_STATUSES


def status_after_counter(party: str) -> str:
    return COUNTER_BUYER if party == BUYER else COUNTER_SELLER


def awaiting_party(status: str | None) -> str | None:
    """Party expected to answer next; None when either may act or the thread is over."""
    turns = _COUNTER_TURNS.get(str(status or ""))
    if not turns or len(turns) != 1:
        return None
    return next(iter(turns))


def _terminal_conflict(status: str | None) -> StateConflictError:
    return StateConflictError(
        code="negotiation_terminal",
        message_key="negotiation_terminal",
        payload={"negotiation_status": status},
    )


def _out_of_turn(status: str | None, party: str, action: str) -> ValidationError:
    return ValidationError(
        code="negotiation_out_of_turn",
        message_key="negotiation_out_of_turn",
        http_status=409,
        payload={
            "negotiation_status": status,
            "party": party,
            "action": action,
            "awaiting_party": awaiting_party(status),
        },
    )


def _parse_quantity(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def build_round_items(
    quotation_items: Sequence[Mapping[str, Any]],
    proposed_items: Iterable[Mapping[str, Any]] | None,
) -> tuple[RoundItem, ...]:
    """Every quotation line must be priced exactly once; unknown lines are refused."""
    expected: Dict[str, Mapping[str, Any]] = {str(item["cart_item_id"]): item for item in quotation_items}
    seen: Dict[str, RoundItem] = {}
    for raw in proposed_items or []:
        if not isinstance(raw, Mapping):
            raise ValidationError(code="round_items_invalid", message_key="round_items_invalid")
        cart_item_id = str(raw.get("cart_item_id") or "").strip()
        if cart_item_id not in expected or cart_item_id in seen:
            raise ValidationError(
                code="round_items_invalid",
                message_key="round_items_invalid",
                payload={"cart_item_id": cart_item_id or None},
            )
        unit_price = parse_money(raw.get("unit_price"))
        if unit_price is None or unit_price <= ZERO:
            raise ValidationError(
                code="unit_price_invalid",
                message_key="unit_price_invalid",
                payload={"cart_item_id": cart_item_id},
            )
        raw_quantity = raw.get("quantity")
        quantity = _parse_quantity(expected[cart_item_id].get("quantity") if raw_quantity is None else raw_quantity)
        if quantity is None or quantity < 1:
            raise ValidationError(
                code="quantity_invalid",
                message_key="quantity_invalid",
                payload={"cart_item_id": cart_item_id},
            )
        seen[cart_item_id] = RoundItem(cart_item_id=cart_item_id, unit_price=unit_price, quantity=quantity)

    missing = [cart_item_id for cart_item_id in expected if cart_item_id not in seen]
    if missing:
        raise ValidationError(
            code="round_items_invalid",
            message_key="round_items_invalid",
            payload={"missing_cart_item_ids": missing},
        )
    return tuple(seen[cart_item_id] for cart_item_id in expected)


def seed_round(quotation_items: Sequence[Mapping[str, Any]]) -> RoundDraft:
    items = tuple(
        RoundItem(
            cart_item_id=str(item["cart_item_id"]),
            unit_price=to_money(item.get("unit_price")),
            quantity=int(item.get("quantity") or 1),
        )
        for item in quotation_items
    )
    return RoundDraft(round_number=0, party=SELLER, items=items, message=ORIGINAL_PRICES_MESSAGE, status_after=OPEN)


def plan_counter(
    *,
    status: str | None,
    party: str,
    last_round_number: int,
    quotation_items: Sequence[Mapping[str, Any]],
    proposed_items: Iterable[Mapping[str, Any]] | None,
    message: str | None = None,
    max_rounds: int = 0,
) -> RoundDraft:
    if is_terminal(status):
        raise _terminal_conflict(status)
    if not may_counter(status, party):
        raise _out_of_turn(status, party, "counter")
    next_round = int(last_round_number) + 1
    if max_rounds > 0 and next_round > max_rounds:
        raise ValidationError(
            code="negotiation_round_limit",
            message_key="negotiation_round_limit",
            http_status=409,
            payload={"max_rounds": max_rounds},
        )
    items = build_round_items(quotation_items, proposed_items)
    return RoundDraft(
        round_number=next_round,
        party=party,
        items=items,
        message=(message or "").strip() or None,
        status_after=status_after_counter(party),
    )


def plan_accept(*, status: str | None, party: str) -> str:
    if is_terminal(status):
        raise _terminal_conflict(status)
    if not may_accept(status, party):
        raise _out_of_turn(status, party, "accept")
    return ACCEPTED


def plan_close(*, status: str | None, party: str) -> str:
    if is_terminal(status):
        raise _terminal_conflict(status)
    if not may_close(status, party):
        raise _out_of_turn(status, party, "close")
    return CLOSED


def check_round_integrity(rounds: Sequence[Mapping[str, Any]]) -> List[str]:
    """Returns a list of problems; an empty list means the round history is sound."""
    problems: List[str] = []
    previous_number = -1
    previous_party = None
    for index, current in enumerate(rounds):
        number = int(current.get("round_number") or 0)
        if index == 0 and number != 0:
            problems.append("first_round_not_zero")
        if number <= previous_number:
            problems.append(f"round_{number}_not_increasing")
        party = current.get("party")
        if index > 1 and party == previous_party:
            problems.append(f"round_{number}_same_party_twice")
        items = current.get("items") or []
        computed = sum(
            (line_total(to_money(item.get("unit_price")), int(item.get("quantity") or 0)) for item in items),
            ZERO,
        )
        if computed != to_money(current.get("proposed_total")):
            problems.append(f"round_{number}_total_mismatch")
        previous_number = number
        previous_party = party
    return problems
