import unittest
from decimal import Decimal

from marketplace.errors import StateConflictError, ValidationError
from marketplace.workflow.negotiation import (
    ACCEPTED,
    CLOSED,
    COUNTER_BUYER,
    COUNTER_SELLER,
    OPEN,
    awaiting_party,
    build_round_items,
    check_round_integrity,
    plan_accept,
    plan_close,
    plan_counter,
    seed_round,
)


QUOTATION_ITEMS = [
    {"cart_item_id": "ci-1", "unit_price": "100.00", "quantity": 3},
    {"cart_item_id": "ci-2", "unit_price": "50.00", "quantity": 4},
]


def _counter(status: str, party: str, prices=("90.00", "45.00"), last_round: int = 0, **kwargs):
    return plan_counter(
        status=status,
        party=party,
        last_round_number=last_round,
        quotation_items=QUOTATION_ITEMS,
        proposed_items=[
            {"cart_item_id": "ci-1", "unit_price": prices[0]},
            {"cart_item_id": "ci-2", "unit_price": prices[1]},
        ],
        **kwargs,
    )


class NegotiationTurnsTest(unittest.TestCase):
    def test_seed_round_carries_quoted_prices(self) -> None:
        draft = seed_round(QUOTATION_ITEMS)
        self.assertEqual(draft.round_number, 0)
        self.assertEqual(draft.party, "seller")
        self.assertEqual(draft.status_after, OPEN)
        self.assertEqual(draft.proposed_total, Decimal("500.00"))

    def test_either_party_may_counter_an_open_negotiation(self) -> None:
        buyer_draft = _counter(OPEN, "buyer")
        self.assertEqual(buyer_draft.round_number, 1)
        self.assertEqual(buyer_draft.status_after, COUNTER_BUYER)
        self.assertEqual(buyer_draft.proposed_total, Decimal("450.00"))

        seller_draft = _counter(OPEN, "seller")
        self.assertEqual(seller_draft.status_after, COUNTER_SELLER)

    def test_parties_alternate_after_a_counter(self) -> None:
        draft = _counter(COUNTER_BUYER, "seller", last_round=1)
        self.assertEqual(draft.round_number, 2)
        self.assertEqual(draft.status_after, COUNTER_SELLER)

        with self.assertRaises(ValidationError) as ctx:
            _counter(COUNTER_BUYER, "buyer", last_round=1)
        self.assertEqual(ctx.exception.code, "negotiation_out_of_turn")
        self.assertEqual(ctx.exception.http_status, 409)
        self.assertEqual(ctx.exception.payload.get("awaiting_party"), "seller")

        with self.assertRaises(ValidationError):
            _counter(COUNTER_SELLER, "seller", last_round=2)

    def test_accept_is_gated_by_turn(self) -> None:
        self.assertEqual(plan_accept(status=OPEN, party="buyer"), ACCEPTED)
        self.assertEqual(plan_accept(status=COUNTER_BUYER, party="seller"), ACCEPTED)
        self.assertEqual(plan_accept(status=COUNTER_SELLER, party="buyer"), ACCEPTED)

        for status, party in ((OPEN, "seller"), (COUNTER_BUYER, "buyer"), (COUNTER_SELLER, "seller")):
            with self.assertRaises(ValidationError) as ctx:
                plan_accept(status=status, party=party)
            self.assertEqual(ctx.exception.code, "negotiation_out_of_turn")

    def test_terminal_states_reject_every_action(self) -> None:
        for status in (ACCEPTED, "rejected", CLOSED):
            with self.assertRaises(StateConflictError) as ctx:
                _counter(status, "buyer")
            self.assertEqual(ctx.exception.code, "negotiation_terminal")
            with self.assertRaises(StateConflictError):
                plan_accept(status=status, party="buyer")
            with self.assertRaises(StateConflictError):
                plan_close(status=status, party="seller")

    def test_either_party_may_close_a_live_negotiation(self) -> None:
        self.assertEqual(plan_close(status=OPEN, party="buyer"), CLOSED)
        self.assertEqual(plan_close(status=COUNTER_BUYER, party="seller"), CLOSED)

    def test_round_limit(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _counter(COUNTER_SELLER, "buyer", last_round=4, max_rounds=4)
        self.assertEqual(ctx.exception.code, "negotiation_round_limit")
        self.assertEqual(_counter(COUNTER_SELLER, "buyer", last_round=3, max_rounds=4).round_number, 4)

    def test_awaiting_party(self) -> None:
        self.assertIsNone(awaiting_party(OPEN))
        self.assertEqual(awaiting_party(COUNTER_BUYER), "seller")
        self.assertEqual(awaiting_party(COUNTER_SELLER), "buyer")
        self.assertIsNone(awaiting_party(ACCEPTED))


class RoundItemsTest(unittest.TestCase):
    def test_every_line_must_be_priced(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_round_items(QUOTATION_ITEMS, [{"cart_item_id": "ci-1", "unit_price": "90"}])
        self.assertEqual(ctx.exception.code, "round_items_invalid")
        self.assertEqual(ctx.exception.payload.get("missing_cart_item_ids"), ["ci-2"])

    def test_unknown_and_duplicate_lines_are_refused(self) -> None:
        with self.assertRaises(ValidationError):
            build_round_items(
                QUOTATION_ITEMS,
                [
                    {"cart_item_id": "ci-1", "unit_price": "90"},
                    {"cart_item_id": "ci-9", "unit_price": "40"},
                ],
            )
        with self.assertRaises(ValidationError):
            build_round_items(
                QUOTATION_ITEMS,
                [
                    {"cart_item_id": "ci-1", "unit_price": "90"},
                    {"cart_item_id": "ci-1", "unit_price": "80"},
                    {"cart_item_id": "ci-2", "unit_price": "40"},
                ],
            )

    def test_non_positive_prices_are_refused(self) -> None:
        for price in ("0", "-5", "abc", None):
            with self.assertRaises(ValidationError) as ctx:
                build_round_items(
                    QUOTATION_ITEMS,
                    [
                        {"cart_item_id": "ci-1", "unit_price": price},
                        {"cart_item_id": "ci-2", "unit_price": "40"},
                    ],
                )
            self.assertEqual(ctx.exception.code, "unit_price_invalid")

    def test_quantity_defaults_to_quoted_quantity(self) -> None:
        items = build_round_items(
            QUOTATION_ITEMS,
            [
                {"cart_item_id": "ci-2", "unit_price": "40.005"},
                {"cart_item_id": "ci-1", "unit_price": "90", "quantity": 2},
            ],
        )
        self.assertEqual([item.cart_item_id for item in items], ["ci-1", "ci-2"])
        self.assertEqual(items[0].quantity, 2)
        self.assertEqual(items[1].quantity, 4)
        self.assertEqual(items[1].unit_price, Decimal("40.01"))
        self.assertEqual(items[1].line_total, Decimal("160.04"))

    def test_zero_quantity_is_refused(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_round_items(
                QUOTATION_ITEMS,
                [
                    {"cart_item_id": "ci-1", "unit_price": "90", "quantity": 0},
                    {"cart_item_id": "ci-2", "unit_price": "40"},
                ],
            )
        self.assertEqual(ctx.exception.code, "quantity_invalid")


class RoundIntegrityTest(unittest.TestCase):
    def _round(self, number: int, party: str, total: str, price: str = "100.00") -> dict:
        return {
            "round_number": number,
            "party": party,
            "proposed_total": total,
            "items": [{"unit_price": price, "quantity": 5}],
        }

    def test_sound_history(self) -> None:
        rounds = [
            self._round(0, "seller", "500.00"),
            self._round(1, "buyer", "420.00", "84.00"),
            self._round(2, "seller", "460.00", "92.00"),
        ]
        self.assertEqual(check_round_integrity(rounds), [])

    def test_detects_broken_history(self) -> None:
        rounds = [
            self._round(0, "seller", "500.00"),
            self._round(1, "buyer", "420.00", "84.00"),
            self._round(1, "buyer", "999.00", "84.00"),
        ]
        problems = check_round_integrity(rounds)
        self.assertIn("round_1_not_increasing", problems)
        self.assertIn("round_1_same_party_twice", problems)
        self.assertIn("round_1_total_mismatch", problems)


if __name__ == "__main__":
    unittest.main()
