import unittest
from datetime import timedelta
from unittest.mock import patch

from marketplace import create_app
from marketplace.config import Config
from marketplace.db import close_db, get_db
from marketplace.infrastructure.repositories import NegotiationRepository, OrderRepository
from marketplace.infrastructure.repositories.base import to_iso, utc_now
from tests.helpers.marketplace_flow import MarketplaceFlow
from tests.helpers.temp_db import TempDbSandbox


class QuotationFlowApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="quotation_flow")
        TempConfig = self._temp_db.make_config(Config, TESTING=True)
        self.app = create_app(TempConfig)
        self.client = self.app.test_client()
        self.tenant_id = "tenant-quotation-flow"
        self.flow = MarketplaceFlow(self, self.client, self.tenant_id)
        self.flow.seed()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _open_negotiation(self, quotation_id: str) -> dict:
        response = self.client.post(
            f"/api/quotations/{quotation_id}/negotiation",
            headers=self.flow.buyer,
            json={"note": "Volume order, can we do better?"},
        )
        self.assertEqual(response.status_code, 201, msg=response.get_data(as_text=True))
        return response.get_json()["negotiation"]

    def _counter(self, negotiation_id: str, cart: dict, price: str, headers: dict):
        return self.client.post(
            f"/api/negotiations/{negotiation_id}/counter",
            headers=headers,
            json={"items": [{"cart_item_id": cart["items"][0]["id"], "unit_price": price}]},
        )

    def _workflow_status(self, cart_id: str) -> str:
        response = self.client.get(f"/api/carts/{cart_id}/workflow", headers=self.flow.buyer)
        self.assertEqual(response.status_code, 200)
        return response.get_json()["canonical_status"]

    def test_validation_report_moves_cart_under_review(self) -> None:
        cart = self.flow.create_cart(
            [
                {"product_name": "18K gold band ring", "sku_code": "RING-GLD-18K", "quantity": 3},
                {"product_name": "Platinum tiara", "sku_code": "TIARA-PLT-01", "quantity": 1},
            ]
        )
        self.client.post(f"/api/carts/{cart['id']}/submit", headers=self.flow.buyer)

        response = self.client.post(f"/api/ops/carts/{cart['id']}/validate-inventory", headers=self.flow.ops)
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["cart_status"], "under_review")
        self.assertEqual(payload["summary"]["fully_available"], 1)
        self.assertEqual(payload["summary"]["unavailable"], 1)
        self.assertEqual(payload["summary"]["total_shortfall"], 0)
        self.assertEqual(self._workflow_status(cart["id"]), "UNDER_REVIEW")

    def test_quotation_requires_validated_cart(self) -> None:
        cart = self.flow.create_cart()
        self.client.post(f"/api/carts/{cart['id']}/submit", headers=self.flow.buyer)
        forward = self.client.post(
            f"/api/ops/carts/{cart['id']}/forward-to-sales",
            headers=self.flow.ops,
            json={"sales_person_id": "sales-1"},
        )
        self.assertEqual(forward.status_code, 200)
        self.assertEqual(self._workflow_status(cart["id"]), "OPS_FORWARDED")

        response = self.client.post(
            f"/api/carts/{cart['id']}/quotations",
            headers=self.flow.sales,
            json={"items": [{"cart_item_id": cart["items"][0]["id"], "unit_price": "100.00"}]},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "cart_not_validated")

    def test_buyer_cannot_prepare_quotation(self) -> None:
        cart = self.flow.submitted_and_validated_cart()
        response = self.client.post(
            f"/api/carts/{cart['id']}/quotations",
            headers=self.flow.buyer,
            json={"items": [{"cart_item_id": cart["items"][0]["id"], "unit_price": "100.00"}]},
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "permission_denied")

    def test_draft_quotation_is_hidden_from_buyer(self) -> None:
        cart = self.flow.submitted_and_validated_cart()
        quotation = self.flow.create_quotation(cart, ["100.00"])
        response = self.client.get(f"/api/quotations/{quotation['id']}", headers=self.flow.buyer)
        self.assertEqual(response.status_code, 404)

    def test_negotiated_acceptance_uses_latest_round(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        self.assertEqual(quotation["total_amount"], "500.00")
        self.assertEqual(self._workflow_status(cart["id"]), "QUOTED")

        negotiation = self._open_negotiation(quotation["id"])
        self.assertEqual(negotiation["status"], "open")
        self.assertEqual(negotiation["rounds"][0]["round_number"], 0)
        self.assertEqual(negotiation["rounds"][0]["proposed_total"], "500.00")
        negotiation_id = negotiation["id"]

        buyer_counter = self._counter(negotiation_id, cart, "84.00", self.flow.buyer)
        self.assertEqual(buyer_counter.status_code, 201)
        self.assertEqual(buyer_counter.get_json()["round_number"], 1)
        self.assertEqual(buyer_counter.get_json()["status"], "counter_buyer")
        self.assertEqual(buyer_counter.get_json()["proposed_total"], "420.00")
        self.assertEqual(self._workflow_status(cart["id"]), "COUNTER")

        seller_counter = self._counter(negotiation_id, cart, "92.00", self.flow.sales)
        self.assertEqual(seller_counter.status_code, 201)
        self.assertEqual(seller_counter.get_json()["round_number"], 2)
        self.assertEqual(seller_counter.get_json()["status"], "counter_seller")
        self.assertEqual(seller_counter.get_json()["awaiting_party"], "buyer")

        accept = self.client.post(f"/api/negotiations/{negotiation_id}/accept", headers=self.flow.buyer)
        self.assertEqual(accept.status_code, 201, msg=accept.get_data(as_text=True))
        payload = accept.get_json()
        self.assertEqual(payload["status"], "accepted")
        self.assertEqual(payload["accepted_round_number"], 2)
        self.assertEqual(payload["order"]["total_amount"], "460.00")

        order = self.flow.order(payload["order"]["id"])
        self.assertEqual(order["items"][0]["unit_price"], "92.00")
        self.assertEqual(order["negotiation_id"], negotiation_id)
        self.assertEqual(order["canonical_status"], "ACCEPTED_PENDING_OPS_RECHECK")
        self.assertEqual(self._workflow_status(cart["id"]), "ACCEPTED_PENDING_OPS_RECHECK")

        repeat = self.client.post(f"/api/negotiations/{negotiation_id}/accept", headers=self.flow.buyer)
        self.assertEqual(repeat.status_code, 200)
        self.assertTrue(repeat.get_json()["already_accepted"])
        self.assertEqual(repeat.get_json()["order"]["id"], payload["order"]["id"])

    def test_double_accept_creates_a_single_order(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])

        first = self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer)
        second = self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer)

        self.assertEqual(first.status_code, 201)
        self.assertFalse(first.get_json()["already_accepted"])
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.get_json()["already_accepted"])
        self.assertEqual(first.get_json()["order"]["id"], second.get_json()["order"]["id"])

        with self.app.app_context():
            orders = OrderRepository(tenant_id=self.tenant_id).list_for_cart(get_db(), cart["id"])
            close_db()
        self.assertEqual(len(orders), 1)

    def test_stale_quotation_redirects_to_active_one(self) -> None:
        cart, first = self.flow.sent_quotation(["100.00"])
        second = self.flow.create_quotation(cart, ["95.00"])
        self.flow.send_quotation(second["id"])

        response = self.client.get(f"/api/quotations/{first['id']}", headers=self.flow.buyer)
        self.assertEqual(response.status_code, 303)
        self.assertEqual(response.get_json()["redirect_to"], second["id"])
        self.assertTrue(response.headers["Location"].endswith(f"/api/quotations/{second['id']}"))

        stale_accept = self.client.post(f"/api/quotations/{first['id']}/accept", headers=self.flow.buyer)
        self.assertEqual(stale_accept.status_code, 409)
        self.assertEqual(stale_accept.get_json()["error"], "quotation_not_active")
        self.assertEqual(stale_accept.get_json()["latest_quotation_id"], second["id"])

        active = self.client.get(f"/api/quotations/{second['id']}", headers=self.flow.buyer)
        self.assertEqual(active.status_code, 200)
        self.assertEqual(active.get_json()["quotation"]["total_amount"], "475.00")

    def test_accepted_request_cannot_be_quoted_again(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        accept = self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer)
        self.assertEqual(accept.status_code, 201)
        order_id = accept.get_json()["order"]["id"]

        requote = self.client.post(
            f"/api/carts/{cart['id']}/quotations",
            headers=self.flow.sales,
            json={"items": [{"cart_item_id": cart["items"][0]["id"], "unit_price": "90.00"}]},
        )
        self.assertEqual(requote.status_code, 409)
        self.assertEqual(requote.get_json()["error"], "order_exists")
        self.assertEqual(requote.get_json()["order_id"], order_id)

        with self.app.app_context():
            orders = OrderRepository(tenant_id=self.tenant_id).list_for_cart(get_db(), cart["id"])
            close_db()
        self.assertEqual([row["id"] for row in orders], [order_id])

    def test_draft_prepared_before_acceptance_cannot_be_sent(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        draft = self.flow.create_quotation(cart, ["90.00"])
        self.assertEqual(
            self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer).status_code, 201
        )

        send = self.client.post(f"/api/quotations/{draft['id']}/send", headers=self.flow.sales)
        self.assertEqual(send.status_code, 409)
        self.assertEqual(send.get_json()["error"], "order_exists")

    def test_superseded_negotiation_is_frozen(self) -> None:
        cart, first = self.flow.sent_quotation(["100.00"])
        negotiation_id = self._open_negotiation(first["id"])["id"]
        self.assertEqual(self._counter(negotiation_id, cart, "84.00", self.flow.buyer).status_code, 201)

        second = self.flow.create_quotation(cart, ["95.00"])
        self.flow.send_quotation(second["id"])

        stale_accept = self.client.post(f"/api/negotiations/{negotiation_id}/accept", headers=self.flow.sales)
        self.assertEqual(stale_accept.status_code, 409)
        self.assertEqual(stale_accept.get_json()["error"], "quotation_not_active")
        self.assertEqual(stale_accept.get_json()["latest_quotation_id"], second["id"])

        stale_counter = self._counter(negotiation_id, cart, "90.00", self.flow.sales)
        self.assertEqual(stale_counter.status_code, 409)
        self.assertEqual(stale_counter.get_json()["error"], "quotation_not_active")

        accept = self.client.post(f"/api/quotations/{second['id']}/accept", headers=self.flow.buyer)
        self.assertEqual(accept.status_code, 201)
        workflow = self.client.get(f"/api/carts/{cart['id']}/workflow", headers=self.flow.buyer).get_json()
        self.assertEqual(workflow["order_id"], accept.get_json()["order"]["id"])

        with self.app.app_context():
            orders = OrderRepository(tenant_id=self.tenant_id).list_for_cart(get_db(), cart["id"])
            close_db()
        self.assertEqual(len(orders), 1)

    def test_concurrent_counter_for_same_round_conflicts(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        negotiation_id = self._open_negotiation(quotation["id"])["id"]
        self.assertEqual(self._counter(negotiation_id, cart, "84.00", self.flow.buyer).status_code, 201)

        # The seller read the thread before the buyer's round 1 landed.
        with patch.object(NegotiationRepository, "latest_round", return_value={"round_number": 0}):
            response = self._counter(negotiation_id, cart, "92.00", self.flow.sales)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "negotiation_round_conflict")
        self.assertEqual(response.get_json()["round_number"], 1)

        detail = self.client.get(f"/api/negotiations/{negotiation_id}", headers=self.flow.sales).get_json()
        self.assertEqual(detail["negotiation"]["last_round_number"], 1)
        self.assertEqual(detail["negotiation"]["status"], "counter_buyer")

    def test_direct_accept_blocked_while_negotiating(self) -> None:
        _cart, quotation = self.flow.sent_quotation(["100.00"])
        negotiation = self._open_negotiation(quotation["id"])

        response = self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "negotiation_active")
        self.assertEqual(response.get_json()["negotiation_id"], negotiation["id"])

        again = self.client.post(f"/api/quotations/{quotation['id']}/negotiation", headers=self.flow.sales)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "negotiation_exists")

    def test_out_of_turn_actions_are_refused(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        negotiation_id = self._open_negotiation(quotation["id"])["id"]

        seller_accept = self.client.post(f"/api/negotiations/{negotiation_id}/accept", headers=self.flow.sales)
        self.assertEqual(seller_accept.status_code, 409)
        self.assertEqual(seller_accept.get_json()["error"], "negotiation_out_of_turn")

        self.assertEqual(self._counter(negotiation_id, cart, "84.00", self.flow.buyer).status_code, 201)
        repeat = self._counter(negotiation_id, cart, "80.00", self.flow.buyer)
        self.assertEqual(repeat.status_code, 409)
        self.assertEqual(repeat.get_json()["error"], "negotiation_out_of_turn")
        self.assertEqual(repeat.get_json()["awaiting_party"], "seller")

        buyer_accept = self.client.post(f"/api/negotiations/{negotiation_id}/accept", headers=self.flow.buyer)
        self.assertEqual(buyer_accept.status_code, 409)

    def test_counter_must_price_every_line(self) -> None:
        cart, quotation = self.flow.sent_quotation(
            ["100.00", "480.00"],
            items=[
                {"product_name": "18K gold band ring", "sku_code": "RING-GLD-18K", "quantity": 5},
                {"product_name": "Freshwater pearl necklace 22in", "sku_code": "NECK-PRL-22", "quantity": 2},
            ],
        )
        negotiation_id = self._open_negotiation(quotation["id"])["id"]

        missing = self._counter(negotiation_id, cart, "90.00", self.flow.buyer)
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.get_json()["error"], "round_items_invalid")

        zero_price = self.client.post(
            f"/api/negotiations/{negotiation_id}/counter",
            headers=self.flow.buyer,
            json={
                "items": [
                    {"cart_item_id": cart["items"][0]["id"], "unit_price": "0"},
                    {"cart_item_id": cart["items"][1]["id"], "unit_price": "450.00"},
                ]
            },
        )
        self.assertEqual(zero_price.status_code, 400)
        self.assertEqual(zero_price.get_json()["error"], "unit_price_invalid")

    def test_polling_returns_only_new_rounds(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        negotiation_id = self._open_negotiation(quotation["id"])["id"]
        self._counter(negotiation_id, cart, "84.00", self.flow.buyer)
        self._counter(negotiation_id, cart, "92.00", self.flow.sales)

        response = self.client.get(f"/api/negotiations/{negotiation_id}?since_round=1", headers=self.flow.buyer)
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()["negotiation"]
        self.assertEqual([item["round_number"] for item in payload["rounds"]], [2])
        self.assertEqual(payload["last_round_number"], 2)
        self.assertTrue(payload["can_accept"])
        self.assertEqual([item["type"] for item in payload["offer_iterations"]], ["INITIAL", "COUNTER", "FINAL"])

    def test_closing_negotiation_requires_confirmation(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        negotiation_id = self._open_negotiation(quotation["id"])["id"]

        unconfirmed = self.client.post(f"/api/negotiations/{negotiation_id}/close", headers=self.flow.buyer)
        self.assertEqual(unconfirmed.status_code, 400)
        self.assertEqual(unconfirmed.get_json()["error"], "confirmation_required")

        closed = self.client.post(
            f"/api/negotiations/{negotiation_id}/close",
            headers=self.flow.buyer,
            json={"confirm": True, "reason": "Prices are fine as quoted"},
        )
        self.assertEqual(closed.status_code, 200)
        self.assertEqual(closed.get_json()["status"], "closed")

        late_counter = self._counter(negotiation_id, cart, "84.00", self.flow.sales)
        self.assertEqual(late_counter.status_code, 409)
        self.assertEqual(late_counter.get_json()["error"], "negotiation_terminal")

        accept = self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer)
        self.assertEqual(accept.status_code, 201)
        self.assertEqual(accept.get_json()["order"]["total_amount"], "500.00")

    def test_rejecting_quotation_closes_thread(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        negotiation_id = self._open_negotiation(quotation["id"])["id"]

        response = self.client.post(
            f"/api/quotations/{quotation['id']}/reject",
            headers=self.flow.buyer,
            json={"confirm": True, "reason": "Budget moved"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["negotiation_status"], "rejected")
        self.assertEqual(self._workflow_status(cart["id"]), "CLOSED_DECLINED")

        negotiation = self.client.get(f"/api/negotiations/{negotiation_id}", headers=self.flow.buyer)
        self.assertEqual(negotiation.get_json()["negotiation"]["status"], "rejected")

    def test_overdue_quotation_expires_on_access(self) -> None:
        cart, quotation = self.flow.sent_quotation(["100.00"])
        with self.app.app_context():
            db = get_db()
            db.execute(
                "UPDATE quotations SET expires_at = ? WHERE id = ?",
                (to_iso(utc_now() - timedelta(minutes=5)), quotation["id"]),
            )
            db.commit()
            close_db()

        detail = self.client.get(f"/api/quotations/{quotation['id']}", headers=self.flow.buyer)
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.get_json()["quotation"]["status"], "expired")

        accept = self.client.post(f"/api/quotations/{quotation['id']}/accept", headers=self.flow.buyer)
        self.assertEqual(accept.status_code, 409)
        self.assertEqual(accept.get_json()["error"], "quotation_expired")
        self.assertEqual(self._workflow_status(cart["id"]), "CLOSED_DECLINED")

    def test_tenants_do_not_see_each_other(self) -> None:
        _cart, quotation = self.flow.sent_quotation(["100.00"])
        other = MarketplaceFlow(self, self.client, "tenant-other")
        response = self.client.get(f"/api/quotations/{quotation['id']}", headers=other.buyer)
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
