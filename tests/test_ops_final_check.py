import unittest

from marketplace import create_app
from marketplace.config import Config
from marketplace.db import close_db
from tests.helpers.marketplace_flow import MarketplaceFlow
from tests.helpers.temp_db import TempDbSandbox


class OpsFinalCheckTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="ops_final_check")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.flow = MarketplaceFlow(self, self.client, "tenant-final-check")
        self.flow.seed()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_new_order_waits_for_final_check(self) -> None:
        order = self.flow.accepted_order(["100.00"])
        self.assertEqual(order["status"], "pending_payment")
        self.assertEqual(order["status_label"], "Pending payment")
        self.assertEqual(order["paid_amount"], "0.00")
        self.assertEqual(order["ops_final_check"]["status"], "pending")

        link = self.client.post(f"/api/orders/{order['id']}/payment-link", headers=self.flow.sales)
        self.assertEqual(link.status_code, 409)
        self.assertEqual(link.get_json()["error"], "ops_check_not_approved")

    def test_only_ops_runs_the_final_check(self) -> None:
        order = self.flow.accepted_order(["100.00"])
        response = self.client.post(f"/api/ops/orders/{order['id']}/final-check/approve", headers=self.flow.sales)
        self.assertEqual(response.status_code, 403)

    def test_approval_unlocks_payment_link(self) -> None:
        order = self.flow.accepted_order(["100.00"])
        approved = self.flow.approve_final_check(order["id"])
        self.assertEqual(approved["ops_final_check"], "approved")

        detail = self.flow.order(order["id"])
        self.assertEqual(detail["ops_final_check"]["status"], "approved")
        self.assertEqual(detail["ops_final_check"]["checked_by"], "ops-1")
        self.assertEqual(detail["canonical_status"], "ACCEPTED_PAYMENT_PENDING")

        again = self.flow.approve_final_check(order["id"])
        self.assertEqual(again["ops_final_check"], "approved")

        link = self.flow.send_payment_link(order["id"])
        self.assertEqual(link["amount"], "500.00")

    def test_rejection_needs_reason_and_confirmation(self) -> None:
        order = self.flow.accepted_order(["100.00"])
        url = f"/api/ops/orders/{order['id']}/final-check/reject"

        no_reason = self.client.post(url, headers=self.flow.ops, json={"confirm": True})
        self.assertEqual(no_reason.status_code, 400)
        self.assertEqual(no_reason.get_json()["error"], "reason_required")

        unconfirmed = self.client.post(url, headers=self.flow.ops, json={"reason": "Pearl lot failed grading"})
        self.assertEqual(unconfirmed.status_code, 400)
        self.assertEqual(unconfirmed.get_json()["error"], "confirmation_required")
        self.assertEqual(unconfirmed.get_json()["confirmation"]["action_key"], "reject_final_check")

        rejected = self.client.post(
            url,
            headers=self.flow.ops,
            json={"reason": "Pearl lot failed grading", "confirm": True},
        )
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.get_json()["status"], "cancelled")

        detail = self.flow.order(order["id"])
        self.assertEqual(detail["status"], "cancelled")
        self.assertEqual(detail["ops_final_check"]["status"], "rejected")
        self.assertEqual(detail["ops_final_check"]["reason"], "Pearl lot failed grading")
        self.assertEqual(detail["canonical_status"], "CLOSED_DECLINED")

        quotation = self.client.get(f"/api/quotations/{order['quotation_id']}", headers=self.flow.sales)
        self.assertEqual(quotation.get_json()["quotation"]["status"], "rejected")

        approve = self.client.post(f"/api/ops/orders/{order['id']}/final-check/approve", headers=self.flow.ops)
        self.assertEqual(approve.status_code, 409)

    def test_rejection_is_refused_once_link_was_sent(self) -> None:
        order = self.flow.accepted_order(["100.00"])
        self.flow.approve_final_check(order["id"])
        self.flow.send_payment_link(order["id"])

        response = self.client.post(
            f"/api/ops/orders/{order['id']}/final-check/reject",
            headers=self.flow.ops,
            json={"reason": "Too late", "confirm": True},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "ops_check_already_resolved")


if __name__ == "__main__":
    unittest.main()
