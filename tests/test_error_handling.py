import unittest
from unittest.mock import patch

from marketplace import create_app
from marketplace.config import Config
from marketplace.db import close_db
from marketplace.payments.gateway import PaymentGatewayError
from marketplace.payments.mock_gateway import MockPaymentGateway
from marketplace.ui_strings import error_message
from tests.helpers.marketplace_flow import MarketplaceFlow, role_headers
from tests.helpers.temp_db import TempDbSandbox


def _build_temp_app(temp_db: TempDbSandbox, **overrides):
    attrs = {
        "DATABASE_DIR": temp_db.temp_dir,
        "DB_PATH": temp_db.db_path,
        "EXPIRY_SCHEDULER_ENABLED": False,
        "RATE_LIMIT_ENABLED": False,
        "PROPAGATE_EXCEPTIONS": False,
    }
    attrs.update(overrides)
    temp_config = type("TempConfig", (Config,), attrs)
    return create_app(temp_config)


class ErrorPermissionTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_perm")
        self.app = _build_temp_app(self._temp_db, TESTING=True)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_permission_error_for_wrong_role(self) -> None:
        response = self.client.post("/api/ops/seed", headers=role_headers("tenant-perm", "buyer"))
        self.assertEqual(response.status_code, 403)

        payload = response.get_json()
        self.assertEqual(payload.get("error"), "permission_denied")
        self.assertEqual(payload.get("message"), error_message("permission_denied"))
        self.assertEqual(payload.get("allowed_roles"), ["ops"])
        self.assertTrue((payload.get("request_id") or "").strip())
        self.assertNotIn("Traceback", response.get_data(as_text=True))

    def test_unknown_role_falls_back_to_buyer(self) -> None:
        response = self.client.post("/api/ops/seed", headers=role_headers("tenant-perm", "superuser"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json().get("role"), "buyer")


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = _build_temp_app(self._temp_db, TESTING=True)
        self.client = self.app.test_client()
        self.flow = MarketplaceFlow(self, self.client, "tenant-error-api")
        self.flow.seed()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _linked_order(self) -> dict:
        order = self.flow.accepted_order(["100.00"])
        self.flow.approve_final_check(order["id"])
        self.flow.send_payment_link(order["id"])
        return order

    def test_validation_error_for_invalid_flow_action(self) -> None:
        _cart, quotation = self.flow.sent_quotation()

        resend = self.client.post(f"/api/quotations/{quotation['id']}/send", headers=self.flow.sales)
        self.assertEqual(resend.status_code, 409)
        payload = resend.get_json()
        self.assertEqual(payload.get("error"), "action_not_allowed_for_status")
        self.assertEqual(payload.get("message"), error_message("action_not_allowed_for_status"))
        self.assertEqual(payload.get("status"), "sent")
        self.assertIn("accept_quotation", payload.get("allowed_actions") or [])
        self.assertTrue((payload.get("request_id") or "").strip())

    def test_not_found_error(self) -> None:
        response = self.client.get("/api/orders/missing-order", headers=self.flow.sales)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json().get("error"), "order_not_found")

    def test_integration_error_for_gateway_rejection(self) -> None:
        order = self._linked_order()

        def _reject(_self, transaction_ref, *, method):
            raise PaymentGatewayError("gateway HTTP 402: card_declined", code="gateway_http_error", definitive=True)

        with patch.object(MockPaymentGateway, "verify_transaction", _reject):
            response = self.client.post(
                f"/api/orders/{order['id']}/payments",
                headers=self.flow.buyer,
                json={"method": "card", "amount": "100.00", "transaction_ref": "card_txn_1"},
            )
        self.assertEqual(response.status_code, 422)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "payment_gateway_rejected")
        self.assertEqual(payload.get("message"), error_message("payment_gateway_rejected"))
        self.assertEqual(payload.get("gateway_code"), "gateway_http_error")

    def test_integration_error_for_unreachable_gateway(self) -> None:
        order = self._linked_order()

        def _unreachable(_self, transaction_ref, *, method):
            raise PaymentGatewayError("gateway unreachable: timed out", code="gateway_unreachable")

        with patch.object(MockPaymentGateway, "verify_transaction", _unreachable):
            response = self.client.post(
                f"/api/orders/{order['id']}/payments",
                headers=self.flow.buyer,
                json={"method": "upi", "amount": "100.00", "transaction_ref": "upi_txn_1"},
            )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.get_json().get("error"), "payment_gateway_unavailable")
        self.assertEqual(self.flow.order(order["id"])["paid_amount"], "0.00")

    def test_stack_trace_not_exposed_for_unhandled_error(self) -> None:
        order = self.flow.accepted_order(["100.00"])

        with patch(
            "marketplace.routes.order_routes._ORDER_SERVICE.get_order",
            side_effect=RuntimeError("stack_secret_token"),
        ):
            response = self.client.get(f"/api/orders/{order['id']}", headers=self.flow.sales)

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("stack_secret_token", body)


if __name__ == "__main__":
    unittest.main()
