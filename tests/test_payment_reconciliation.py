import unittest
from decimal import Decimal

from marketplace import create_app
from marketplace.config import Config
from marketplace.db import close_db
from marketplace.errors import NotFoundError, ValidationError
from marketplace.payments.gateway import PaymentGateway, PaymentGatewayError, SessionVerification
from marketplace.payments.reconciliation import (
    ALREADY_RECONCILED,
    CONFIRMED_FROM_ORDER,
    NOT_PAID,
    ORDER_MISMATCH,
    RECONCILED,
    VERIFICATION_FAILED,
    PaymentReconciler,
)
from tests.helpers.marketplace_flow import MarketplaceFlow, return_path_from_redirect
from tests.helpers.temp_db import TempDbSandbox


class _StaticGateway(PaymentGateway):
    def __init__(self, verification: SessionVerification | None = None, error: PaymentGatewayError | None = None):
        self.verification = verification
        self.error = error
        self.calls = 0

    def create_checkout_session(self, **kwargs):
        raise PaymentGatewayError("not used", code="unsupported")

    def verify_session(self, session_id: str) -> SessionVerification:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.verification

    def verify_transaction(self, transaction_ref: str, *, method: str) -> SessionVerification:
        raise PaymentGatewayError("not used", code="unsupported")


class _MemoryMarkers:
    def __init__(self) -> None:
        self.rows = {}

    def find_marker(self, db, session_id: str):
        return self.rows.get(session_id)

    def create_marker(self, db, *, session_id: str, order_id: str, payment_id, outcome: str):
        self.rows.setdefault(
            session_id,
            {"session_id": session_id, "order_id": order_id, "payment_id": payment_id, "outcome": outcome},
        )
        return self.rows[session_id]


class _MemoryOrders:
    def __init__(self, order: dict, payments=None) -> None:
        self.order = order
        self.payments = list(payments or [])

    def get_order(self, db, order_id: str):
        return dict(self.order) if order_id == self.order["id"] else None

    def list_payments(self, db, order_id: str):
        return list(self.payments)


def _verification(paid: bool = True, order_id: str = "order-1") -> SessionVerification:
    return SessionVerification(
        session_id="cs_test_1",
        paid=paid,
        status="paid" if paid else "open",
        amount=Decimal("500.00"),
        currency="inr",
        payment_intent_id="pi_test_1",
        order_id=order_id,
    )


class PaymentReconcilerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.order = {"id": "order-1", "status": "pending_payment", "total_amount": "500.00", "paid_amount": "0.00"}
        self.markers = _MemoryMarkers()
        self.recorded = []

    def _reconciler(self, gateway: PaymentGateway, orders: _MemoryOrders | None = None) -> PaymentReconciler:
        def recorder(db, order, verification):
            self.recorded.append((order["id"], verification.session_id))
            return f"payment-{len(self.recorded)}"

        return PaymentReconciler(
            gateway=gateway,
            marker_repository=self.markers,
            order_repository=orders or _MemoryOrders(self.order),
            payment_recorder=recorder,
        )

    def test_paid_session_is_recorded_once(self) -> None:
        gateway = _StaticGateway(_verification())
        reconciler = self._reconciler(gateway)

        first = reconciler.reconcile(None, session_id="cs_test_1", order_id="order-1")
        second = reconciler.reconcile(None, session_id="cs_test_1", order_id="order-1")

        self.assertEqual(first.outcome, RECONCILED)
        self.assertEqual(first.payment_id, "payment-1")
        self.assertTrue(first.marker_set)
        self.assertEqual(second.outcome, ALREADY_RECONCILED)
        self.assertEqual(second.payment_id, "payment-1")
        self.assertEqual(len(self.recorded), 1)
        self.assertEqual(gateway.calls, 1)

    def test_verification_error_without_paid_order_sets_no_marker(self) -> None:
        gateway = _StaticGateway(error=PaymentGatewayError("gateway timeout", code="gateway_unreachable"))
        result = self._reconciler(gateway).reconcile(None, session_id="cs_test_1", order_id="order-1")

        self.assertEqual(result.outcome, VERIFICATION_FAILED)
        self.assertFalse(result.succeeded)
        self.assertFalse(result.marker_set)
        self.assertEqual(self.markers.rows, {})
        self.assertEqual(self.recorded, [])

    def test_verification_error_with_paid_order_confirms_from_order(self) -> None:
        self.order.update(paid_amount="500.00", payment_confirmed_at="2026-10-19T10:00:00+00:00")
        gateway = _StaticGateway(error=PaymentGatewayError("gateway timeout", code="gateway_unreachable"))
        result = self._reconciler(gateway).reconcile(None, session_id="cs_test_1", order_id="order-1")

        self.assertEqual(result.outcome, CONFIRMED_FROM_ORDER)
        self.assertTrue(result.succeeded)
        self.assertEqual(self.markers.rows["cs_test_1"]["outcome"], CONFIRMED_FROM_ORDER)
        self.assertEqual(self.recorded, [])

    def test_session_for_another_order_is_refused(self) -> None:
        gateway = _StaticGateway(_verification(order_id="order-2"))
        result = self._reconciler(gateway).reconcile(None, session_id="cs_test_1", order_id="order-1")
        self.assertEqual(result.outcome, ORDER_MISMATCH)
        self.assertEqual(self.markers.rows, {})

    def test_unpaid_session_records_nothing(self) -> None:
        gateway = _StaticGateway(_verification(paid=False))
        result = self._reconciler(gateway).reconcile(None, session_id="cs_test_1", order_id="order-1")
        self.assertEqual(result.outcome, NOT_PAID)
        self.assertEqual(result.notice_key, "notice.payment_not_paid")
        self.assertEqual(self.recorded, [])

    def test_missing_session_and_unknown_order(self) -> None:
        reconciler = self._reconciler(_StaticGateway(_verification()))
        with self.assertRaises(ValidationError) as ctx:
            reconciler.reconcile(None, session_id="  ", order_id="order-1")
        self.assertEqual(ctx.exception.code, "session_id_required")

        with self.assertRaises(NotFoundError):
            reconciler.reconcile(None, session_id="cs_test_1", order_id="order-9")


class CheckoutRedirectReconciliationTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="payment_reconciliation")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.flow = MarketplaceFlow(self, self.client, "tenant-reconciliation")
        self.flow.seed()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _linked_order(self) -> tuple[dict, dict]:
        order = self.flow.accepted_order(["100.00"])
        self.flow.approve_final_check(order["id"])
        link = self.flow.send_payment_link(order["id"])
        return order, link

    def test_repeated_redirect_books_one_payment(self) -> None:
        order, link = self._linked_order()
        session_id = link["session_id"]
        self.assertTrue(session_id.startswith("cs_mock_"))
        self.assertEqual(link["payment_link_url"], f"/payments/mock-checkout/{session_id}")
        self.assertEqual(link["amount"], "500.00")

        checkout = self.client.get(link["payment_link_url"], headers=self.flow.buyer)
        self.assertEqual(checkout.status_code, 303)
        return_path = return_path_from_redirect(checkout.headers["Location"])
        self.assertIn(f"session_id={session_id}", return_path)

        first = self.client.get(return_path, headers=self.flow.buyer)
        self.assertEqual(first.status_code, 303)
        self.assertTrue(first.headers["Location"].endswith("/buyer/orders"))
        self.assertNotIn("session_id", first.headers["Location"])
        with self.client.session_transaction() as flask_session:
            self.assertEqual(flask_session["payment_notice"]["outcome"], "reconciled")

        second = self.client.get(return_path, headers=self.flow.buyer)
        self.assertEqual(second.status_code, 303)
        with self.client.session_transaction() as flask_session:
            self.assertEqual(flask_session["payment_notice"]["outcome"], "already_reconciled")

        api = self.client.post(
            "/api/payments/reconcile",
            headers=self.flow.buyer,
            json={"session_id": session_id, "order_id": order["id"]},
        )
        self.assertEqual(api.status_code, 200)
        self.assertEqual(api.get_json()["outcome"], "already_reconciled")
        self.assertTrue(api.get_json()["marker_set"])

        detail = self.flow.order(order["id"])
        session_payments = [item for item in detail["payments"] if item.get("gateway_ref") == session_id]
        self.assertEqual(len(session_payments), 1)
        self.assertEqual(session_payments[0]["status"], "paid")
        self.assertEqual(session_payments[0]["amount"], "500.00")
        self.assertEqual(detail["paid_amount"], "500.00")
        self.assertTrue(detail["payment_confirmed_at"])
        self.assertTrue(detail["forwarded_to_ops_at"])
        self.assertEqual(detail["canonical_status"], "READY_FOR_OPS")

    def test_return_honours_safe_next_only(self) -> None:
        _order, link = self._linked_order()
        checkout = self.client.get(link["payment_link_url"], headers=self.flow.buyer)
        return_path = return_path_from_redirect(checkout.headers["Location"])

        local = self.client.get(f"{return_path}&next=/buyer/orders/123", headers=self.flow.buyer)
        self.assertTrue(local.headers["Location"].endswith("/buyer/orders/123"))

        external = self.client.get(f"{return_path}&next=//evil.example.com/", headers=self.flow.buyer)
        self.assertNotIn("evil.example.com", external.headers["Location"])

    def test_unpaid_session_is_not_recorded(self) -> None:
        order, link = self._linked_order()
        response = self.client.post(
            "/api/payments/reconcile",
            headers=self.flow.buyer,
            json={"session_id": link["session_id"], "order_id": order["id"]},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["outcome"], "not_paid")
        self.assertFalse(response.get_json()["succeeded"])
        self.assertEqual(self.flow.order(order["id"])["paid_amount"], "0.00")

    def test_unknown_session_is_a_failed_verification(self) -> None:
        order, _link = self._linked_order()
        response = self.client.post(
            "/api/payments/reconcile",
            headers=self.flow.buyer,
            json={"session_id": "cs_mock_unknown", "order_id": order["id"]},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["outcome"], "verification_failed")
        self.assertFalse(response.get_json()["marker_set"])

    def test_reconcile_requires_session_id(self) -> None:
        response = self.client.post("/api/payments/reconcile", headers=self.flow.buyer, json={"order_id": "x"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "session_id_required")


if __name__ == "__main__":
    unittest.main()
