import json
import logging
import unittest
from datetime import timedelta

from marketplace import create_app
from marketplace.config import Config
from marketplace.db import close_db, get_db
from marketplace.infrastructure.repositories.base import to_iso, utc_now
from marketplace.observability import JsonLogFormatter, bind_request_id, reset_metrics_for_tests, set_log_request_id
from marketplace.payments.circuit_breaker import reset_payment_circuit_breaker_for_tests
from tests.helpers.marketplace_flow import MarketplaceFlow
from tests.helpers.temp_db import TempDbSandbox


def _log_record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="marketplace",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        self.app = create_app(self._temp_db.make_config(Config))
        self.client = self.app.test_client()
        reset_metrics_for_tests()
        reset_payment_circuit_breaker_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        flow = MarketplaceFlow(self, self.client, "tenant-metrics")
        flow.seed()
        flow.sent_quotation()
        self.client.get("/api/unknown")

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("text/plain", response.headers.get("Content-Type") or "")

        payload = response.get_data(as_text=True)
        for name in (
            "http_request_total",
            "http_request_duration_ms_bucket",
            "payment_gateway_call_total",
            "payment_reconciliation_total",
            "payment_recorded_total",
            "negotiation_round_total",
            "workflow_status_change_total",
            "quotation_expired_total",
            "quotation_expiry_sweep_duration_ms_bucket",
            "quotation_expiry_backlog",
            "payment_circuit_open",
        ):
            self.assertIn(name, payload)
        self.assertIn('entity_type="quotation",to_status="sent"', payload)
        self.assertIn('route="/api/carts"', payload)
        self.assertIn("payment_circuit_open 0", payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("sweep-req-123")
        parsed = json.loads(JsonLogFormatter().format(_log_record("sweep_log")))
        self.assertEqual(parsed.get("request_id"), "sweep-req-123")
        self.assertEqual(parsed.get("message"), "sweep_log")
        self.assertEqual(parsed.get("level"), "info")

    def test_log_formatter_prefers_explicit_request_id_and_extra_fields(self) -> None:
        with bind_request_id("bound-req"):
            bound = json.loads(JsonLogFormatter().format(_log_record("bound")))
            explicit = json.loads(JsonLogFormatter().format(_log_record("explicit", request_id="explicit-req", order_id="o-1")))

        self.assertEqual(bound.get("request_id"), "bound-req")
        self.assertEqual(explicit.get("request_id"), "explicit-req")
        self.assertEqual(explicit.get("order_id"), "o-1")

    def test_health_reports_expiry_backlog(self) -> None:
        flow = MarketplaceFlow(self, self.client, "tenant-health")
        flow.seed()
        _cart, quotation = flow.sent_quotation()

        healthy = self.client.get("/health").get_json() or {}
        self.assertEqual(healthy["expiry"], {"overdue_quotations": 0, "open_quotations": 1, "backlog": False})

        with self.app.app_context():
            db = get_db()
            db.execute(
                "UPDATE quotations SET expires_at = ? WHERE id = ?",
                (to_iso(utc_now() - timedelta(hours=1)), quotation["id"]),
            )
            db.commit()
            close_db()

        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload["expiry"]["overdue_quotations"], 1)
        self.assertTrue(payload["expiry"]["backlog"])

        metrics = self.client.get("/metrics").get_data(as_text=True)
        self.assertIn("quotation_expiry_backlog 1", metrics)


if __name__ == "__main__":
    unittest.main()
