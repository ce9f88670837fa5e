import unittest

from marketplace import create_app
from marketplace.config import Config
from marketplace.db import close_db
from marketplace.ui_strings import (
    MESSAGES,
    STATUS_GROUPS,
    UI_TEXTS,
    canonical_status_items,
    error_message,
    get_ui_text,
    status_label,
)
from marketplace.workflow.canonical_status import LIFECYCLE_ORDER
from marketplace.workflow.critical_actions import CRITICAL_ACTIONS
from tests.helpers.temp_db import TempDbSandbox


REQUIRED_GROUPS = ("cart", "quotation", "negotiation", "order", "payment")


class UiStringsStatusGroupsTest(unittest.TestCase):
    def test_required_status_groups_exist(self) -> None:
        self.assertTrue(set(REQUIRED_GROUPS).issubset(set(STATUS_GROUPS.keys())))

    def test_status_groups_are_not_empty(self) -> None:
        for group_name in REQUIRED_GROUPS:
            self.assertTrue(STATUS_GROUPS[group_name], f"empty group: {group_name}")

    def test_status_labels_and_descriptions_are_not_empty(self) -> None:
        for group_name, statuses in STATUS_GROUPS.items():
            for status in statuses:
                self.assertTrue((status.get("label") or "").strip(), f"empty label in {group_name}:{status.get('key')}")
                self.assertTrue(
                    (status.get("description") or "").strip(),
                    f"empty description in {group_name}:{status.get('key')}",
                )

    def test_status_label_falls_back_to_key(self) -> None:
        self.assertEqual(status_label("order", "pending_payment"), "Pending payment")
        self.assertEqual(status_label("order", "teleported"), "teleported")
        self.assertEqual(status_label("order", None), "")

    def test_canonical_statuses_have_labels(self) -> None:
        items = canonical_status_items()
        self.assertEqual([item["key"] for item in items], list(LIFECYCLE_ORDER))
        for item in items:
            self.assertTrue(item["label"].strip())

    def test_critical_actions_have_impact_and_prompt(self) -> None:
        for action_key in CRITICAL_ACTIONS:
            self.assertIn(f"impact.{action_key}", UI_TEXTS)
            self.assertIn(action_key, MESSAGES["confirm"])

    def test_payment_notices_exist(self) -> None:
        for key in ("payment_confirmed", "payment_already_confirmed", "payment_not_paid", "payment_verification_failed"):
            self.assertNotEqual(get_ui_text(f"notice.{key}"), f"notice.{key}")

    def test_unknown_error_key_returns_key(self) -> None:
        self.assertEqual(error_message("no_such_error"), "no_such_error")
        self.assertEqual(error_message("no_such_error", "fallback"), "fallback")


class UiStringsEndpointTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="ui_strings")
        self.app = create_app(self._temp_db.make_config(Config))
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_bundle_served_to_clients(self) -> None:
        response = self.client.get("/api/ui-strings")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["terms"]["cart"], "Intended cart")
        self.assertEqual(payload["canonical_statuses"], canonical_status_items())
        self.assertEqual([stage["key"] for stage in payload["process_stages"]][0], "request")
        self.assertIn("accept_quotation", payload["action_labels"])
        self.assertIn("confirm", payload["messages"])


if __name__ == "__main__":
    unittest.main()
