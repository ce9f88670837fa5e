import os
import sqlite3
import tempfile
import unittest

from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path


class TempDbHelperTest(unittest.TestCase):
    def test_temp_db_create_and_cleanup(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        db_path = sandbox.db_path
        temp_dir = sandbox.temp_dir

        self.assertTrue(os.path.exists(temp_dir))
        self.assertTrue(os.path.realpath(db_path).startswith(os.path.realpath(tempfile.gettempdir())))

        conn = sqlite3.connect(db_path)
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS sanity (id INTEGER PRIMARY KEY, value TEXT)")
            conn.execute("INSERT INTO sanity (value) VALUES ('ok')")
            row = conn.execute("SELECT COUNT(*) FROM sanity").fetchone()
            self.assertEqual(int(row[0]), 1)
        finally:
            conn.close()

        sandbox.cleanup()
        self.assertFalse(os.path.exists(db_path))
        self.assertFalse(os.path.exists(temp_dir))

    def test_make_config_applies_overrides(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_config")
        try:
            base = type("BaseConfig", (), {"RATE_LIMIT_ENABLED": True})
            cfg = sandbox.make_config(base, RATE_LIMIT_ENABLED=True, NEGOTIATION_MAX_ROUNDS=3)
            self.assertEqual(cfg.DB_PATH, sandbox.db_path)
            self.assertTrue(cfg.TESTING)
            self.assertFalse(cfg.EXPIRY_SCHEDULER_ENABLED)
            self.assertTrue(cfg.RATE_LIMIT_ENABLED)
            self.assertEqual(cfg.NEGOTIATION_MAX_ROUNDS, 3)
        finally:
            sandbox.cleanup()

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "jewel_marketplace_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)


if __name__ == "__main__":
    unittest.main()
