import os
import sys

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from marketplace import create_app
from marketplace.db import get_db, init_db, schema_ready
from marketplace.demo_data import seed_demo_data


app = create_app()


if __name__ == "__main__":
    with app.app_context():
        init_db()
        db = get_db()
        if not schema_ready(db):
            raise RuntimeError("Schema is incomplete after initialization.")
        if os.environ.get("SEED_DEMO", "0").strip().lower() in {"1", "true", "yes", "on"}:
            summary = seed_demo_data(db, tenant_id=os.environ.get("SEED_TENANT"))
            db.commit()
            print(f"Demo data seeded for {summary['tenant_id']}.")
    print("Database initialized.")
