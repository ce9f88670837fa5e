import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def is_integrity_error(self, exc: Exception) -> bool:
        if isinstance(exc, sqlite3.IntegrityError):
            return True
        return psycopg2 is not None and isinstance(exc, psycopg2.IntegrityError)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


# Types chosen so the same DDL runs on sqlite and postgres: ids are uuid hex
# strings, timestamps ISO-8601 UTC text, money NUMERIC(12,2).
SCHEMA_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS manufacturers (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        company_name TEXT NOT NULL,
        contact_person TEXT,
        email TEXT,
        phone TEXT,
        city TEXT,
        country TEXT,
        website TEXT,
        min_order_value NUMERIC(12,2),
        avg_lead_time_days INTEGER,
        moq INTEGER,
        is_verified INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_skus (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        sku_code TEXT NOT NULL,
        product_name TEXT,
        available_qty INTEGER NOT NULL DEFAULT 0,
        unit_cost NUMERIC(12,2),
        lead_time_days INTEGER,
        moq INTEGER,
        location TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_items (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        sku_code TEXT,
        source TEXT NOT NULL DEFAULT 'manufacturer' CHECK (source IN ('manufacturer','marketplace')),
        manufacturer_id TEXT REFERENCES manufacturers(id),
        unit_cost_min NUMERIC(12,2),
        unit_cost_max NUMERIC(12,2),
        moq INTEGER,
        lead_time_days INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS carts (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        buyer_id TEXT,
        title TEXT,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','submitted','under_review','quoted','closed')
        ),
        assigned_sales_id TEXT,
        assigned_at TEXT,
        submitted_at TEXT,
        validated_at TEXT,
        validated_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        cart_id TEXT NOT NULL REFERENCES carts(id),
        position INTEGER NOT NULL DEFAULT 0,
        product_name TEXT NOT NULL,
        sku_code TEXT,
        catalog_item_id TEXT,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        customization_note TEXT,
        inventory_status TEXT,
        available_source TEXT,
        validated_quantity INTEGER,
        validated_by TEXT,
        validated_at TEXT,
        validation_json TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotations (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        cart_id TEXT NOT NULL REFERENCES carts(id),
        quotation_number TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','sent','accepted','rejected','expired')
        ),
        total_amount NUMERIC(12,2) NOT NULL DEFAULT 0,
        currency TEXT,
        terms TEXT,
        is_final_offer INTEGER NOT NULL DEFAULT 0,
        created_by TEXT,
        sent_at TEXT,
        expires_at TEXT,
        accepted_at TEXT,
        rejected_at TEXT,
        rejection_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotation_items (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        quotation_id TEXT NOT NULL REFERENCES quotations(id),
        cart_item_id TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        product_name TEXT,
        unit_price NUMERIC(12,2) NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        line_total NUMERIC(12,2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS negotiations (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        quotation_id TEXT NOT NULL REFERENCES quotations(id),
        status TEXT NOT NULL DEFAULT 'open' CHECK (
            status IN ('open','counter_buyer','counter_seller','accepted','rejected','closed')
        ),
        opened_by TEXT,
        opened_by_party TEXT,
        note TEXT,
        close_reason TEXT,
        closed_by_party TEXT,
        accepted_round_number INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS negotiation_rounds (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        negotiation_id TEXT NOT NULL REFERENCES negotiations(id),
        round_number INTEGER NOT NULL,
        party TEXT NOT NULL CHECK (party IN ('buyer','seller')),
        proposed_by TEXT,
        proposed_total NUMERIC(12,2) NOT NULL,
        message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS negotiation_round_items (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        round_id TEXT NOT NULL REFERENCES negotiation_rounds(id),
        cart_item_id TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        unit_price NUMERIC(12,2) NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        line_total NUMERIC(12,2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        order_number TEXT NOT NULL,
        quotation_id TEXT NOT NULL REFERENCES quotations(id),
        cart_id TEXT NOT NULL REFERENCES carts(id),
        negotiation_id TEXT,
        buyer_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending_payment' CHECK (
            status IN (
                'pending_payment','confirmed','in_procurement','processing','partially_shipped',
                'shipped','partially_delivered','delivered','completed','cancelled'
            )
        ),
        total_amount NUMERIC(12,2) NOT NULL,
        paid_amount NUMERIC(12,2) NOT NULL DEFAULT 0,
        currency TEXT,
        ops_final_check_status TEXT CHECK (
            ops_final_check_status IS NULL OR ops_final_check_status IN ('pending','approved','rejected')
        ),
        ops_final_check_reason TEXT,
        ops_final_check_at TEXT,
        ops_final_check_by TEXT,
        payment_link_sent_at TEXT,
        payment_link_url TEXT,
        payment_session_id TEXT,
        payment_confirmed_at TEXT,
        payment_confirmation_source TEXT,
        forwarded_to_ops_at TEXT,
        cancelled_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        order_id TEXT NOT NULL REFERENCES orders(id),
        cart_item_id TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        product_name TEXT,
        unit_price NUMERIC(12,2) NOT NULL,
        quantity INTEGER NOT NULL,
        line_total NUMERIC(12,2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        order_id TEXT NOT NULL REFERENCES orders(id),
        amount NUMERIC(12,2) NOT NULL CHECK (amount > 0),
        method TEXT NOT NULL CHECK (method IN ('card','bank_transfer','upi')),
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','paid','completed','failed')),
        payment_type TEXT NOT NULL DEFAULT 'advance' CHECK (payment_type IN ('advance','balance')),
        gateway_ref TEXT,
        transaction_ref TEXT,
        paid_at TEXT,
        confirmed_by TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_reconciliation_markers (
        tenant_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        order_id TEXT NOT NULL,
        payment_id TEXT,
        outcome TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (tenant_id, session_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS status_events (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        reason TEXT,
        actor_id TEXT,
        actor_role TEXT,
        occurred_at TEXT NOT NULL
    )
    """,
)

SCHEMA_INDEXES = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_inventory_skus_tenant_sku_location ON inventory_skus (tenant_id, sku_code, location)",
    "CREATE INDEX IF NOT EXISTS idx_catalog_items_tenant_sku ON catalog_items (tenant_id, sku_code)",
    "CREATE INDEX IF NOT EXISTS idx_carts_tenant_status ON carts (tenant_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_cart_items_cart ON cart_items (tenant_id, cart_id, position)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_quotations_tenant_number ON quotations (tenant_id, quotation_number)",
    "CREATE INDEX IF NOT EXISTS idx_quotations_cart ON quotations (tenant_id, cart_id)",
    "CREATE INDEX IF NOT EXISTS idx_quotations_status_expiry ON quotations (status, expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_quotation_items_quotation ON quotation_items (quotation_id, position)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_negotiations_quotation ON negotiations (tenant_id, quotation_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_negotiation_rounds_number ON negotiation_rounds (negotiation_id, round_number)",
    "CREATE INDEX IF NOT EXISTS idx_negotiation_round_items_round ON negotiation_round_items (round_id, position)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_quotation ON orders (tenant_id, quotation_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_tenant_number ON orders (tenant_id, order_number)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id, position)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_order_gateway_ref ON payments (order_id, gateway_ref)",
    "CREATE INDEX IF NOT EXISTS idx_payments_order ON payments (tenant_id, order_id)",
    "CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (tenant_id, entity_type, entity_id)",
)

SCHEMA_TABLE_NAMES = (
    "manufacturers",
    "inventory_skus",
    "catalog_items",
    "carts",
    "cart_items",
    "quotations",
    "quotation_items",
    "negotiations",
    "negotiation_rounds",
    "negotiation_round_items",
    "orders",
    "order_items",
    "payments",
    "payment_reconciliation_markers",
    "status_events",
)


def create_schema(db) -> None:
    for statement in SCHEMA_TABLES:
        db.execute(statement)
    for statement in SCHEMA_INDEXES:
        db.execute(statement)


def drop_schema(db) -> None:
    for table in reversed(SCHEMA_TABLE_NAMES):
        db.execute(f"DROP TABLE IF EXISTS {table}")


def init_db():
    db = get_db()
    create_schema(db)
    db.commit()


def _table_exists(db: Database, table: str) -> bool:
    if db.backend == "postgres":
        row = db.execute(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ?
            """,
            (table,),
        ).fetchone()
        return row is not None

    row = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def schema_ready(db: Database) -> bool:
    return all(_table_exists(db, table) for table in SCHEMA_TABLE_NAMES)
