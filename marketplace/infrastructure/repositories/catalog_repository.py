from __future__ import annotations

from typing import Any, List

from marketplace.infrastructure.repositories.base import BaseRepository, new_id, utc_now_iso


_EXTERNAL_SOURCE_COLUMNS = """
    c.id AS catalog_item_id,
    c.name,
    c.sku_code,
    c.source,
    c.unit_cost_min,
    c.unit_cost_max,
    c.moq,
    c.lead_time_days,
    m.company_name,
    m.contact_person,
    m.email,
    m.phone,
    m.city,
    m.country,
    m.website,
    m.min_order_value,
    m.avg_lead_time_days,
    m.is_verified
"""


class CatalogRepository(BaseRepository):
    """Read side of inventory, manufacturer catalog and marketplace listings."""

    def list_internal_sources(self, db, sku_code: str | None) -> List[dict]:
        if not sku_code:
            return []
        return self.fetch_all(
            db,
            """
            SELECT sku_code, product_name, available_qty, unit_cost, lead_time_days, moq, location
            FROM inventory_skus
            WHERE sku_code = ?
            ORDER BY available_qty DESC, location ASC
            """,
            (sku_code,),
        )

    def list_external_sources(
        self,
        db,
        *,
        sku_code: str | None = None,
        catalog_item_id: str | None = None,
    ) -> List[dict]:
        clauses: List[str] = []
        params: List[Any] = []
        if catalog_item_id:
            clauses.append("c.id = ?")
            params.append(catalog_item_id)
        if sku_code:
            clauses.append("c.sku_code = ?")
            params.append(sku_code)
        if not clauses:
            return []
        rows = db.execute(
            f"""
            SELECT {_EXTERNAL_SOURCE_COLUMNS}
            FROM catalog_items c
            LEFT JOIN manufacturers m ON m.id = c.manufacturer_id AND m.tenant_id = c.tenant_id
            WHERE c.tenant_id = ? AND c.is_active = 1 AND ({' OR '.join(clauses)})
            ORDER BY c.lead_time_days ASC, c.id ASC
            """,
            (self.tenant_id, *params),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def count_rows(self, db) -> dict:
        counts = {}
        for table in ("manufacturers", "inventory_skus", "catalog_items"):
            row = db.execute(f"SELECT COUNT(*) AS total FROM {table} WHERE tenant_id = ?", (self.tenant_id,)).fetchone()
            counts[table] = int((row["total"] if row else 0) or 0)
        return counts

    def insert_manufacturer(self, db, **fields: Any) -> str:
        manufacturer_id = str(fields.pop("id", None) or new_id())
        db.execute(
            """
            INSERT INTO manufacturers (
                id, tenant_id, company_name, contact_person, email, phone, city, country, website,
                min_order_value, avg_lead_time_days, moq, is_verified, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                manufacturer_id,
                self.tenant_id,
                fields["company_name"],
                fields.get("contact_person"),
                fields.get("email"),
                fields.get("phone"),
                fields.get("city"),
                fields.get("country"),
                fields.get("website"),
                fields.get("min_order_value"),
                fields.get("avg_lead_time_days"),
                fields.get("moq"),
                1 if fields.get("is_verified") else 0,
                utc_now_iso(),
            ),
        )
        return manufacturer_id

    def upsert_inventory_sku(self, db, **fields: Any) -> None:
        existing = self.fetch_one(
            db,
            "SELECT id FROM inventory_skus WHERE sku_code = ? AND location = ? LIMIT 1",
            (fields["sku_code"], fields.get("location")),
        )
        now = utc_now_iso()
        if existing:
            db.execute(
                """
                UPDATE inventory_skus
                SET product_name = ?, available_qty = ?, unit_cost = ?, lead_time_days = ?, moq = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (
                    fields.get("product_name"),
                    int(fields.get("available_qty") or 0),
                    fields.get("unit_cost"),
                    fields.get("lead_time_days"),
                    fields.get("moq"),
                    now,
                    existing["id"],
                    self.tenant_id,
                ),
            )
            return
        db.execute(
            """
            INSERT INTO inventory_skus (
                id, tenant_id, sku_code, product_name, available_qty, unit_cost, lead_time_days, moq, location, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                new_id(),
                self.tenant_id,
                fields["sku_code"],
                fields.get("product_name"),
                int(fields.get("available_qty") or 0),
                fields.get("unit_cost"),
                fields.get("lead_time_days"),
                fields.get("moq"),
                fields.get("location"),
                now,
            ),
        )

    def insert_catalog_item(self, db, **fields: Any) -> str:
        catalog_item_id = str(fields.pop("id", None) or new_id())
        db.execute(
            """
            INSERT INTO catalog_items (
                id, tenant_id, name, sku_code, source, manufacturer_id,
                unit_cost_min, unit_cost_max, moq, lead_time_days, is_active, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (
                catalog_item_id,
                self.tenant_id,
                fields["name"],
                fields.get("sku_code"),
                fields.get("source") or "manufacturer",
                fields.get("manufacturer_id"),
                fields.get("unit_cost_min"),
                fields.get("unit_cost_max"),
                fields.get("moq"),
                fields.get("lead_time_days"),
                utc_now_iso(),
            ),
        )
        return catalog_item_id
