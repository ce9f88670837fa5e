from __future__ import annotations

import json
from typing import Any, Dict, List

from marketplace.infrastructure.repositories.base import BaseRepository, new_id, utc_now_iso


class CartRepository(BaseRepository):
    def create_cart(self, db, *, buyer_id: str | None, title: str | None, notes: str | None) -> dict:
        cart_id = new_id()
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO carts (id, tenant_id, buyer_id, title, notes, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'draft', ?, ?)
            """,
            (cart_id, self.tenant_id, buyer_id, title, notes, now, now),
        )
        return self.get_cart(db, cart_id)

    def get_cart(self, db, cart_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM carts WHERE id = ? LIMIT 1", (cart_id,))

    def list_carts(self, db, *, buyer_id: str | None = None, status: str | None = None) -> List[dict]:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [self.tenant_id]
        if buyer_id:
            clauses.append("buyer_id = ?")
            params.append(buyer_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        rows = db.execute(
            f"""
            SELECT *
            FROM carts
            WHERE {' AND '.join(clauses)}
            ORDER BY updated_at DESC, id DESC
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def update_status(self, db, cart_id: str, status: str, *, submitted: bool = False) -> None:
        now = utc_now_iso()
        if submitted:
            db.execute(
                "UPDATE carts SET status = ?, submitted_at = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
                (status, now, now, cart_id, self.tenant_id),
            )
            return
        db.execute(
            "UPDATE carts SET status = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (status, now, cart_id, self.tenant_id),
        )

    def assign_sales(self, db, cart_id: str, sales_person_id: str) -> None:
        now = utc_now_iso()
        db.execute(
            """
            UPDATE carts
            SET assigned_sales_id = ?, assigned_at = ?, status = 'under_review', updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (sales_person_id, now, now, cart_id, self.tenant_id),
        )

    def mark_validated(self, db, cart_id: str, *, validated_by: str | None, validated_at: str) -> None:
        db.execute(
            """
            UPDATE carts
            SET validated_at = ?, validated_by = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (validated_at, validated_by, validated_at, cart_id, self.tenant_id),
        )

    def list_items(self, db, cart_id: str) -> List[dict]:
        return self.fetch_all(
            db,
            "SELECT * FROM cart_items WHERE cart_id = ? ORDER BY position ASC, created_at ASC",
            (cart_id,),
        )

    def get_item(self, db, cart_id: str, item_id: str) -> dict | None:
        return self.fetch_one(
            db,
            "SELECT * FROM cart_items WHERE id = ? AND cart_id = ? LIMIT 1",
            (item_id, cart_id),
        )

    def add_item(
        self,
        db,
        cart_id: str,
        *,
        product_name: str,
        quantity: int,
        sku_code: str | None,
        catalog_item_id: str | None,
        customization_note: str | None,
    ) -> dict:
        row = db.execute(
            "SELECT COALESCE(MAX(position), 0) AS max_position FROM cart_items WHERE cart_id = ? AND tenant_id = ?",
            (cart_id, self.tenant_id),
        ).fetchone()
        position = int((row["max_position"] if row else 0) or 0) + 1
        item_id = new_id()
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO cart_items (
                id, tenant_id, cart_id, position, product_name, sku_code, catalog_item_id,
                quantity, customization_note, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item_id,
                self.tenant_id,
                cart_id,
                position,
                product_name,
                sku_code,
                catalog_item_id,
                quantity,
                customization_note,
                now,
                now,
            ),
        )
        self.touch(db, cart_id)
        return self.get_item(db, cart_id, item_id)

    def update_item(self, db, cart_id: str, item_id: str, changes: Dict[str, Any]) -> dict | None:
        allowed = {"quantity", "customization_note"}
        fields = [(key, value) for key, value in changes.items() if key in allowed]
        if fields:
            now = utc_now_iso()
            assignments = ", ".join(f"{key} = ?" for key, _value in fields)
            db.execute(
                f"UPDATE cart_items SET {assignments}, updated_at = ? WHERE id = ? AND cart_id = ? AND tenant_id = ?",
                (*[value for _key, value in fields], now, item_id, cart_id, self.tenant_id),
            )
            self.touch(db, cart_id)
        return self.get_item(db, cart_id, item_id)

    def delete_item(self, db, cart_id: str, item_id: str) -> None:
        db.execute(
            "DELETE FROM cart_items WHERE id = ? AND cart_id = ? AND tenant_id = ?",
            (item_id, cart_id, self.tenant_id),
        )
        self.touch(db, cart_id)

    def save_item_validation(
        self,
        db,
        item_id: str,
        *,
        inventory_status: str,
        available_source: str | None,
        validated_quantity: int,
        validated_by: str | None,
        validated_at: str,
        validation: Dict[str, Any],
    ) -> None:
        db.execute(
            """
            UPDATE cart_items
            SET inventory_status = ?,
                available_source = ?,
                validated_quantity = ?,
                validated_by = ?,
                validated_at = ?,
                validation_json = ?,
                updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (
                inventory_status,
                available_source,
                validated_quantity,
                validated_by,
                validated_at,
                json.dumps(validation, ensure_ascii=True, sort_keys=True),
                validated_at,
                item_id,
                self.tenant_id,
            ),
        )

    def touch(self, db, cart_id: str) -> None:
        db.execute(
            "UPDATE carts SET updated_at = ? WHERE id = ? AND tenant_id = ?",
            (utc_now_iso(), cart_id, self.tenant_id),
        )
