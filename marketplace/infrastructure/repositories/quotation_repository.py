from __future__ import annotations

from typing import Any, Dict, List, Sequence

from marketplace.infrastructure.repositories.base import BaseRepository, new_id, utc_now, utc_now_iso
from marketplace.workflow.money import money_str


_UPDATABLE_FIELDS = {"terms", "is_final_offer", "total_amount", "currency"}


class QuotationRepository(BaseRepository):
    def next_quotation_number(self, db) -> str:
        year = utc_now().year
        prefix = f"QT-{year}-"
        row = db.execute(
            "SELECT COUNT(*) AS total FROM quotations WHERE tenant_id = ? AND quotation_number LIKE ?",
            (self.tenant_id, f"{prefix}%"),
        ).fetchone()
        sequence = int((row["total"] if row else 0) or 0) + 1
        return f"{prefix}{sequence:04d}"

    def create_quotation(
        self,
        db,
        *,
        cart_id: str,
        items: Sequence[Dict[str, Any]],
        total_amount: Any,
        currency: str | None,
        terms: str | None,
        is_final_offer: bool,
        created_by: str | None,
    ) -> dict:
        quotation_id = new_id()
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO quotations (
                id, tenant_id, cart_id, quotation_number, status, total_amount, currency, terms,
                is_final_offer, created_by, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 'draft', ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                quotation_id,
                self.tenant_id,
                cart_id,
                self.next_quotation_number(db),
                money_str(total_amount),
                currency,
                terms,
                1 if is_final_offer else 0,
                created_by,
                now,
                now,
            ),
        )
        self._insert_items(db, quotation_id, items)
        return self.get_quotation(db, quotation_id)

    def _insert_items(self, db, quotation_id: str, items: Sequence[Dict[str, Any]]) -> None:
        for position, item in enumerate(items, start=1):
            db.execute(
                """
                INSERT INTO quotation_items (
                    id, tenant_id, quotation_id, cart_item_id, position, product_name, unit_price, quantity, line_total
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    self.tenant_id,
                    quotation_id,
                    item["cart_item_id"],
                    position,
                    item.get("product_name"),
                    money_str(item["unit_price"]),
                    int(item["quantity"]),
                    money_str(item["line_total"]),
                ),
            )

    def replace_items(self, db, quotation_id: str, items: Sequence[Dict[str, Any]]) -> None:
        db.execute(
            "DELETE FROM quotation_items WHERE quotation_id = ? AND tenant_id = ?",
            (quotation_id, self.tenant_id),
        )
        self._insert_items(db, quotation_id, items)

    def get_quotation(self, db, quotation_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM quotations WHERE id = ? LIMIT 1", (quotation_id,))

    def list_for_cart(self, db, cart_id: str) -> List[dict]:
        return self.fetch_all(
            db,
            "SELECT * FROM quotations WHERE cart_id = ? ORDER BY created_at ASC",
            (cart_id,),
        )

    def list_items(self, db, quotation_id: str) -> List[dict]:
        return self.fetch_all(
            db,
            """
            SELECT cart_item_id, position, product_name, unit_price, quantity, line_total
            FROM quotation_items
            WHERE quotation_id = ?
            ORDER BY position ASC
            """,
            (quotation_id,),
        )

    def update_fields(self, db, quotation_id: str, changes: Dict[str, Any]) -> None:
        fields = [(key, value) for key, value in changes.items() if key in _UPDATABLE_FIELDS]
        if not fields:
            return
        assignments = ", ".join(f"{key} = ?" for key, _value in fields)
        db.execute(
            f"UPDATE quotations SET {assignments}, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (*[value for _key, value in fields], utc_now_iso(), quotation_id, self.tenant_id),
        )

    def mark_sent(self, db, quotation_id: str, *, sent_at: str, expires_at: str) -> None:
        db.execute(
            """
            UPDATE quotations
            SET status = 'sent', sent_at = ?, expires_at = ?, updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (sent_at, expires_at, sent_at, quotation_id, self.tenant_id),
        )

    def mark_accepted(self, db, quotation_id: str) -> None:
        db.execute(
            "UPDATE quotations SET status = 'accepted', accepted_at = ? WHERE id = ? AND tenant_id = ?",
            (utc_now_iso(), quotation_id, self.tenant_id),
        )

    def mark_rejected(self, db, quotation_id: str, reason: str | None) -> None:
        db.execute(
            """
            UPDATE quotations
            SET status = 'rejected', rejected_at = ?, rejection_reason = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (utc_now_iso(), reason, quotation_id, self.tenant_id),
        )

    def mark_expired(self, db, quotation_id: str) -> int:
        cursor = db.execute(
            "UPDATE quotations SET status = 'expired' WHERE id = ? AND tenant_id = ? AND status = 'sent'",
            (quotation_id, self.tenant_id),
        )
        return int(getattr(cursor, "rowcount", 0) or 0)

    def list_overdue(self, db, now_iso: str) -> List[dict]:
        return self.fetch_all(
            db,
            """
            SELECT id, cart_id, quotation_number, expires_at
            FROM quotations
            WHERE status = 'sent' AND expires_at IS NOT NULL AND expires_at <= ?
            ORDER BY expires_at ASC
            """,
            (now_iso,),
        )

    @staticmethod
    def tenants_with_overdue(db, now_iso: str) -> List[str]:
        rows = db.execute(
            """
            SELECT DISTINCT tenant_id
            FROM quotations
            WHERE status = 'sent' AND expires_at IS NOT NULL AND expires_at <= ?
            """,
            (now_iso,),
        ).fetchall()
        return [str(row["tenant_id"]) for row in rows]
