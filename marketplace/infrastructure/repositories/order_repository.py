from __future__ import annotations

from typing import Any, Dict, List, Sequence

from marketplace.infrastructure.repositories.base import BaseRepository, new_id, utc_now, utc_now_iso
from marketplace.workflow.money import money_str


_ORDER_UPDATABLE_FIELDS = {
    "status",
    "ops_final_check_status",
    "ops_final_check_reason",
    "ops_final_check_at",
    "ops_final_check_by",
    "payment_link_sent_at",
    "payment_link_url",
    "payment_session_id",
    "payment_confirmed_at",
    "payment_confirmation_source",
    "forwarded_to_ops_at",
    "cancelled_at",
}

_PAYMENT_UPDATABLE_FIELDS = {"status", "amount", "paid_at", "confirmed_by", "transaction_ref"}


class OrderRepository(BaseRepository):
    def next_order_number(self, db) -> str:
        prefix = f"ORD-{utc_now().strftime('%Y%m%d')}-"
        row = db.execute(
            "SELECT COUNT(*) AS total FROM orders WHERE tenant_id = ? AND order_number LIKE ?",
            (self.tenant_id, f"{prefix}%"),
        ).fetchone()
        sequence = int((row["total"] if row else 0) or 0) + 1
        return f"{prefix}{sequence:04d}"

    def create_order(
        self,
        db,
        *,
        quotation_id: str,
        cart_id: str,
        negotiation_id: str | None,
        buyer_id: str | None,
        currency: str | None,
        items: Sequence[Dict[str, Any]],
        total_amount: Any,
    ) -> str:
        """Raises the backend IntegrityError when an order already exists for the quotation."""
        order_id = new_id()
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO orders (
                id, tenant_id, order_number, quotation_id, cart_id, negotiation_id, buyer_id, status,
                total_amount, paid_amount, currency, ops_final_check_status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending_payment', ?, '0.00', ?, 'pending', ?, ?)
            """,
            (
                order_id,
                self.tenant_id,
                self.next_order_number(db),
                quotation_id,
                cart_id,
                negotiation_id,
                buyer_id,
                money_str(total_amount),
                currency,
                now,
                now,
            ),
        )
        for position, item in enumerate(items, start=1):
            db.execute(
                """
                INSERT INTO order_items (
                    id, tenant_id, order_id, cart_item_id, position, product_name, unit_price, quantity, line_total
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    self.tenant_id,
                    order_id,
                    item["cart_item_id"],
                    position,
                    item.get("product_name"),
                    money_str(item["unit_price"]),
                    int(item["quantity"]),
                    money_str(item["line_total"]),
                ),
            )
        return order_id

    def get_order(self, db, order_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM orders WHERE id = ? LIMIT 1", (order_id,))

    def get_by_quotation(self, db, quotation_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM orders WHERE quotation_id = ? LIMIT 1", (quotation_id,))

    def list_for_cart(self, db, cart_id: str) -> List[dict]:
        return self.fetch_all(db, "SELECT * FROM orders WHERE cart_id = ? ORDER BY created_at ASC", (cart_id,))

    def list_items(self, db, order_id: str) -> List[dict]:
        return self.fetch_all(
            db,
            """
            SELECT cart_item_id, position, product_name, unit_price, quantity, line_total
            FROM order_items
            WHERE order_id = ?
            ORDER BY position ASC
            """,
            (order_id,),
        )

    def update_order(self, db, order_id: str, changes: Dict[str, Any]) -> None:
        fields = [(key, value) for key, value in changes.items() if key in _ORDER_UPDATABLE_FIELDS]
        if not fields:
            return
        assignments = ", ".join(f"{key} = ?" for key, _value in fields)
        db.execute(
            f"UPDATE orders SET {assignments}, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (*[value for _key, value in fields], utc_now_iso(), order_id, self.tenant_id),
        )

    def add_paid_amount(self, db, order_id: str, amount: Any) -> None:
        # Only ever incremented; refunds are not modelled.
        db.execute(
            "UPDATE orders SET paid_amount = paid_amount + ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (money_str(amount), utc_now_iso(), order_id, self.tenant_id),
        )

    def list_payments(self, db, order_id: str) -> List[dict]:
        return self.fetch_all(
            db,
            "SELECT * FROM payments WHERE order_id = ? ORDER BY created_at ASC",
            (order_id,),
        )

    def get_payment(self, db, payment_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM payments WHERE id = ? LIMIT 1", (payment_id,))

    def find_payment_by_gateway_ref(self, db, order_id: str, gateway_ref: str) -> dict | None:
        return self.fetch_one(
            db,
            "SELECT * FROM payments WHERE order_id = ? AND gateway_ref = ? LIMIT 1",
            (order_id, gateway_ref),
        )

    def find_payment_by_reference(self, db, gateway_ref: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM payments WHERE gateway_ref = ? LIMIT 1", (gateway_ref,))

    def add_payment(
        self,
        db,
        order_id: str,
        *,
        amount: Any,
        method: str,
        status: str,
        payment_type: str,
        gateway_ref: str | None,
        transaction_ref: str | None,
        created_by: str | None,
        paid_at: str | None = None,
        confirmed_by: str | None = None,
    ) -> str:
        payment_id = new_id()
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO payments (
                id, tenant_id, order_id, amount, method, status, payment_type, gateway_ref, transaction_ref,
                paid_at, confirmed_by, created_by, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payment_id,
                self.tenant_id,
                order_id,
                money_str(amount),
                method,
                status,
                payment_type,
                gateway_ref,
                transaction_ref,
                paid_at,
                confirmed_by,
                created_by,
                now,
                now,
            ),
        )
        return payment_id

    def update_payment(self, db, payment_id: str, changes: Dict[str, Any]) -> None:
        fields = [(key, value) for key, value in changes.items() if key in _PAYMENT_UPDATABLE_FIELDS]
        if not fields:
            return
        assignments = ", ".join(f"{key} = ?" for key, _value in fields)
        db.execute(
            f"UPDATE payments SET {assignments}, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (*[value for _key, value in fields], utc_now_iso(), payment_id, self.tenant_id),
        )
