from __future__ import annotations

from marketplace.infrastructure.repositories.base import BaseRepository, utc_now_iso


class ReconciliationMarkerRepository(BaseRepository):
    def find_marker(self, db, session_id: str) -> dict | None:
        return self.fetch_one(
            db,
            "SELECT session_id, order_id, payment_id, outcome, created_at FROM payment_reconciliation_markers WHERE session_id = ? LIMIT 1",
            (session_id,),
        )

    def create_marker(
        self,
        db,
        *,
        session_id: str,
        order_id: str,
        payment_id: str | None,
        outcome: str,
    ) -> dict:
        try:
            db.execute(
                """
                INSERT INTO payment_reconciliation_markers (tenant_id, session_id, order_id, payment_id, outcome, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self.tenant_id, session_id, order_id, payment_id, outcome, utc_now_iso()),
            )
        except Exception as exc:
            if not db.is_integrity_error(exc):
                raise
            existing = self.find_marker(db, session_id)
            if existing is None:
                raise
            return existing
        return {
            "session_id": session_id,
            "order_id": order_id,
            "payment_id": payment_id,
            "outcome": outcome,
        }
