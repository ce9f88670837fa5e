from __future__ import annotations

from typing import Any, Dict, List

from marketplace.infrastructure.repositories.base import BaseRepository, new_id, utc_now_iso
from marketplace.workflow.money import money_str
from marketplace.workflow.negotiation import NEGOTIATION_ACTIVE_STATUSES, RoundDraft


class NegotiationRepository(BaseRepository):
    def create_negotiation(
        self,
        db,
        *,
        quotation_id: str,
        opened_by: str | None,
        opened_by_party: str,
        note: str | None,
    ) -> str:
        negotiation_id = new_id()
        now = utc_now_iso()
        db.execute(
            """
            INSERT INTO negotiations (
                id, tenant_id, quotation_id, status, opened_by, opened_by_party, note, created_at, updated_at
            )
            VALUES (?, ?, ?, 'open', ?, ?, ?, ?, ?)
            """,
            (negotiation_id, self.tenant_id, quotation_id, opened_by, opened_by_party, note, now, now),
        )
        return negotiation_id

    def get_negotiation(self, db, negotiation_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM negotiations WHERE id = ? LIMIT 1", (negotiation_id,))

    def get_by_quotation(self, db, quotation_id: str) -> dict | None:
        return self.fetch_one(db, "SELECT * FROM negotiations WHERE quotation_id = ? LIMIT 1", (quotation_id,))

    def set_status(
        self,
        db,
        negotiation_id: str,
        status: str,
        *,
        close_reason: str | None = None,
        closed_by_party: str | None = None,
        accepted_round_number: int | None = None,
    ) -> None:
        db.execute(
            """
            UPDATE negotiations
            SET status = ?,
                close_reason = COALESCE(?, close_reason),
                closed_by_party = COALESCE(?, closed_by_party),
                accepted_round_number = COALESCE(?, accepted_round_number),
                updated_at = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (
                status,
                close_reason,
                closed_by_party,
                accepted_round_number,
                utc_now_iso(),
                negotiation_id,
                self.tenant_id,
            ),
        )

    def reject_active_for_quotation(self, db, quotation_id: str, reason: str) -> dict | None:
        negotiation = self.get_by_quotation(db, quotation_id)
        if not negotiation or negotiation.get("status") not in NEGOTIATION_ACTIVE_STATUSES:
            return None
        self.set_status(db, negotiation["id"], "rejected", close_reason=reason)
        return negotiation

    def add_round(self, db, negotiation_id: str, draft: RoundDraft, *, proposed_by: str | None) -> str:
        round_id = new_id()
        db.execute(
            """
            INSERT INTO negotiation_rounds (
                id, tenant_id, negotiation_id, round_number, party, proposed_by, proposed_total, message, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                round_id,
                self.tenant_id,
                negotiation_id,
                draft.round_number,
                draft.party,
                proposed_by,
                money_str(draft.proposed_total),
                draft.message,
                utc_now_iso(),
            ),
        )
        for position, item in enumerate(draft.items, start=1):
            db.execute(
                """
                INSERT INTO negotiation_round_items (
                    id, tenant_id, round_id, cart_item_id, position, unit_price, quantity, line_total
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    self.tenant_id,
                    round_id,
                    item.cart_item_id,
                    position,
                    money_str(item.unit_price),
                    item.quantity,
                    money_str(item.line_total),
                ),
            )
        return round_id

    def list_rounds(self, db, negotiation_id: str, *, since_round: int | None = None) -> List[dict]:
        clauses = ["tenant_id = ?", "negotiation_id = ?"]
        params: List[Any] = [self.tenant_id, negotiation_id]
        if since_round is not None:
            clauses.append("round_number > ?")
            params.append(int(since_round))
        rounds = self.rows_to_dicts(
            db.execute(
                f"""
                SELECT id, round_number, party, proposed_by, proposed_total, message, created_at
                FROM negotiation_rounds
                WHERE {' AND '.join(clauses)}
                ORDER BY round_number ASC
                """,
                params,
            ).fetchall()
        )
        items_by_round = self._items_by_round(db, [row["id"] for row in rounds])
        for row in rounds:
            row["items"] = items_by_round.get(row["id"], [])
        return rounds

    def _items_by_round(self, db, round_ids: List[str]) -> Dict[str, List[dict]]:
        if not round_ids:
            return {}
        placeholders = ", ".join("?" for _ in round_ids)
        rows = db.execute(
            f"""
            SELECT round_id, cart_item_id, position, unit_price, quantity, line_total
            FROM negotiation_round_items
            WHERE tenant_id = ? AND round_id IN ({placeholders})
            ORDER BY position ASC
            """,
            (self.tenant_id, *round_ids),
        ).fetchall()
        grouped: Dict[str, List[dict]] = {}
        for row in self.rows_to_dicts(rows):
            grouped.setdefault(row.pop("round_id"), []).append(row)
        return grouped

    def latest_round(self, db, negotiation_id: str) -> dict | None:
        row = self.fetch_one(
            db,
            """
            SELECT id, round_number, party, proposed_by, proposed_total, message, created_at
            FROM negotiation_rounds
            WHERE negotiation_id = ?
            ORDER BY round_number DESC
            LIMIT 1
            """,
            (negotiation_id,),
        )
        if row is None:
            return None
        row["items"] = self._items_by_round(db, [row["id"]]).get(row["id"], [])
        return row
