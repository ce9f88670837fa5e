from __future__ import annotations

from typing import List

from marketplace.infrastructure.repositories.base import BaseRepository, new_id, utc_now_iso
from marketplace.observability import observe_status_change


class StatusEventRepository(BaseRepository):
    def record(
        self,
        db,
        *,
        entity_type: str,
        entity_id: str,
        from_status: str | None,
        to_status: str,
        reason: str | None = None,
        actor_id: str | None = None,
        actor_role: str | None = None,
    ) -> None:
        db.execute(
            """
            INSERT INTO status_events (
                id, tenant_id, entity_type, entity_id, from_status, to_status, reason, actor_id, actor_role, occurred_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                new_id(),
                self.tenant_id,
                entity_type,
                entity_id,
                from_status,
                to_status,
                reason,
                actor_id,
                actor_role,
                utc_now_iso(),
            ),
        )
        observe_status_change(entity_type, to_status)

    def list_for(self, db, entity_type: str, entity_id: str) -> List[dict]:
        return self.fetch_all(
            db,
            """
            SELECT entity_type, entity_id, from_status, to_status, reason, actor_id, actor_role, occurred_at
            FROM status_events
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY occurred_at ASC
            """,
            (entity_type, entity_id),
        )
