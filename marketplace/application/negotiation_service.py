from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping

from marketplace.application.guards import ensure_action, ensure_roles, not_found
from marketplace.application.quotation_service import QuotationService
from marketplace.application.serializers import serialize_order, serialize_round
from marketplace.domain.contracts import Actor, CounterOfferInput, ServiceOutput
from marketplace.errors import StateConflictError
from marketplace.infrastructure.repositories import (
    NegotiationRepository,
    OrderRepository,
    QuotationRepository,
    StatusEventRepository,
)
from marketplace.infrastructure.repositories.base import utc_now
from marketplace.observability import observe_negotiation_round
from marketplace.ui_strings import success_message
from marketplace.workflow.canonical_status import derive_offer_iterations
from marketplace.workflow.negotiation import (
    ACCEPTED,
    awaiting_party,
    is_terminal,
    may_accept,
    may_counter,
    plan_accept,
    plan_close,
    plan_counter,
    seed_round,
)


logger = logging.getLogger(__name__)

NEGOTIATION_ROLES = ("buyer", "sales")


def acceptance_basis(round_row: Mapping[str, Any], quotation_items: List[dict]) -> List[Dict[str, Any]]:
    """Lines of the accepted round, named after the quotation lines they price."""
    names = {str(item["cart_item_id"]): item.get("product_name") for item in quotation_items}
    return [
        {
            "cart_item_id": item["cart_item_id"],
            "product_name": names.get(str(item["cart_item_id"])),
            "unit_price": item["unit_price"],
            "quantity": item["quantity"],
            "line_total": item["line_total"],
        }
        for item in round_row.get("items") or []
    ]


class NegotiationService:
    def __init__(self, quotation_service: QuotationService | None = None) -> None:
        self.quotation_service = quotation_service or QuotationService()

    def _load(self, db, *, tenant_id: str, actor: Actor, negotiation_id: str, now: datetime) -> tuple[dict, dict]:
        negotiation = NegotiationRepository(tenant_id=tenant_id).get_negotiation(db, negotiation_id)
        if not negotiation:
            raise not_found("negotiation_not_found", negotiation_id=negotiation_id)
        quotation = self.quotation_service.load_quotation(
            db, tenant_id=tenant_id, actor=actor, quotation_id=negotiation["quotation_id"]
        )
        refreshed = self.quotation_service.expire_if_due(db, tenant_id=tenant_id, quotation=quotation, now=now)
        if refreshed.get("status") != quotation.get("status"):
            negotiation = NegotiationRepository(tenant_id=tenant_id).get_negotiation(db, negotiation_id) or negotiation
        return negotiation, refreshed

    def negotiation_payload(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        negotiation: Mapping[str, Any],
        quotation: Mapping[str, Any],
        since_round: int | None = None,
        poll_after_seconds: int = 5,
    ) -> Dict[str, Any]:
        negotiations = NegotiationRepository(tenant_id=tenant_id)
        all_rounds = negotiations.list_rounds(db, negotiation["id"])
        rounds = all_rounds if since_round is None else [r for r in all_rounds if int(r["round_number"]) > since_round]
        status = negotiation.get("status")
        party = actor.party
        data = dict(negotiation)
        data.pop("tenant_id", None)
        data.update(
            {
                "quotation_status": quotation.get("status"),
                "is_final_offer": bool(quotation.get("is_final_offer")),
                "rounds": [serialize_round(row) for row in rounds],
                "last_round_number": int(all_rounds[-1]["round_number"]) if all_rounds else None,
                "offer_iterations": derive_offer_iterations(all_rounds),
                "awaiting_party": awaiting_party(status),
                "party": party,
                "can_counter": may_counter(status, party),
                "can_accept": may_accept(status, party),
                "can_close": not is_terminal(status),
                "poll_after_seconds": int(poll_after_seconds),
            }
        )
        return data

    def open_negotiation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        payload: Dict[str, Any],
        now: datetime | None = None,
    ) -> ServiceOutput:
        ensure_roles(actor, *NEGOTIATION_ROLES)
        quotation = self.quotation_service.load_quotation(
            db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id
        )
        quotation = self.quotation_service.expire_if_due(
            db, tenant_id=tenant_id, quotation=quotation, now=now or utc_now()
        )
        ensure_action("quotation", quotation.get("status"), "open_negotiation")
        self.quotation_service.ensure_active(db, tenant_id=tenant_id, quotation=quotation)

        negotiations = NegotiationRepository(tenant_id=tenant_id)
        existing = negotiations.get_by_quotation(db, quotation_id)
        if existing:
            raise StateConflictError(
                code="negotiation_exists",
                message_key="negotiation_exists",
                payload={"negotiation_id": existing["id"], "negotiation_status": existing.get("status")},
            )

        note = str(payload.get("note") or payload.get("message") or "").strip() or None
        negotiation_id = negotiations.create_negotiation(
            db,
            quotation_id=quotation_id,
            opened_by=actor.user_id,
            opened_by_party=actor.party,
            note=note,
        )
        quotation_items = QuotationRepository(tenant_id=tenant_id).list_items(db, quotation_id)
        negotiations.add_round(db, negotiation_id, seed_round(quotation_items), proposed_by=None)
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="negotiation",
            entity_id=negotiation_id,
            from_status=None,
            to_status="open",
            reason=note or "negotiation_opened",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        logger.info(
            "negotiation_opened",
            extra={"tenant_id": tenant_id, "negotiation_id": negotiation_id, "quotation_id": quotation_id},
        )
        negotiation = negotiations.get_negotiation(db, negotiation_id)
        data = self.negotiation_payload(db, tenant_id=tenant_id, actor=actor, negotiation=negotiation, quotation=quotation)
        return ServiceOutput(
            payload={"negotiation": data, "message": success_message("negotiation_opened")},
            status_code=201,
        )

    def get_negotiation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        negotiation_id: str,
        since_round: int | None = None,
        poll_after_seconds: int = 5,
        now: datetime | None = None,
    ) -> ServiceOutput:
        negotiation, quotation = self._load(
            db, tenant_id=tenant_id, actor=actor, negotiation_id=negotiation_id, now=now or utc_now()
        )
        data = self.negotiation_payload(
            db,
            tenant_id=tenant_id,
            actor=actor,
            negotiation=negotiation,
            quotation=quotation,
            since_round=since_round,
            poll_after_seconds=poll_after_seconds,
        )
        return ServiceOutput(payload={"negotiation": data}, status_code=200)

    def get_by_quotation(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        quotation_id: str,
        poll_after_seconds: int = 5,
        now: datetime | None = None,
    ) -> ServiceOutput:
        quotation = self.quotation_service.load_quotation(
            db, tenant_id=tenant_id, actor=actor, quotation_id=quotation_id
        )
        negotiation = NegotiationRepository(tenant_id=tenant_id).get_by_quotation(db, quotation_id)
        if not negotiation:
            raise not_found("negotiation_not_found", quotation_id=quotation_id)
        return self.get_negotiation(
            db,
            tenant_id=tenant_id,
            actor=actor,
            negotiation_id=negotiation["id"],
            poll_after_seconds=poll_after_seconds,
            now=now,
        )

    def submit_counter(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        negotiation_id: str,
        counter_input: CounterOfferInput,
        max_rounds: int = 0,
        now: datetime | None = None,
    ) -> ServiceOutput:
        ensure_roles(actor, *NEGOTIATION_ROLES)
        negotiation, quotation = self._load(
            db, tenant_id=tenant_id, actor=actor, negotiation_id=negotiation_id, now=now or utc_now()
        )
        self.quotation_service.ensure_active(db, tenant_id=tenant_id, quotation=quotation)
        negotiations = NegotiationRepository(tenant_id=tenant_id)
        latest = negotiations.latest_round(db, negotiation_id)
        status = negotiation.get("status")
        draft = plan_counter(
            status=status,
            party=actor.party,
            last_round_number=int(latest["round_number"]) if latest else 0,
            quotation_items=QuotationRepository(tenant_id=tenant_id).list_items(db, quotation["id"]),
            proposed_items=counter_input.items,
            message=counter_input.message,
            max_rounds=max_rounds,
        )
        try:
            round_id = negotiations.add_round(db, negotiation_id, draft, proposed_by=actor.user_id)
        except Exception as exc:
            if not db.is_integrity_error(exc):
                raise
            raise StateConflictError(
                code="negotiation_round_conflict",
                message_key="negotiation_round_conflict",
                payload={"negotiation_id": negotiation_id, "round_number": draft.round_number},
            ) from exc
        negotiations.set_status(db, negotiation_id, draft.status_after)
        if draft.status_after != status:
            StatusEventRepository(tenant_id=tenant_id).record(
                db,
                entity_type="negotiation",
                entity_id=negotiation_id,
                from_status=status,
                to_status=draft.status_after,
                reason=f"round_{draft.round_number}",
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        observe_negotiation_round(draft.party)
        logger.info(
            "negotiation_round_submitted",
            extra={
                "tenant_id": tenant_id,
                "negotiation_id": negotiation_id,
                "round_number": draft.round_number,
                "party": draft.party,
                "proposed_total": str(draft.proposed_total),
            },
        )
        return ServiceOutput(
            payload={
                "negotiation_id": negotiation_id,
                "round_id": round_id,
                "round_number": draft.round_number,
                "party": draft.party,
                "status": draft.status_after,
                "proposed_total": str(draft.proposed_total),
                "awaiting_party": awaiting_party(draft.status_after),
                "message": success_message("round_submitted"),
            },
            status_code=201,
        )

    def accept(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        negotiation_id: str,
        now: datetime | None = None,
    ) -> ServiceOutput:
        """Accepts the latest round and creates the order from its lines."""
        ensure_roles(actor, *NEGOTIATION_ROLES)
        negotiation, quotation = self._load(
            db, tenant_id=tenant_id, actor=actor, negotiation_id=negotiation_id, now=now or utc_now()
        )
        status = negotiation.get("status")
        if status == ACCEPTED:
            existing = OrderRepository(tenant_id=tenant_id).get_by_quotation(db, quotation["id"])
            if existing:
                return ServiceOutput(
                    payload={
                        "negotiation_id": negotiation_id,
                        "status": ACCEPTED,
                        "accepted_round_number": negotiation.get("accepted_round_number"),
                        "already_accepted": True,
                        "order": serialize_order(existing),
                        "message": success_message("quotation_already_accepted"),
                    },
                    status_code=200,
                )
        next_status = plan_accept(status=status, party=actor.party)
        self.quotation_service.ensure_active(db, tenant_id=tenant_id, quotation=quotation)
        self.quotation_service.order_service.ensure_no_live_order(
            db, tenant_id=tenant_id, cart_id=quotation["cart_id"], quotation_id=quotation["id"]
        )

        negotiations = NegotiationRepository(tenant_id=tenant_id)
        latest = negotiations.latest_round(db, negotiation_id)
        basis = acceptance_basis(latest or {}, QuotationRepository(tenant_id=tenant_id).list_items(db, quotation["id"]))
        round_number = int(latest["round_number"]) if latest else 0
        negotiations.set_status(
            db,
            negotiation_id,
            next_status,
            closed_by_party=actor.party,
            accepted_round_number=round_number,
        )
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="negotiation",
            entity_id=negotiation_id,
            from_status=status,
            to_status=next_status,
            reason=f"round_{round_number}_accepted",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        result = self.quotation_service.complete_acceptance(
            db,
            tenant_id=tenant_id,
            actor=actor,
            quotation=quotation,
            negotiation_id=negotiation_id,
            basis_items=basis,
            reason="negotiation_accepted",
        )
        payload = dict(result.payload)
        payload.update(
            {
                "negotiation_id": negotiation_id,
                "status": next_status,
                "accepted_round_number": round_number,
                "message": success_message("negotiation_accepted"),
            }
        )
        return ServiceOutput(payload=payload, status_code=result.status_code)

    def close(
        self,
        db,
        *,
        tenant_id: str,
        actor: Actor,
        negotiation_id: str,
        payload: Dict[str, Any],
        require_confirmation_fn,
        now: datetime | None = None,
    ) -> ServiceOutput:
        ensure_roles(actor, *NEGOTIATION_ROLES)
        negotiation, _quotation = self._load(
            db, tenant_id=tenant_id, actor=actor, negotiation_id=negotiation_id, now=now or utc_now()
        )
        status = negotiation.get("status")
        next_status = plan_close(status=status, party=actor.party)
        require_confirmation_fn("close_negotiation", entity="negotiation", entity_id=negotiation_id, payload=payload)

        reason = str(payload.get("reason") or "").strip() or None
        NegotiationRepository(tenant_id=tenant_id).set_status(
            db,
            negotiation_id,
            next_status,
            close_reason=reason,
            closed_by_party=actor.party,
        )
        StatusEventRepository(tenant_id=tenant_id).record(
            db,
            entity_type="negotiation",
            entity_id=negotiation_id,
            from_status=status,
            to_status=next_status,
            reason=reason or "negotiation_closed",
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
        return ServiceOutput(
            payload={
                "negotiation_id": negotiation_id,
                "status": next_status,
                "close_reason": reason,
                "message": success_message("negotiation_closed"),
            },
            status_code=200,
        )
