from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, url_for

from marketplace.application.negotiation_service import NegotiationService
from marketplace.application.quotation_service import QuotationService
from marketplace.db import get_db
from marketplace.domain.contracts import CounterOfferInput, QuotationCreateInput, QuotationUpdateInput
from marketplace.routes.common import (
    _actor,
    _expiring_soon_window,
    _int_arg,
    _require_critical_confirmation,
    _tenant_id,
)


quotation_bp = Blueprint("quotations", __name__)


_QUOTATION_SERVICE = QuotationService()
_NEGOTIATION_SERVICE = NegotiationService(quotation_service=_QUOTATION_SERVICE)


def _poll_seconds() -> int:
    return int(current_app.config.get("NEGOTIATION_POLL_SECONDS", 5) or 5)


def _optional_bool(payload: dict, key: str) -> bool | None:
    if key not in payload:
        return None
    return bool(payload.get(key))


@quotation_bp.route("/api/carts/<string:cart_id>/quotations", methods=["GET", "POST"])
def cart_quotations(cart_id: str):
    db = get_db()
    if request.method == "GET":
        result = _QUOTATION_SERVICE.list_for_cart(db, tenant_id=_tenant_id(), actor=_actor(), cart_id=cart_id)
        # Listing may flip overdue quotations to expired.
        db.commit()
        return jsonify(result.payload), result.status_code

    payload = request.get_json(silent=True) or {}
    items = payload.get("items")
    result = _QUOTATION_SERVICE.create_quotation(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        cart_id=cart_id,
        create_input=QuotationCreateInput(
            items=items if isinstance(items, list) else [],
            terms=payload.get("terms"),
            is_final_offer=bool(payload.get("is_final_offer")),
            currency=payload.get("currency"),
        ),
        default_currency=str(current_app.config.get("PAYMENT_GATEWAY_CURRENCY") or "inr"),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/quotations/<string:quotation_id>", methods=["GET", "PATCH"])
def quotation_detail(quotation_id: str):
    db = get_db()
    if request.method == "PATCH":
        payload = request.get_json(silent=True) or {}
        items = payload.get("items")
        result = _QUOTATION_SERVICE.update_quotation(
            db,
            tenant_id=_tenant_id(),
            actor=_actor(),
            quotation_id=quotation_id,
            update_input=QuotationUpdateInput(
                items=items if isinstance(items, list) else None,
                terms=payload.get("terms") if isinstance(payload.get("terms"), str) else None,
                is_final_offer=_optional_bool(payload, "is_final_offer"),
            ),
        )
        db.commit()
        return jsonify(result.payload), result.status_code

    result = _QUOTATION_SERVICE.get_quotation(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        quotation_id=quotation_id,
        expiring_soon_window=_expiring_soon_window(),
    )
    db.commit()
    response = jsonify(result.payload)
    if result.status_code == 303:
        response.headers["Location"] = url_for(
            "quotations.quotation_detail", quotation_id=result.payload["redirect_to"]
        )
    return response, result.status_code


@quotation_bp.route("/api/quotations/<string:quotation_id>/send", methods=["POST"])
def quotation_send(quotation_id: str):
    db = get_db()
    result = _QUOTATION_SERVICE.send_quotation(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        quotation_id=quotation_id,
        validity_days=int(current_app.config.get("QUOTATION_VALIDITY_DAYS", 30) or 30),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/quotations/<string:quotation_id>/accept", methods=["POST"])
def quotation_accept(quotation_id: str):
    db = get_db()
    result = _QUOTATION_SERVICE.accept_quotation(db, tenant_id=_tenant_id(), actor=_actor(), quotation_id=quotation_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/quotations/<string:quotation_id>/reject", methods=["POST"])
def quotation_reject(quotation_id: str):
    db = get_db()
    result = _QUOTATION_SERVICE.reject_quotation(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        quotation_id=quotation_id,
        payload=request.get_json(silent=True) or {},
        require_confirmation_fn=_require_critical_confirmation,
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/quotations/<string:quotation_id>/negotiation", methods=["GET", "POST"])
def quotation_negotiation(quotation_id: str):
    db = get_db()
    if request.method == "GET":
        result = _NEGOTIATION_SERVICE.get_by_quotation(
            db,
            tenant_id=_tenant_id(),
            actor=_actor(),
            quotation_id=quotation_id,
            poll_after_seconds=_poll_seconds(),
        )
        db.commit()
        return jsonify(result.payload), result.status_code

    result = _NEGOTIATION_SERVICE.open_negotiation(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        quotation_id=quotation_id,
        payload=request.get_json(silent=True) or {},
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/negotiations/<string:negotiation_id>", methods=["GET"])
def negotiation_detail(negotiation_id: str):
    db = get_db()
    result = _NEGOTIATION_SERVICE.get_negotiation(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        negotiation_id=negotiation_id,
        since_round=_int_arg("since_round"),
        poll_after_seconds=_poll_seconds(),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/negotiations/<string:negotiation_id>/counter", methods=["POST"])
def negotiation_counter(negotiation_id: str):
    db = get_db()
    payload = request.get_json(silent=True) or {}
    items = payload.get("items")
    result = _NEGOTIATION_SERVICE.submit_counter(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        negotiation_id=negotiation_id,
        counter_input=CounterOfferInput(
            items=items if isinstance(items, list) else [],
            message=payload.get("message"),
        ),
        max_rounds=int(current_app.config.get("NEGOTIATION_MAX_ROUNDS", 0) or 0),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/negotiations/<string:negotiation_id>/accept", methods=["POST"])
def negotiation_accept(negotiation_id: str):
    db = get_db()
    result = _NEGOTIATION_SERVICE.accept(db, tenant_id=_tenant_id(), actor=_actor(), negotiation_id=negotiation_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@quotation_bp.route("/api/negotiations/<string:negotiation_id>/close", methods=["POST"])
def negotiation_close(negotiation_id: str):
    db = get_db()
    result = _NEGOTIATION_SERVICE.close(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        negotiation_id=negotiation_id,
        payload=request.get_json(silent=True) or {},
        require_confirmation_fn=_require_critical_confirmation,
    )
    db.commit()
    return jsonify(result.payload), result.status_code
