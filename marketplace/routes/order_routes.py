from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from marketplace.application.order_service import OrderService
from marketplace.application.payment_service import PaymentService
from marketplace.db import get_db
from marketplace.domain.contracts import OrderStatusInput, PaymentInitInput
from marketplace.payments.registry import get_payment_gateway
from marketplace.routes.common import _actor, _require_critical_confirmation, _tenant_id


order_bp = Blueprint("orders", __name__)


_ORDER_SERVICE = OrderService()
_PAYMENT_SERVICE = PaymentService(order_service=_ORDER_SERVICE)


def _return_url() -> str:
    configured = str(current_app.config.get("PAYMENT_RETURN_URL") or "/payments/return")
    if configured.startswith(("http://", "https://")):
        return configured
    return request.host_url.rstrip("/") + "/" + configured.lstrip("/")


def _currency() -> str:
    return str(current_app.config.get("PAYMENT_GATEWAY_CURRENCY") or "inr")


@order_bp.route("/api/orders/<string:order_id>", methods=["GET"])
def order_detail(order_id: str):
    db = get_db()
    result = _ORDER_SERVICE.get_order(db, tenant_id=_tenant_id(), actor=_actor(), order_id=order_id)
    return jsonify(result.payload), result.status_code


@order_bp.route("/api/ops/orders/<string:order_id>/final-check/approve", methods=["POST"])
def order_final_check_approve(order_id: str):
    db = get_db()
    result = _ORDER_SERVICE.approve_final_check(db, tenant_id=_tenant_id(), actor=_actor(), order_id=order_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@order_bp.route("/api/ops/orders/<string:order_id>/final-check/reject", methods=["POST"])
def order_final_check_reject(order_id: str):
    db = get_db()
    result = _ORDER_SERVICE.reject_final_check(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        order_id=order_id,
        payload=request.get_json(silent=True) or {},
        require_confirmation_fn=_require_critical_confirmation,
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@order_bp.route("/api/orders/<string:order_id>/payment-link", methods=["POST"])
def order_payment_link(order_id: str):
    db = get_db()
    result = _ORDER_SERVICE.send_payment_link(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        order_id=order_id,
        gateway=get_payment_gateway(),
        return_url=_return_url(),
        currency=_currency(),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@order_bp.route("/api/orders/<string:order_id>/payments", methods=["POST"])
def order_payments(order_id: str):
    db = get_db()
    payload = request.get_json(silent=True) or {}
    result = _PAYMENT_SERVICE.initiate_payment(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        order_id=order_id,
        payment_input=PaymentInitInput(
            method=str(payload.get("method") or ""),
            amount=payload.get("amount"),
            transaction_ref=payload.get("transaction_ref"),
            payment_type=payload.get("payment_type"),
        ),
        gateway=get_payment_gateway(),
        return_url=_return_url(),
        currency=_currency(),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@order_bp.route("/api/orders/<string:order_id>/forward-to-ops", methods=["POST"])
def order_forward_to_ops(order_id: str):
    db = get_db()
    result = _ORDER_SERVICE.forward_to_ops(db, tenant_id=_tenant_id(), actor=_actor(), order_id=order_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@order_bp.route("/api/ops/orders/<string:order_id>/status", methods=["POST"])
def order_status(order_id: str):
    db = get_db()
    payload = request.get_json(silent=True) or {}
    result = _ORDER_SERVICE.transition_status(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        order_id=order_id,
        status_input=OrderStatusInput(status=str(payload.get("status") or ""), reason=payload.get("reason")),
        payload=payload,
        require_confirmation_fn=_require_critical_confirmation,
    )
    db.commit()
    return jsonify(result.payload), result.status_code
