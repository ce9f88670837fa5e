from __future__ import annotations

from flask import Blueprint, current_app, jsonify, redirect, request, session

from marketplace.application.payment_service import PaymentService
from marketplace.db import get_db
from marketplace.errors import AppError, NotFoundError
from marketplace.payments.gateway import PaymentGatewayError
from marketplace.payments.mock_gateway import MockPaymentGateway
from marketplace.payments.registry import get_payment_gateway
from marketplace.routes.common import _actor, _tenant_id
from marketplace.ui_strings import get_ui_text


payment_bp = Blueprint("payments", __name__)


_PAYMENT_SERVICE = PaymentService()


def _safe_next(raw: str | None) -> str:
    target = str(raw or "").strip()
    # Only same-site relative paths; anything else falls back to the orders page.
    if target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return str(current_app.config.get("PAYMENT_CLEAN_RETURN_PATH") or "/buyer/orders")


@payment_bp.route("/api/payments/<string:payment_id>/confirm", methods=["POST"])
def payment_confirm(payment_id: str):
    db = get_db()
    result = _PAYMENT_SERVICE.confirm_payment(db, tenant_id=_tenant_id(), actor=_actor(), payment_id=payment_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/api/payments/reconcile", methods=["POST"])
def payment_reconcile():
    db = get_db()
    payload = request.get_json(silent=True) or {}
    result = _PAYMENT_SERVICE.reconcile(
        db,
        tenant_id=_tenant_id(),
        session_id=payload.get("session_id"),
        order_id=payload.get("order_id"),
        gateway=get_payment_gateway(),
    )
    db.commit()
    body = result.to_dict()
    body["message"] = get_ui_text(result.notice_key)
    return jsonify(body), 200


@payment_bp.route("/payments/return", methods=["GET"])
def payment_return():
    """Reconciles a checkout redirect, then strips its parameters with a clean redirect."""
    db = get_db()
    session_id = request.args.get("session_id")
    order_id = request.args.get("order_id")
    target = _safe_next(request.args.get("next"))
    try:
        result = _PAYMENT_SERVICE.reconcile(
            db,
            tenant_id=_tenant_id(),
            session_id=session_id,
            order_id=order_id,
            gateway=get_payment_gateway(),
        )
        db.commit()
        notice = {"outcome": result.outcome, "order_id": result.order_id, "notice_key": result.notice_key}
    except AppError as exc:
        current_app.logger.warning(
            "payment_return_rejected",
            extra={"error_code": exc.code, "session_id": session_id, "order_id": order_id},
        )
        notice = {"outcome": exc.code, "order_id": order_id, "notice_key": "notice.payment_verification_failed"}
    notice["message"] = get_ui_text(notice["notice_key"])
    session["payment_notice"] = notice
    return redirect(target, code=303)


@payment_bp.route("/payments/mock-checkout/<string:session_id>", methods=["GET", "POST"])
def mock_checkout(session_id: str):
    gateway = get_payment_gateway()
    if not isinstance(gateway, MockPaymentGateway):
        raise NotFoundError(code="not_found", message_key="not_found", payload={"session_id": session_id})
    try:
        checkout = gateway.complete_session(session_id)
    except PaymentGatewayError as exc:
        raise NotFoundError(code="not_found", message_key="not_found", payload={"session_id": session_id}) from exc
    success_url = str(checkout.get("success_url") or "").replace("{CHECKOUT_SESSION_ID}", session_id)
    return redirect(success_url, code=303)
