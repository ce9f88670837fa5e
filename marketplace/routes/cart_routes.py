from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from marketplace.application.cart_service import CartService
from marketplace.application.inventory_service import InventoryService
from marketplace.db import get_db
from marketplace.demo_data import seed_demo_data
from marketplace.domain.contracts import CartCreateInput, CartItemInput
from marketplace.policies import require_roles
from marketplace.routes.common import _actor, _tenant_id
from marketplace.ui_strings import success_message


cart_bp = Blueprint("carts", __name__)


_CART_SERVICE = CartService()
_INVENTORY_SERVICE = InventoryService()


def _item_input(payload: dict) -> CartItemInput:
    return CartItemInput(
        product_name=payload.get("product_name"),
        quantity=payload.get("quantity"),
        sku_code=payload.get("sku_code"),
        catalog_item_id=payload.get("catalog_item_id"),
        customization_note=payload.get("customization_note"),
    )


@cart_bp.route("/api/carts", methods=["GET", "POST"])
def carts_collection():
    db = get_db()
    if request.method == "GET":
        result = _CART_SERVICE.list_carts(
            db,
            tenant_id=_tenant_id(),
            actor=_actor(),
            status=(request.args.get("status") or "").strip() or None,
        )
        return jsonify(result.payload), result.status_code

    payload = request.get_json(silent=True) or {}
    items = payload.get("items")
    result = _CART_SERVICE.create_cart(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        create_input=CartCreateInput(
            title=payload.get("title"),
            notes=payload.get("notes"),
            items=items if isinstance(items, list) else [],
        ),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/carts/<string:cart_id>", methods=["GET"])
def cart_detail(cart_id: str):
    db = get_db()
    result = _CART_SERVICE.get_cart(db, tenant_id=_tenant_id(), actor=_actor(), cart_id=cart_id)
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/carts/<string:cart_id>/workflow", methods=["GET"])
def cart_workflow(cart_id: str):
    db = get_db()
    result = _CART_SERVICE.workflow(db, tenant_id=_tenant_id(), actor=_actor(), cart_id=cart_id)
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/carts/<string:cart_id>/items", methods=["POST"])
def cart_add_item(cart_id: str):
    db = get_db()
    payload = request.get_json(silent=True) or {}
    result = _CART_SERVICE.add_item(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        cart_id=cart_id,
        item_input=_item_input(payload),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/carts/<string:cart_id>/items/<string:item_id>", methods=["PATCH", "DELETE"])
def cart_item(cart_id: str, item_id: str):
    db = get_db()
    if request.method == "DELETE":
        result = _CART_SERVICE.remove_item(db, tenant_id=_tenant_id(), actor=_actor(), cart_id=cart_id, item_id=item_id)
    else:
        result = _CART_SERVICE.update_item(
            db,
            tenant_id=_tenant_id(),
            actor=_actor(),
            cart_id=cart_id,
            item_id=item_id,
            payload=request.get_json(silent=True) or {},
        )
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/carts/<string:cart_id>/submit", methods=["POST"])
def cart_submit(cart_id: str):
    db = get_db()
    result = _CART_SERVICE.submit_cart(db, tenant_id=_tenant_id(), actor=_actor(), cart_id=cart_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/carts/<string:cart_id>/status", methods=["POST"])
def cart_status(cart_id: str):
    db = get_db()
    result = _CART_SERVICE.update_status(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        cart_id=cart_id,
        payload=request.get_json(silent=True) or {},
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/ops/carts/<string:cart_id>/validate-inventory", methods=["POST"])
def cart_validate_inventory(cart_id: str):
    db = get_db()
    result = _INVENTORY_SERVICE.validate_cart(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        cart_id=cart_id,
        lead_time_risk_days=int(current_app.config.get("LEAD_TIME_RISK_DAYS", 30) or 30),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/ops/carts/<string:cart_id>/forward-to-sales", methods=["POST"])
def cart_forward_to_sales(cart_id: str):
    db = get_db()
    payload = request.get_json(silent=True) or {}
    result = _CART_SERVICE.forward_to_sales(
        db,
        tenant_id=_tenant_id(),
        actor=_actor(),
        cart_id=cart_id,
        sales_person_id=payload.get("sales_person_id"),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@cart_bp.route("/api/ops/seed", methods=["POST"])
def ops_seed():
    require_roles("ops")
    db = get_db()
    summary = seed_demo_data(db, tenant_id=_tenant_id())
    db.commit()
    summary["message"] = success_message("catalog_seeded")
    return jsonify(summary), 201 if summary["seeded"] else 200
