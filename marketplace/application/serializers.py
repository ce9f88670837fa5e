from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Mapping

from marketplace.ui_strings import status_label
from marketplace.workflow.canonical_status import OrderFacts, derive_sales_payment_state, resolve_ops_final_check
from marketplace.workflow.money import money_str


def _money_fields(row: Mapping[str, Any], *fields: str) -> Dict[str, Any]:
    data = dict(row)
    for name in fields:
        if name in data:
            data[name] = money_str(data[name])
    return data


def serialize_cart_item(row: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(row)
    data.pop("tenant_id", None)
    raw_validation = data.pop("validation_json", None)
    validation = None
    if raw_validation:
        try:
            validation = json.loads(raw_validation)
        except (TypeError, ValueError):
            validation = None
    data["validation"] = validation
    return data


def serialize_cart(row: Mapping[str, Any], items: Iterable[Mapping[str, Any]] | None = None) -> Dict[str, Any]:
    data = dict(row)
    data.pop("tenant_id", None)
    data["status_label"] = status_label("cart", data.get("status"))
    if items is not None:
        data["items"] = [serialize_cart_item(item) for item in items]
    return data


def serialize_line(row: Mapping[str, Any]) -> Dict[str, Any]:
    return _money_fields(row, "unit_price", "line_total")


def serialize_quotation(row: Mapping[str, Any], items: Iterable[Mapping[str, Any]] | None = None) -> Dict[str, Any]:
    data = _money_fields(row, "total_amount")
    data.pop("tenant_id", None)
    data["is_final_offer"] = bool(data.get("is_final_offer"))
    data["status_label"] = status_label("quotation", data.get("status"))
    if items is not None:
        data["items"] = [serialize_line(item) for item in items]
    return data


def serialize_round(row: Mapping[str, Any]) -> Dict[str, Any]:
    data = _money_fields(row, "proposed_total")
    data["items"] = [serialize_line(item) for item in row.get("items") or []]
    return data


def serialize_payment(row: Mapping[str, Any]) -> Dict[str, Any]:
    data = _money_fields(row, "amount")
    data.pop("tenant_id", None)
    data["status_label"] = status_label("payment", data.get("status"))
    return data


def serialize_order(
    row: Mapping[str, Any],
    items: Iterable[Mapping[str, Any]] | None = None,
    payments: Iterable[Mapping[str, Any]] | None = None,
) -> Dict[str, Any]:
    payment_rows = list(payments or [])
    data = _money_fields(row, "total_amount", "paid_amount")
    data.pop("tenant_id", None)
    data["status_label"] = status_label("order", data.get("status"))
    data["ops_final_check"] = {
        "status": resolve_ops_final_check(
            row.get("ops_final_check_status"),
            payment_link_sent_at=row.get("payment_link_sent_at"),
            payment_confirmed_at=row.get("payment_confirmed_at"),
            forwarded_to_ops_at=row.get("forwarded_to_ops_at"),
        ),
        "reason": row.get("ops_final_check_reason"),
        "checked_at": row.get("ops_final_check_at"),
        "checked_by": row.get("ops_final_check_by"),
    }
    data["payment_state"] = derive_sales_payment_state(OrderFacts.from_row(row, payment_rows))
    if items is not None:
        data["items"] = [serialize_line(item) for item in items]
    if payments is not None:
        data["payments"] = [serialize_payment(payment) for payment in payment_rows]
    return data
