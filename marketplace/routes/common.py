from __future__ import annotations

from datetime import timedelta

from flask import current_app, g, request, session

from marketplace.domain.contracts import Actor
from marketplace.errors import ConfirmationRequiredError, ValidationError
from marketplace.policies import current_role, current_user_id
from marketplace.tenant import scoped_tenant_id
from marketplace.ui_strings import confirm_message, get_ui_text
from marketplace.workflow.critical_actions import get_critical_action, resolve_confirmation


def _actor() -> Actor:
    return Actor(role=current_role(), user_id=current_user_id())


def _tenant_id() -> str:
    return scoped_tenant_id()


def _int_arg(name: str) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(code="query_param_invalid", message_key="action_invalid", payload={"param": name}) from exc


def _expiring_soon_window() -> timedelta:
    return timedelta(hours=int(current_app.config.get("QUOTATION_EXPIRING_SOON_HOURS", 24) or 24))


def _critical_confirmation_details(action_key: str) -> dict | None:
    meta = get_critical_action(action_key)
    if not meta:
        return None

    confirm_key = meta.get("confirm_message_key") or action_key
    impact_key = meta.get("impact_text_key") or f"impact.{action_key}"
    return {
        "action_key": action_key,
        "confirm_key": confirm_key,
        "confirm_message": confirm_message(confirm_key, confirm_key),
        "impact_key": impact_key,
        "impact": get_ui_text(impact_key, impact_key),
    }


def _audit_confirmation(action_key: str, entity: str, entity_id: str, mode: str) -> None:
    request_id = (getattr(g, "request_id", None) or "").strip() or "n/a"
    user = (session.get("user_id") or request.headers.get("X-User-Id") or "anonymous").strip() or "anonymous"
    current_app.logger.info(
        "confirmation_event",
        extra={
            "request_id": request_id,
            "user": user,
            "action": action_key,
            "entity": entity,
            "entity_id": entity_id,
            "mode": mode,
        },
    )


def _require_critical_confirmation(
    action_key: str,
    *,
    entity: str,
    entity_id: str,
    payload: dict | None = None,
) -> None:
    meta = get_critical_action(action_key)
    if not meta:
        return

    confirmed, mode = resolve_confirmation(request, payload)
    if not confirmed:
        raise ConfirmationRequiredError(
            payload={
                "action": action_key,
                "confirmation": _critical_confirmation_details(action_key),
            },
        )

    _audit_confirmation(action_key, entity, entity_id, mode)
