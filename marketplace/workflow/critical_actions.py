from __future__ import annotations

from typing import Dict, Tuple


# Actions that discard buyer or seller work and must be explicitly confirmed.
_CRITICAL_ACTION_KEYS = ("reject_quotation", "reject_final_check", "cancel_order", "close_negotiation")

CRITICAL_ACTIONS: Dict[str, Dict[str, str]] = {
    key: {"action_key": key, "confirm_message_key": key, "impact_text_key": f"impact.{key}"}
    for key in _CRITICAL_ACTION_KEYS
}

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def get_critical_action(action_key: str | None) -> Dict[str, str] | None:
    return CRITICAL_ACTIONS.get(str(action_key or "").strip())


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return isinstance(value, str) and value.strip().lower() in _TRUTHY


def resolve_confirmation(request_obj, payload: dict | None = None) -> Tuple[bool, str]:
    """Looks for a confirm token, then a confirm flag, in the body, the query string and the headers.

    Returns ``(confirmed, mode)``; ``mode`` is logged with the confirmation audit event.
    """
    body = payload if isinstance(payload, dict) else {}
    sources = (body.get, request_obj.args.get)

    token = next((value for value in (get("confirm_token") for get in sources) if value), None)
    token = token or request_obj.headers.get("X-Confirm-Token")
    if isinstance(token, str) and token.strip():
        return True, "confirm_token"

    flag = next((value for value in (get("confirm") for get in sources) if value is not None), None)
    if flag is None:
        flag = request_obj.headers.get("X-Confirm")
    if _truthy(flag):
        return True, "confirm_flag"
    return False, "missing_confirmation"
