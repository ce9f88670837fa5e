from __future__ import annotations

from typing import Any, Mapping

from marketplace.domain.contracts import Actor
from marketplace.errors import FlowActionError, NotFoundError, PermissionError
from marketplace.policies import require_roles
from marketplace.workflow.flow_policy import action_allowed, allowed_actions, primary_action


def forbidden_action(stage: str, status: str | None, action: str):
    raise FlowActionError(
        payload={
            "stage": stage,
            "status": status,
            "action": action,
            "allowed_actions": allowed_actions(stage, status),
            "primary_action": primary_action(stage, status),
        },
    )


def ensure_action(stage: str, status: str | None, action: str) -> None:
    if not action_allowed(stage, status, action):
        forbidden_action(stage, status, action)


def ensure_roles(actor: Actor, *roles: str) -> None:
    require_roles(*roles, role=actor.role)


def not_found(code: str, **payload: Any) -> NotFoundError:
    return NotFoundError(code=code, message_key=code, payload=payload)


def ensure_buyer_owns(actor: Actor, cart: Mapping[str, Any]) -> None:
    """Buyers only reach their own requests; staff roles see every request of the tenant."""
    if actor.role != "buyer":
        return
    owner = str(cart.get("buyer_id") or "").strip()
    if owner and actor.user_id and owner != actor.user_id:
        raise PermissionError(
            code="cart_access_denied",
            message_key="cart_access_denied",
            payload={"cart_id": cart.get("id")},
        )
