from __future__ import annotations

from typing import Iterable, Set

from flask import has_request_context, request, session

from marketplace.errors import PermissionError as AppPermissionError


VALID_ROLES: Set[str] = {"buyer", "sales", "ops", "admin"}


def normalize_role(role: str | None, default: str = "buyer") -> str:
    normalized = str(role or "").strip().lower()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def current_role() -> str:
    if not has_request_context():
        return "buyer"
    raw = session.get("user_role") or request.headers.get("X-User-Role")
    return normalize_role(raw, default="buyer")


def current_user_id() -> str | None:
    if not has_request_context():
        return None
    raw = session.get("user_id") or request.headers.get("X-User-Id")
    user_id = str(raw or "").strip()
    return user_id or None


def normalize_allowed_roles(roles: Iterable[str]) -> Set[str]:
    allowed: Set[str] = set()
    for role in roles:
        normalized = normalize_role(role, default="")
        if normalized:
            allowed.add(normalized)
    return allowed


def has_any_role(role: str | None, allowed_roles: Iterable[str]) -> bool:
    normalized_role = normalize_role(role, default="buyer")
    allowed = normalize_allowed_roles(allowed_roles)
    return not allowed or normalized_role in allowed or normalized_role == "admin"


def require_roles(*allowed_roles: str, role: str | None = None) -> str:
    normalized_role = normalize_role(role, default="buyer") if role is not None else current_role()
    if has_any_role(normalized_role, allowed_roles):
        return normalized_role
    raise AppPermissionError(
        code="permission_denied",
        message_key="permission_denied",
        http_status=403,
        critical=False,
        payload={"role": normalized_role, "allowed_roles": sorted(normalize_allowed_roles(allowed_roles))},
    )
