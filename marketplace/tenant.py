from flask import g, has_request_context, request, session


DEFAULT_TENANT_ID = "tenant-demo"


def _clean(value) -> str | None:
    return str(value or "").strip() or None


def load_request_tenant() -> None:
    """Binds ``g.tenant_id`` from the session, then the X-Tenant-Id header, then the demo tenant."""
    g.tenant_id = (
        _clean(session.get("tenant_id"))
        or _clean(request.headers.get("X-Tenant-Id"))
        or DEFAULT_TENANT_ID
    )


def scoped_tenant_id(value: str | None = None) -> str:
    explicit = _clean(value)
    if explicit:
        return explicit
    if has_request_context():
        return _clean(getattr(g, "tenant_id", None)) or DEFAULT_TENANT_ID
    return DEFAULT_TENANT_ID
