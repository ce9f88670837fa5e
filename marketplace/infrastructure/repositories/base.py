from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_iso(utc_now())


class TenantScopeRequiredError(ValueError):
    """Raised when a repository is built without a tenant."""


_TAIL_CLAUSE = re.compile(r"\b(group\s+by|order\s+by|limit|offset|returning)\b", re.IGNORECASE)
_WHERE = re.compile(r"\bwhere\b", re.IGNORECASE)


class BaseRepository:
    """Every repository is bound to one tenant; reads go through ``scope_query``."""

    def __init__(self, *, tenant_id: str | None = None) -> None:
        tenant = str(tenant_id or "").strip()
        if not tenant:
            raise TenantScopeRequiredError("tenant_id is required for repository access")
        self.tenant_id = tenant

    def scope_query(self, query: str) -> str:
        """Adds ``tenant_id = ?`` to a query that does not filter on tenant yet.

        The extra placeholder is appended last, so callers pass the tenant as
        the final parameter (``fetch_one``/``fetch_all`` do that).
        """
        sql = str(query or "").strip()
        if not sql or "tenant_id" in sql.lower():
            return sql
        tail_at = _TAIL_CLAUSE.search(sql)
        head, tail = (sql[: tail_at.start()].rstrip(), sql[tail_at.start() :]) if tail_at else (sql, "")
        joiner = "AND" if _WHERE.search(head) else "WHERE"
        return f"{head} {joiner} tenant_id = ? {tail}".strip()

    def _params(self, query: str, params: Iterable[Any] | None) -> tuple:
        values = tuple(params or ())
        if "tenant_id" in str(query or "").lower():
            return values
        return (*values, self.tenant_id)

    def fetch_one(self, db, query: str, params: Iterable[Any] | None = None) -> dict | None:
        row = db.execute(self.scope_query(query), self._params(query, params)).fetchone()
        return dict(row) if row else None

    def fetch_all(self, db, query: str, params: Iterable[Any] | None = None) -> list[dict]:
        rows = db.execute(self.scope_query(query), self._params(query, params)).fetchall()
        return self.rows_to_dicts(rows)

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]
