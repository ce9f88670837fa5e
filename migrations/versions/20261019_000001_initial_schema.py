"""Marketplace schema: catalog, carts, quotations, negotiations, orders, payments

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from marketplace.db import _convert_qmark_to_pg, create_schema, drop_schema


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _AlembicDbAdapter:
    """Lets the shared DDL helpers run on the migration connection."""

    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return self._connection.exec_driver_sql(sql)
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return self._connection.exec_driver_sql(statement, tuple(params))


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def _adapter() -> _AlembicDbAdapter:
    connection = op.get_bind()
    return _AlembicDbAdapter(connection, _resolve_backend(connection))


def upgrade() -> None:
    create_schema(_adapter())


def downgrade() -> None:
    drop_schema(_adapter())
