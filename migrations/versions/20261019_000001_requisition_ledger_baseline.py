"""Requisition ledger baseline from smartcompras.db

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from smartcompras.db import _convert_qmark_to_pg, _split_sql_statements, drop_schema, init_schema


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _MigrationDb:
    """Just enough of ``smartcompras.db.Database`` to run the schema builders on Alembic's connection."""

    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return self._connection.exec_driver_sql(sql)
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return self._connection.exec_driver_sql(statement, tuple(params))

    def executescript(self, sql: str):
        # Statement by statement so everything stays inside the migration transaction.
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)


def _backend(connection: Connection) -> str:
    return "postgres" if (connection.dialect.name or "").lower().startswith("postgres") else "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    init_schema(_MigrationDb(connection, _backend(connection)))


def downgrade() -> None:
    connection = op.get_bind()
    drop_schema(_MigrationDb(connection, _backend(connection)))
