from __future__ import annotations

import os

from alembic import context
from sqlalchemy import engine_from_config, pool

from smartcompras.db_migrations import to_sqlalchemy_url


config = context.config
target_metadata = None


def _database_url() -> str:
    raw = os.environ.get("DATABASE_URL") or os.environ.get("DB_PATH") or config.get_main_option("sqlalchemy.url")
    return to_sqlalchemy_url(raw or "")


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool, future=True)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
