"""
Migration environment for the meterproxy schema.

Two ways in:
  - ``meterproxy.core.database.Database.init`` hands over an open
    connection through ``config.attributes["connection"]`` and has
    already configured logging.
  - The ``alembic`` CLI, which reads METERPROXY_DATABASE_URL (or the
    url in alembic.ini) and sets up logging from the ini file.

SQLite cannot ALTER most constraints in place, so migrations run in batch
mode there.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import Connection
from sqlmodel import SQLModel

from meterproxy.models import billing, user  # noqa: F401  (registers tables)

config = context.config
target_metadata = SQLModel.metadata


def _database_url() -> str:
    return os.environ.get("METERPROXY_DATABASE_URL") or config.get_main_option("sqlalchemy.url")


def _configure(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


def run_offline() -> None:
    """Emit SQL to stdout instead of executing it."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        _configure(connection)
        return

    if config.config_file_name is not None:
        fileConfig(config.config_file_name)
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    with engine.connect() as conn:
        _configure(conn)


if context.is_offline_mode():
    run_offline()
else:
    run_online()
