from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy.engine import Engine

from alembic import context
from pjn_sync import models  # noqa: F401
from pjn_sync.config import get_database_config
from pjn_sync.db import Base, get_engine

# Alembic Config object, giving access to the values in alembic.ini.
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Model metadata for 'autogenerate' support.
target_metadata = Base.metadata


def _get_url() -> str:
    """
    Resolve the database URL from PJN_SYNC_DATABASE_URL (or the default).
    """
    return get_database_config().database_url


def run_migrations_offline() -> None:
    """
    Run migrations in 'offline' mode (emit SQL without a connection).
    """
    context.configure(
        url=_get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """
    Run migrations in 'online' mode against the project's engine.
    """
    connectable: Engine = get_engine()

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
