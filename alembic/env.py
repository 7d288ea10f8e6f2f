"""Alembic environment configuration for shiftwork.

Reads the URL from ``SHIFTWORK_DATABASE_URL`` through the settings object
(falling back to alembic.ini). Imports all ORM tables so autogenerate sees
the whole scheduler schema.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

config = context.config

if os.environ.get("SHIFTWORK_DATABASE_URL"):
    from shiftwork.core.settings import ShiftworkSettings

    config.set_main_option("sqlalchemy.url", ShiftworkSettings().database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from shiftwork.core.orm.base import ShiftworkBase  # noqa: E402

import shiftwork.core.orm.tables  # noqa: E402, F401

target_metadata = ShiftworkBase.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (SQL script output only)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,  # SQLite ALTER TABLE support
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (live database connection)."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
