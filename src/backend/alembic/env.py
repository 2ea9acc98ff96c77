"""Alembic environment for the quota ledger schema.

The database URL comes from AppSettings.DB_URL, so migrations and the
service always target the same database. Online runs go through an async
engine (asyncpg); offline runs emit SQL only.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from quotaledger.config import AppSettings
from quotaledger.models import quota  # noqa: F401 (registers ledger tables)
from quotaledger.models.base import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", AppSettings().DB_URL)
target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    # autogenerate also diffs column types (BIGINT capacities)
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def run_ledger_migrations_offline() -> None:
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_ledger_migrations_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_ledger_migrations_offline()
else:
    asyncio.run(run_ledger_migrations_online())
