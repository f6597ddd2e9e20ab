"""Alembic environment for the training pipeline schema.

The pipeline may share a database with a host platform that owns
its own conversation tables, so migrations keep their own version table and
autogenerate only looks at tables registered on our metadata.

URL resolution order:
1. ``alembic -x db_url=...`` on the command line
2. ``DATABASE_URL`` through the application settings

Online migrations run on the async engine (asyncpg in production,
aiosqlite for local experiments).  SQLite needs batch mode for ALTERs.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from staytune.config import get_settings
from staytune.database import Base
import staytune.models  # noqa: F401 - registers all models with Base.metadata

VERSION_TABLE = "staytune_alembic_version"

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_db_url = context.get_x_argument(as_dictionary=True).get("db_url") or get_settings().database_url
config.set_main_option("sqlalchemy.url", _db_url)


def include_name(name: str | None, type_: str, parent_names: dict) -> bool:
    """Restrict autogenerate to pipeline tables; host tables are not ours to diff."""
    if type_ == "table":
        return name in target_metadata.tables
    return True


def _configure_kwargs(dialect_name: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "version_table": VERSION_TABLE,
        "include_name": include_name,
        "compare_type": True,
        "render_as_batch": dialect_name == "sqlite",
    }


def run_migrations_offline() -> None:
    """Emit SQL for the configured URL without connecting."""
    url = config.get_main_option("sqlalchemy.url")
    dialect_name = url.split(":", 1)[0].split("+", 1)[0]
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(dialect_name),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, **_configure_kwargs(connection.dialect.name))
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
