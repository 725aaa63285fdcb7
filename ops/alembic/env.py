from __future__ import annotations

import asyncio
import logging
import os
from logging.config import fileConfig
from typing import Any

import sqlalchemy as sa
from alembic import context
from sqlalchemy import pool
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

_logger = logging.getLogger("alembic.env")

VERSION_TABLE = "link_alembic_version"

# shape the migrations produce, so `alembic check` can spot drift
metadata = sa.MetaData()
sa.Table(
    "link_accounts",
    metadata,
    sa.Column("identity_token", sa.Text(), primary_key=True),
    sa.Column("owner_id", sa.Text(), nullable=False),
    sa.Column("phone_id", sa.Text()),
    sa.Column("display_name", sa.Text()),
    sa.Column("is_connected", sa.Boolean(), nullable=False),
    sa.Column("is_pending", sa.Boolean(), nullable=False),
    sa.Column("promoted_to", sa.Text()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)
sa.Table(
    "link_sessions",
    metadata,
    sa.Column("identity_token", sa.Text(), primary_key=True),
    sa.Column("credential_blob", postgresql.JSONB(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)


def _asyncpg_url(url: str) -> str:
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _database_url() -> str:
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        message = "DATABASE_URL is required to migrate the link schema"
        _logger.error(message)
        raise RuntimeError(message)
    return _asyncpg_url(url)


def _configure(**options: Any) -> None:
    context.configure(
        target_metadata=metadata,
        version_table=VERSION_TABLE,
        compare_type=True,
        **options,
    )


def _migrate(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


def run_offline() -> None:
    _configure(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = _database_url()
    engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


injected = config.attributes.get("connection")
if context.is_offline_mode():
    run_offline()
elif injected is not None:
    _migrate(injected)
else:
    asyncio.run(run_online())
