"""Alembic migration environment for the MHG Facilities budget service.

Targets the four tenant-scoped tables declared in core/models.py:

  locations          facility locations budgets and tickets point at
  ticket_categories  per-tenant category names used to match spend
  tickets            work orders; completed, costed rows are the spend source
  budgets            annual allocations, one live row per
                     (location or tenant-wide, category, fiscal year)

Autogenerate compares column types as well, since money columns are
Numeric(12, 2). The database URL comes from MHG_FACILITIES_DATABASE_URL
through Settings.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from mhg_facilities.core import models  # noqa: F401 — registers all ORM models
from mhg_facilities.database import Base
from mhg_facilities.settings import get_settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in offline mode (generates SQL without DB connection)."""
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: object) -> None:
    """Execute migrations against a live database connection."""
    context.configure(
        connection=connection,  # type: ignore[arg-type]
        target_metadata=target_metadata,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations using an async engine."""
    connectable = create_async_engine(settings.database_url)
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in online mode (requires DB connection)."""
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
