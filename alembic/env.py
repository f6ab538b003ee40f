import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from delivery_hub.core.config import settings
from delivery_hub.models.base import Base
import delivery_hub.models  # noqa: F401  # registers production, snapshot, staging and log tables


config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# autogenerate should notice geofence/hash column type changes too
_options = {"target_metadata": target_metadata, "compare_type": True}


def run_migrations_offline():
    context.configure(url=settings.database_url, literal_binds=True, **_options)
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    context.configure(connection=connection, **_options)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    connectable = create_async_engine(settings.database_url, poolclass=pool.NullPool)
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
