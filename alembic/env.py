import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

# checkout.models registers orders, order_items and payment_logs on Base.metadata
import checkout.models  # noqa: F401
from checkout.config import load_settings
from checkout.database import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# same DATABASE_URL the service reads, so migrations hit the service's database
config.set_main_option("sqlalchemy.url", load_settings().database_url)


def migrate(connection=None) -> None:
    if connection is None:
        context.configure(
            url=config.get_main_option("sqlalchemy.url"),
            target_metadata=Base.metadata,
            literal_binds=True,
            dialect_opts={"paramstyle": "named"},
        )
    else:
        context.configure(connection=connection, target_metadata=Base.metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


async def migrate_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    migrate()
else:
    asyncio.run(migrate_online())
