import asyncio
from logging.config import fileConfig

from sqlalchemy.engine import Connection
from sqlalchemy.pool import NullPool

from alembic import context

from agripay.config import settings
from agripay.db.base import Base
from agripay.db.session import make_engine
import agripay.models  # noqa: F401  registers tables on Base.metadata

config = context.config

if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# `alembic -x db_url=... upgrade head` migrates a database other than the configured one
DB_URL = context.get_x_argument(as_dictionary=True).get("db_url") or str(settings.DATABASE_URL)


def _configure(**kwargs):
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # sqlite cannot ALTER constraints in place
        render_as_batch=DB_URL.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline():
    _configure(url=DB_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection):
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    engine = make_engine(DB_URL, poolclass=NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
