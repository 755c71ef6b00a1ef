"""Alembic environment for the hlsforge schema (videos table)."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from api.database import metadata
from config import DATABASE_URL

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def _configure_options() -> dict:
    """Options shared by offline and online runs. URL is always HLSFORGE_DATABASE_URL."""
    return {
        "target_metadata": metadata,
        "compare_type": True,
        # SQLite cannot ALTER most constraints in place
        "render_as_batch": DATABASE_URL.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without connecting."""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a live connection."""
    engine = create_engine(DATABASE_URL, poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, **_configure_options())
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
