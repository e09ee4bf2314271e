from __future__ import annotations

from alembic import context
from sqlalchemy import create_engine

from potluck import database
from potluck.models import Base

config = context.config

# storage._alembic_config() passes the live engine URL; fall back to settings.
url = config.get_main_option("sqlalchemy.url") or database.DATABASE_URL

target_metadata = Base.metadata


def _connectable():
    if database.engine.url.render_as_string(hide_password=False) == str(url):
        return database.engine
    return create_engine(url, future=True)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = _connectable()

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
