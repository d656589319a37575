from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine

from congregate.database import DATABASE_URL, engine
from congregate.models import Base

config = context.config

# Tests and the CLI may point sqlalchemy.url somewhere other than settings.
configured_url = config.get_main_option("sqlalchemy.url")
if not configured_url:
    configured_url = str(DATABASE_URL)
    config.set_main_option("sqlalchemy.url", configured_url.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _connectable():
    if configured_url == engine.url.render_as_string(hide_password=False):
        return engine
    return create_engine(configured_url, future=True)


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
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
