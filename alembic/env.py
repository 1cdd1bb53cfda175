"""Alembic environment for the scmsrv secret store.

Two entry points:
* **Programmatic**: ``Database.init()`` hands over a live connection
  through ``config.attributes["connection"]``; migrations run inside the
  application's startup transaction.
* **CLI**: ``alembic -x db=/path/to/scmsrv.db upgrade head``.  Without
  ``-x db`` the database path comes from the scmsrv configuration
  (``SCMSRV_CONF``), the same file the service reads.
"""

from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context
from scmsrv.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    db_path = context.get_x_argument(as_dictionary=True).get("db")
    if not db_path:
        from scmsrv.config import ConfigManager, default_database_path

        cm = ConfigManager.load()
        db_path = str(cm.global_config.database if cm else default_database_path())
    return f"sqlite:///{db_path}"


def _configure(**kwargs: object) -> None:
    # batch mode lets ALTER-style operations work on SQLite
    context.configure(target_metadata=target_metadata, render_as_batch=True, **kwargs)


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection", None)
    if connection is not None:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
        return

    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as conn:
            _configure(connection=conn)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
