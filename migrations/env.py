"""Alembic environment for the Nyaya PostgreSQL schema.

The schema is hand-written in versions/ (no ORM metadata), so autogenerate
is not used; upgrades run the revisions as written.
"""

import os
import sys
from logging.config import fileConfig

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from dotenv import load_dotenv
load_dotenv(os.path.join(ROOT, ".env"))

from alembic import context

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url():
    """Same DSN precedence as db.py, on the psycopg3 SQLAlchemy dialect."""
    dsn = (
        os.environ.get("NYAYA_POSTGRES_DSN")
        or os.environ.get("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if dsn and dsn.startswith(("postgresql://", "postgres://")):
        dsn = "postgresql+psycopg://" + dsn.split("://", 1)[1]
    return dsn


def run_migrations_offline():
    """Print the DDL instead of executing it (alembic upgrade --sql)."""
    context.configure(
        url=_database_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    from sqlalchemy import create_engine, pool

    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=None)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
