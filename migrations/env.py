"""Alembic entry point for the MiastoAlert PostgreSQL schema.

The DSN follows db.py: MIASTOALERT_POSTGRES_DSN, then DATABASE_URL, then
alembic.ini. Revisions use plain `op` calls, so no target metadata is bound.
"""

import os
import sys
from logging.config import fileConfig

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from dotenv import load_dotenv

load_dotenv(os.path.join(ROOT, ".env"))

from alembic import context
from sqlalchemy import create_engine

config = context.config


def _database_url():
    url = os.environ.get(
        "MIASTOALERT_POSTGRES_DSN",
        os.environ.get("DATABASE_URL", config.get_main_option("sqlalchemy.url")),
    )
    # db.py hands libpq-style DSNs to psycopg; SQLAlchemy needs the dialect named
    if url and url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


config.set_main_option("sqlalchemy.url", _database_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_offline():
    """Emit the migration SQL for review instead of applying it."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online():
    engine = create_engine(config.get_main_option("sqlalchemy.url"))
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=None)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
