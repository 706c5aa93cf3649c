"""
gatherpay/migrations/env.py: Alembic environment.

The database URL comes from the same config classes the app uses
(gatherpay/config.py, which also loads .env):

    TEST_RUN=1            → TestingConfig   (TEST_DATABASE_URL)
    FLASK_ENV=<name>      → config_by_name[name]
    otherwise             → ProductionConfig (DATABASE_URL)

Point an alembic.ini script_location at gatherpay/migrations to run it.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

# Project root on sys.path so `gatherpay...` imports resolve when alembic
# is started from inside gatherpay/.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from gatherpay.app.extensions import db  # noqa: E402
from gatherpay.app.models import group, ledger_entry, order, user, wallet  # noqa: E402,F401
from gatherpay.config import ProductionConfig, config_by_name  # noqa: E402

target_metadata = db.metadata


def _database_url() -> str:
    if os.getenv("TEST_RUN"):
        config_class = config_by_name["testing"]
    else:
        config_class = config_by_name.get(os.getenv("FLASK_ENV", ""), ProductionConfig)

    url = config_class.SQLALCHEMY_DATABASE_URI
    if not url:
        raise RuntimeError(
            f"{config_class.__name__} has no database URL; set DATABASE_URL before migrating."
        )
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


db_url = _database_url()

config = context.config
config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# SQLite cannot ALTER most constraints in place; batch mode rebuilds the table.
_configure_options = {
    "target_metadata": target_metadata,
    "compare_type": True,
    "render_as_batch": db_url.startswith("sqlite"),
}


def run_migrations_offline() -> None:
    context.configure(
        url=db_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
