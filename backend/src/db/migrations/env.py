"""
Alembic migration environment for the NearMe reminder backend.

The target database comes from NEARME_DB_URL (also read from backend/.env),
falling back to the URL in alembic.ini. Run from the repository root so
that ``backend`` is importable (alembic.ini prepends the CWD to sys.path).
"""

import os
from pathlib import Path
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

from backend.src.models import Base


env_path = Path(__file__).parent.parent.parent.parent / '.env'
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

if os.environ.get("NEARME_DB_URL"):
    config.set_main_option("sqlalchemy.url", os.environ["NEARME_DB_URL"])

# Tasks, geofences, events, notifications, suppression windows,
# intake guards, the offline queue and push subscriptions
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting (``alembic upgrade --sql``)."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # Enum columns are VARCHAR + CHECK (native_enum=False)
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
