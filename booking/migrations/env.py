import os
import re
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from booking.app.domain.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_ASYNC_DRIVER_RE = re.compile(r"^(postgresql|sqlite)\+[^:]+")


def _sync_url(database_url: str) -> str:
    """postgresql+asyncpg://... -> postgresql://..., sqlite+aiosqlite://... -> sqlite://..."""
    return _ASYNC_DRIVER_RE.sub(r"\1", database_url)


def _migration_options(**extra) -> dict:
    return {"target_metadata": target_metadata, "compare_type": True, "compare_server_default": True, **extra}


def run_migrations_offline() -> None:
    """Emit the migration SQL for the configured URL without connecting."""
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    context.configure(
        **_migration_options(url=_sync_url(url), literal_binds=True, dialect_opts={"paramstyle": "named"})
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError(
            "\033[91mОШИБКА: Переменная DATABASE_URL не задана.\n"
            "Пример для .env:\n"
            "DATABASE_URL=postgresql+asyncpg://booking_user:change_me@db:5432/booking\033[0m"
        )
    config.set_main_option("sqlalchemy.url", _sync_url(database_url))

    engine = engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        # SQLite cannot ALTER most constraints in place
        context.configure(
            **_migration_options(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
