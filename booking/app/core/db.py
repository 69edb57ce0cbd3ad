"""Engine, session and schema bootstrap for the booking store.

The engine is built lazily from DATABASE_URL. The first session checks that
the schema exists and creates it when it does not. Connectivity failures
surface as StoreUnavailableError through ``store_errors``.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from sqlalchemy import event, text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..domain.errors import StoreUnavailableError
from ..domain.models import Base
from .constants import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)


DATABASE_URL_ENV = "DATABASE_URL"
DEFAULT_URL = DEFAULT_DATABASE_URL

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_SCHEMA_READY: bool = False
_schema_lock = asyncio.Lock()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# --- engine ---
def _make_engine(url: str) -> AsyncEngine:
    """Build the engine; SQLite connections get foreign keys switched on."""
    engine = create_async_engine(url, echo=False, pool_pre_ping=not url.startswith("sqlite"))
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def get_engine() -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        url = os.getenv(DATABASE_URL_ENV, DEFAULT_URL)
        _engine = _make_engine(url)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide a new AsyncSession, creating the schema on first use if missing.

    Concurrent first callers wait on the schema lock until the tables exist.
    """
    if not _SCHEMA_READY:
        async with _schema_lock:
            if not _SCHEMA_READY:
                await _ensure_schema()

    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        await session.close()


async def _ensure_schema() -> None:
    global _SCHEMA_READY
    async with store_errors():
        eng = get_engine()
        async with eng.connect() as conn:
            try:
                await conn.execute(text("SELECT 1 FROM settings LIMIT 1"))
                _SCHEMA_READY = True
            except Exception as exc:  # noqa: BLE001 - missing-table error type differs per driver
                if _is_connectivity_error(exc):
                    raise
                logger.info("Schema not found, creating tables: %s", exc)
        if not _SCHEMA_READY:
            await init_db(force=False)


def _is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, (InterfaceError, OSError, ConnectionError)):
        return True
    if isinstance(exc, OperationalError):
        # "no such table"/"does not exist" are schema problems, everything else
        # (refused connection, timeouts, auth) means the store is unreachable.
        msg = str(exc).lower()
        return "no such table" not in msg and "does not exist" not in msg
    return False


@asynccontextmanager
async def store_errors() -> AsyncIterator[None]:
    """Translate store connectivity failures into StoreUnavailableError."""
    try:
        yield
    except StoreUnavailableError:
        raise
    except (OperationalError, InterfaceError, OSError, ConnectionError) as exc:
        if not _is_connectivity_error(exc):
            raise
        logger.error("Store unavailable: %s", exc)
        raise StoreUnavailableError("Хранилище данных недоступно") from exc


# --- schema ---
async def init_db(
    force: bool = False, on_create: Callable[[AsyncEngine], None] | None = None
) -> None:
    """Create all tables, dropping existing ones first when ``force`` is set."""
    engine = get_engine()
    async with engine.begin() as conn:
        if force:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    if on_create:
        on_create(engine)
    global _SCHEMA_READY
    _SCHEMA_READY = True


async def dispose_engine() -> None:
    """Dispose the pooled connections and forget the engine."""
    if _engine is not None:
        await _engine.dispose()
    _reset_engine_for_tests()


def _reset_engine_for_tests() -> None:
    """Forget the cached engine and schema state without disposing anything."""
    global _engine, _session_factory, _SCHEMA_READY, _schema_lock
    _engine = None
    _session_factory = None
    _SCHEMA_READY = False
    _schema_lock = asyncio.Lock()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a session."""
    async with get_session() as session:
        yield session


__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "store_errors",
    "init_db",
    "dispose_engine",
    "_reset_engine_for_tests",
    "get_db",
]
