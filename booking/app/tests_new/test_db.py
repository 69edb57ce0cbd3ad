import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from booking.app.core import db
from booking.app.domain.errors import StoreUnavailableError
from booking.app.domain.models import Settings
from booking.app.services.client_services import get_available_slots

from conftest import NOW, TOMORROW


def test_get_engine_uses_env_and_sets_factory(monkeypatch):
    db._reset_engine_for_tests()

    stub_engine = SimpleNamespace(sync_engine="sync")

    def fake_make_engine(url: str):
        assert url == "fake-url"
        return stub_engine

    def fake_async_sessionmaker(engine, expire_on_commit=False):
        assert engine is stub_engine
        return "factory"

    monkeypatch.setenv("DATABASE_URL", "fake-url")
    monkeypatch.setattr(db, "_make_engine", fake_make_engine)
    monkeypatch.setattr(db, "async_sessionmaker", fake_async_sessionmaker)

    engine = db.get_engine()
    assert engine is stub_engine
    assert db.get_session_factory() == "factory"

    db._reset_engine_for_tests()


def test_reset_engine_clears_state():
    db._engine = "e"
    db._session_factory = "sf"
    db._SCHEMA_READY = True
    old_lock = db._schema_lock

    db._reset_engine_for_tests()

    assert db._engine is None
    assert db._session_factory is None
    assert db._SCHEMA_READY is False
    assert db._schema_lock is not old_lock


async def test_get_session_creates_schema_on_first_use(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'lazy.db'}")
    db._reset_engine_for_tests()
    try:
        async with db.get_session() as session:
            rows = (await session.scalars(select(Settings))).all()
        assert rows == []
        assert db._SCHEMA_READY is True
    finally:
        await db.dispose_engine()


async def test_concurrent_first_sessions_wait_for_schema(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")
    db._reset_engine_for_tests()
    try:
        first, second = await asyncio.gather(
            get_available_slots(TOMORROW, now=NOW),
            get_available_slots(TOMORROW, now=NOW),
        )
        assert first == second == [f"{h:02d}:00" for h in range(9, 18)]
        assert db._SCHEMA_READY is True
    finally:
        await db.dispose_engine()


async def test_store_errors_translates_connectivity_failures():
    with pytest.raises(StoreUnavailableError) as exc_info:
        async with db.store_errors():
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))
    assert exc_info.value.code == "store_unavailable"
    assert exc_info.value.http_status == 503

    with pytest.raises(StoreUnavailableError):
        async with db.store_errors():
            raise ConnectionResetError("reset by peer")


async def test_store_errors_leaves_schema_errors_alone():
    with pytest.raises(OperationalError):
        async with db.store_errors():
            raise OperationalError("SELECT 1", {}, Exception("no such table: bookings"))
