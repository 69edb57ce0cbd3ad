"""Test configuration to ensure project package import resolution.

Adds the repository root to sys.path so `import booking` works in CI where the
checkout directory may not be on PYTHONPATH by default. Also provides a fresh
SQLite database per test and a recording notification dispatcher.
"""

from __future__ import annotations

import sys
from datetime import UTC, date, datetime
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from booking.app.core import db as db_module  # noqa: E402
from booking.app.core.notifications import (  # noqa: E402
    ClientAddress,
    EmailChannel,
    NotificationDispatcher,
    TelegramChannel,
    drain_notifications,
    set_dispatcher,
)
from booking.app.domain.models import Product  # noqa: E402

# 09:00 on 2025-06-09 in the practice's civil time (UTC+3)
NOW = datetime(2025, 6, 9, 6, 0, tzinfo=UTC)
TOMORROW = date(2025, 6, 10)


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher with disabled real channels that records what would be sent."""

    def __init__(self, deliver: bool = True) -> None:
        super().__init__(
            telegram=TelegramChannel(token="", admin_chat_ids=[]),
            email=EmailChannel(api_key="", admin_email=""),
        )
        self.deliver = deliver
        self.events: list = []
        self.admin_messages: list[str] = []
        self.client_messages: list[tuple[ClientAddress, str]] = []

    async def notify_admin(self, message: str, *, subject: str = "") -> bool:
        self.admin_messages.append(message)
        return self.deliver

    async def notify_client(self, address: ClientAddress, message: str, *, subject: str = "") -> bool:
        self.client_messages.append((address, message))
        return self.deliver and not address.is_empty

    async def dispatch(self, event) -> None:
        self.events.append(event)
        await super().dispatch(event)


@pytest.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    db_module._reset_engine_for_tests()
    await db_module.init_db(force=True)
    yield
    await drain_notifications()
    await db_module.dispose_engine()


@pytest.fixture
async def dispatcher():
    recorder = RecordingDispatcher()
    set_dispatcher(recorder)
    yield recorder
    await drain_notifications()
    set_dispatcher(None)


@pytest.fixture
def make_product(db):
    async def _make(name: str = "Консультация", price_rub: int = 3500, is_active: bool = True) -> Product:
        async with db_module.get_session() as session:
            product = Product(name=name, description="Онлайн, 60 минут", price_rub=price_rub, is_active=is_active)
            session.add(product)
            await session.commit()
            await session.refresh(product)
            return product

    return _make
