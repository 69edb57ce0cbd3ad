"""Background worker sending visit reminders.

Two sweeps per tick: a 24h reminder for confirmed, paid bookings on the next
local day, and a 1h reminder for those starting in [now+1h, now+2h). Per-booking
flags prevent duplicates; a flag is set only when some delivery succeeded.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update

from booking.app.core.db import get_session
from booking.app.core.notifications import ClientAddress, NotificationDispatcher, get_dispatcher
from booking.app.domain.models import Booking, BookingStatus, Product
from booking.app.services.shared_services import (
    booking_info_from_model,
    ensure_utc,
    format_admin_reminder,
    format_client_reminder,
    local_today,
    slot_start_utc,
)
from booking.config import get_setting

logger = logging.getLogger(__name__)


def _due_stmt(*dates, flag_column):
    return (
        select(Booking, Product)
        .outerjoin(Product, Product.id == Booking.product_id)
        .where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.paid_at.is_not(None),
            flag_column.is_(False),
            Booking.booking_date.in_(dates),
        )
        .order_by(Booking.booking_date, Booking.booking_time)
    )


async def _remind_24h(now_utc: datetime, dispatcher: NotificationDispatcher) -> int:
    tomorrow = local_today(now_utc) + timedelta(days=1)
    count = 0
    async with get_session() as session:
        rows = list((await session.execute(_due_stmt(tomorrow, flag_column=Booking.reminder_24h_sent))).all())
        for booking, product in rows:
            info = booking_info_from_model(booking, product)
            ok = await dispatcher.notify_client(
                ClientAddress.for_booking(info),
                format_client_reminder(info, hours_until=24),
                subject="Напоминание о записи на завтра",
            )
            if not ok:
                logger.warning("24h reminder for booking %s was not delivered", info.id)
                continue
            await session.execute(
                update(Booking).where(Booking.id == info.id).values(reminder_24h_sent=True)
            )
            count += 1
        if count:
            await session.commit()
    return count


async def _remind_1h(now_utc: datetime, dispatcher: NotificationDispatcher) -> int:
    window_start = now_utc + timedelta(hours=1)
    window_end = now_utc + timedelta(hours=2)
    today = local_today(now_utc)
    count = 0
    async with get_session() as session:
        stmt = _due_stmt(today, today + timedelta(days=1), flag_column=Booking.reminder_1h_sent)
        rows = list((await session.execute(stmt)).all())
        for booking, product in rows:
            info = booking_info_from_model(booking, product)
            starts_at = slot_start_utc(info.booking_date, info.booking_time)
            if not window_start <= starts_at < window_end:
                continue
            client_ok = await dispatcher.notify_client(
                ClientAddress.for_booking(info),
                format_client_reminder(info, hours_until=1),
                subject="Напоминание: запись через 1 час",
            )
            admin_ok = await dispatcher.notify_admin(
                format_admin_reminder(info), subject="Напоминание: запись через 1 час"
            )
            if not (client_ok or admin_ok):
                logger.warning("1h reminder for booking %s was not delivered", info.id)
                continue
            await session.execute(
                update(Booking).where(Booking.id == info.id).values(reminder_1h_sent=True)
            )
            count += 1
        if count:
            await session.commit()
    return count


async def _remind_once(now_utc: datetime, dispatcher: NotificationDispatcher | None = None) -> int:
    """Run both sweeps once; returns the number of bookings reminded."""
    now_utc = ensure_utc(now_utc) or now_utc
    dispatcher = dispatcher or get_dispatcher()
    total = 0
    for sweep in (_remind_24h, _remind_1h):
        try:
            total += await sweep(now_utc, dispatcher)
        except Exception as e:
            logger.error("Reminder sweep %s failed: %s", sweep.__name__, e)
    if total:
        logger.info("Sent %d reminder(s)", total)
    return total


async def _run_loop(stop_event: asyncio.Event, dispatcher: NotificationDispatcher, interval_seconds: int) -> None:
    while not stop_event.is_set():
        try:
            await _remind_once(datetime.now().astimezone(), dispatcher)
        except Exception as e:
            logger.exception("Reminders worker iteration error: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


async def start_reminders_worker(
    dispatcher: NotificationDispatcher | None = None,
    interval_seconds: int | None = None,
) -> Callable[[], Awaitable[None]]:
    """Start the reminders worker and return an async stop() function."""
    interval = int(interval_seconds or get_setting("reminders_check_seconds", 60))
    stop_event: asyncio.Event = asyncio.Event()
    task = asyncio.create_task(
        _run_loop(stop_event, dispatcher or get_dispatcher(), interval), name="reminders-worker"
    )

    async def _stop() -> None:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()

    logger.info("Reminders worker started (interval=%ss)", interval)
    return _stop


async def stop_reminders_worker(stop_callable: Optional[Callable[[], Awaitable[None]]] = None) -> None:
    if stop_callable:
        await stop_callable()


__all__ = ["start_reminders_worker", "stop_reminders_worker"]
