from __future__ import annotations

import logging
from datetime import date
from typing import Any, Iterable, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from booking.app.core.constants import (
    DEFAULT_DAY_BLOCK_REASON,
    SESSION_DURATION_MAX,
    SESSION_DURATION_MIN,
)
from booking.app.core.db import get_session, store_errors
from booking.app.core.notifications import BookingEvent, EventKind, NotificationDispatcher, emit
from booking.app.domain.actors import Actor
from booking.app.domain.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from booking.app.domain.models import (
    BlockedSlot,
    Booking,
    BookingStatus,
    Product,
    Settings,
    can_transition,
    normalize_booking_status,
)
from booking.app.services.shared_services import (
    BookingInfo,
    ScheduleSettings,
    WorkingHoursPolicy,
    booking_info_from_model,
    hhmm_to_time,
    load_booking,
    parse_booking_date,
    parse_booking_time,
    parse_hhmm,
    time_to_hhmm,
    utc_now,
)

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1


def _insert_for(session: AsyncSession) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT, or None if unsupported."""
    bind = session.get_bind()
    dialect_name = bind.dialect.name if bind is not None else ""
    if dialect_name == "sqlite":
        return sqlite_insert
    if dialect_name == "postgresql":
        return pg_insert
    return None


def _require_admin(actor: Actor | None) -> None:
    if actor is None or not actor.is_admin:
        raise ForbiddenError("Доступ только для администратора")


# ---------------- Working-hours settings ---------------- #
class SettingsRepo:
    """Singleton working-hours row (id=1)."""

    @staticmethod
    async def get_schedule_settings() -> ScheduleSettings:
        async with store_errors():
            async with get_session() as session:
                row = await session.get(Settings, SETTINGS_ROW_ID)
        if row is None:
            return ScheduleSettings()
        return ScheduleSettings(
            work_start=time_to_hhmm(row.work_start),
            work_end=time_to_hhmm(row.work_end),
            session_duration=int(row.session_duration),
        )

    @staticmethod
    def validate(
        current: ScheduleSettings,
        *,
        work_start: str | None = None,
        work_end: str | None = None,
        session_duration: int | None = None,
    ) -> ScheduleSettings:
        """Merge a partial update into `current` and validate the result."""
        merged_duration = current.session_duration
        if session_duration is not None:
            try:
                merged_duration = int(session_duration)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    "Длительность сессии должна быть числом", code="invalid_session_duration"
                ) from exc
            if not SESSION_DURATION_MIN <= merged_duration <= SESSION_DURATION_MAX:
                raise ValidationError(
                    f"Длительность сессии должна быть от {SESSION_DURATION_MIN} до {SESSION_DURATION_MAX} минут",
                    code="invalid_session_duration",
                )

        merged: dict[str, str] = {"work_start": current.work_start, "work_end": current.work_end}
        for key, value in (("work_start", work_start), ("work_end", work_end)):
            if value is None:
                continue
            try:
                merged[key] = time_to_hhmm(str(value))
            except ValueError as exc:
                raise ValidationError(
                    "Неверный формат времени. Используйте HH:MM", code="invalid_work_hours"
                ) from exc

        if parse_hhmm(merged["work_start"]) >= parse_hhmm(merged["work_end"]):
            raise ValidationError(
                "Время начала работы должно быть раньше времени окончания", code="invalid_work_hours"
            )
        return ScheduleSettings(merged["work_start"], merged["work_end"], merged_duration)

    @staticmethod
    async def update_schedule_settings(
        *,
        work_start: str | None = None,
        work_end: str | None = None,
        session_duration: int | None = None,
    ) -> ScheduleSettings:
        current = await SettingsRepo.get_schedule_settings()
        new = SettingsRepo.validate(
            current, work_start=work_start, work_end=work_end, session_duration=session_duration
        )
        values = {
            "work_start": hhmm_to_time(new.work_start),
            "work_end": hhmm_to_time(new.work_end),
            "session_duration": new.session_duration,
            "updated_at": utc_now(),
        }
        async with store_errors():
            async with get_session() as session:
                insert_factory = _insert_for(session)
                if insert_factory is not None:
                    stmt = insert_factory(Settings).values(id=SETTINGS_ROW_ID, **values)
                    stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
                    await session.execute(stmt)
                else:
                    row = await session.get(Settings, SETTINGS_ROW_ID)
                    if row is None:
                        session.add(Settings(id=SETTINGS_ROW_ID, **values))
                    else:
                        for key, value in values.items():
                            setattr(row, key, value)
                await session.commit()
        logger.info("Working hours updated: %s", new.as_dict())
        return new


# ---------------- Blocking store ---------------- #
class BlockedSlotRepo:
    """Admin-imposed slot and whole-day blocks, upserted on (slot_date, slot_time)."""

    @staticmethod
    async def _upsert(session: AsyncSession, day: date, times: Sequence[str], reason: str | None) -> list[BlockedSlot]:
        if not times:
            return []
        now = utc_now()
        rows = [
            {"slot_date": day, "slot_time": hhmm_to_time(t), "reason": reason, "created_at": now}
            for t in times
        ]
        insert_factory = _insert_for(session)
        if insert_factory is not None:
            stmt = insert_factory(BlockedSlot).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["slot_date", "slot_time"],
                set_={"reason": stmt.excluded.reason},
            )
            await session.execute(stmt)
        else:
            for row in rows:
                existing = await session.scalar(
                    select(BlockedSlot).where(
                        BlockedSlot.slot_date == day, BlockedSlot.slot_time == row["slot_time"]
                    )
                )
                if existing is None:
                    session.add(BlockedSlot(**row))
                else:
                    existing.reason = reason
            await session.flush()
        result = await session.scalars(
            select(BlockedSlot)
            .where(
                BlockedSlot.slot_date == day,
                BlockedSlot.slot_time.in_([r["slot_time"] for r in rows]),
            )
            .order_by(BlockedSlot.slot_time)
            .execution_options(populate_existing=True)
        )
        return list(result.all())

    @staticmethod
    async def block_slot(day: date | str, slot_time: str, reason: str | None = None) -> BlockedSlot:
        """Block one slot; re-blocking the same slot only replaces the reason."""
        parsed_day = parse_booking_date(day)
        hhmm = parse_booking_time(slot_time)
        async with store_errors():
            async with get_session() as session:
                blocks = await BlockedSlotRepo._upsert(session, parsed_day, [hhmm], reason)
                await session.commit()
        logger.info("Slot blocked: %s %s (%s)", parsed_day, hhmm, reason)
        return blocks[0]

    @staticmethod
    async def block_entire_day(
        day: date | str, reason: str | None = None, *, settings: ScheduleSettings | None = None
    ) -> list[BlockedSlot]:
        """Block every slot of the day's grid in one transaction.

        Either the whole batch is stored or the store error propagates; the
        upserts are idempotent, so a failed call can simply be retried.
        """
        parsed_day = parse_booking_date(day)
        if settings is None:
            settings = await SettingsRepo.get_schedule_settings()
        times = WorkingHoursPolicy.slots_for_day(settings)
        async with store_errors():
            async with get_session() as session:
                blocks = await BlockedSlotRepo._upsert(
                    session, parsed_day, times, reason or DEFAULT_DAY_BLOCK_REASON
                )
                await session.commit()
        logger.info("Day blocked: %s (%d slots)", parsed_day, len(blocks))
        return blocks

    @staticmethod
    async def unblock_slot(block_id: int) -> bool:
        """Delete a block by id. Missing ids are a no-op; returns whether a row was removed."""
        async with store_errors():
            async with get_session() as session:
                block = await session.get(BlockedSlot, int(block_id))
                if block is None:
                    logger.info("Unblock requested for missing block %s", block_id)
                    return False
                await session.delete(block)
                await session.commit()
        logger.info("Block %s removed", block_id)
        return True

    @staticmethod
    async def blocked_times(day: date) -> set[str]:
        async with store_errors():
            async with get_session() as session:
                result = await session.scalars(
                    select(BlockedSlot.slot_time).where(BlockedSlot.slot_date == day)
                )
                return {time_to_hhmm(t) for t in result.all()}

    @staticmethod
    async def list_blocked_slots(start: date | None = None, end: date | None = None) -> list[BlockedSlot]:
        stmt = select(BlockedSlot)
        if start is not None:
            stmt = stmt.where(BlockedSlot.slot_date >= start)
        if end is not None:
            stmt = stmt.where(BlockedSlot.slot_date <= end)
        stmt = stmt.order_by(BlockedSlot.slot_date, BlockedSlot.slot_time)
        async with store_errors():
            async with get_session() as session:
                result = await session.scalars(stmt)
                return list(result.all())

    @staticmethod
    async def counts_by_day(start: date, end: date) -> dict[date, int]:
        stmt = (
            select(BlockedSlot.slot_date, func.count(BlockedSlot.id))
            .where(BlockedSlot.slot_date >= start, BlockedSlot.slot_date <= end)
            .group_by(BlockedSlot.slot_date)
        )
        async with store_errors():
            async with get_session() as session:
                rows = (await session.execute(stmt)).all()
        return {row[0]: int(row[1]) for row in rows}


async def get_blocked_days(
    start: date | str, end: date | str, *, settings: ScheduleSettings | None = None
) -> list[date]:
    """Dates in [start, end] whose block count covers the whole slot grid."""
    first = parse_booking_date(start)
    last = parse_booking_date(end)
    if first > last:
        raise ValidationError("Дата начала должна быть не позже даты окончания", code="invalid_date")
    if settings is None:
        settings = await SettingsRepo.get_schedule_settings()
    per_day = WorkingHoursPolicy.slot_count(settings)
    counts = await BlockedSlotRepo.counts_by_day(first, last)
    return sorted(day for day, count in counts.items() if count >= per_day)


# ---------------- Booking status transitions ---------------- #
async def apply_status_transition(
    booking_id: int,
    actor: Actor | None,
    target: BookingStatus,
    *,
    admin_only: bool = False,
    values: dict[str, Any] | None = None,
) -> tuple[BookingInfo, BookingStatus]:
    """Move a booking to `target`, guarded by the transition table.

    The UPDATE is conditioned on the status read under the row lock, so two
    concurrent transitions cannot both succeed. Returns the updated booking
    and its previous status. `actor=None` means a trusted internal caller.
    """
    async with store_errors():
        async with get_session() as session:
            loaded = await load_booking(session, booking_id, lock=True)
            if loaded is None:
                raise NotFoundError("Запись не найдена")
            booking, product = loaded
            if admin_only:
                _require_admin(actor)
            elif actor is not None and not actor.can_access(booking.client_id):
                raise ForbiddenError("Нет прав на эту запись")

            current = normalize_booking_status(booking.status)
            if current is None or not can_transition(current, target):
                logger.warning(
                    "Rejected transition for booking %s: %s -> %s", booking_id, booking.status, target.value
                )
                raise InvalidStateError(
                    f"Недопустимый переход статуса: {getattr(current, 'value', current)} → {target.value}"
                )

            result = await session.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.status == current)
                .values(status=target, updated_at=utc_now(), **(values or {}))
            )
            if result.rowcount != 1:
                await session.rollback()
                raise InvalidStateError("Статус записи изменился, повторите запрос")
            await session.commit()
            await session.refresh(booking)
            info = booking_info_from_model(booking, product)
    logger.info("Booking %s: %s -> %s", booking_id, current.value, target.value)
    return info, current


# ---------------- Admin booking operations ---------------- #
async def list_bookings(
    actor: Actor | None,
    *,
    statuses: Iterable[str | BookingStatus] | None = None,
    start_date: date | str | None = None,
    end_date: date | str | None = None,
    client_id: str | None = None,
    search: str | None = None,
) -> list[BookingInfo]:
    """Admin listing with filters, newest slot first."""
    _require_admin(actor)
    stmt = select(Booking, Product).outerjoin(Product, Product.id == Booking.product_id)

    if statuses:
        wanted: list[BookingStatus] = []
        for raw in statuses:
            status = normalize_booking_status(raw)
            if status is None:
                raise ValidationError(f"Неизвестный статус: {raw}")
            wanted.append(status)
        stmt = stmt.where(Booking.status.in_(wanted))
    if start_date:
        stmt = stmt.where(Booking.booking_date >= parse_booking_date(start_date))
    if end_date:
        stmt = stmt.where(Booking.booking_date <= parse_booking_date(end_date))
    if client_id:
        stmt = stmt.where(Booking.client_id == str(client_id))
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Booking.client_name).like(pattern),
                func.lower(Booking.client_phone).like(pattern),
                func.lower(func.coalesce(Booking.client_email, "")).like(pattern),
            )
        )
    stmt = stmt.order_by(Booking.booking_date.desc(), Booking.booking_time.desc())

    async with store_errors():
        async with get_session() as session:
            rows = (await session.execute(stmt)).all()
    return [booking_info_from_model(booking, product) for booking, product in rows]


async def complete_booking(
    booking_id: int, actor: Actor, *, dispatcher: NotificationDispatcher | None = None
) -> BookingInfo:
    info, previous = await apply_status_transition(
        booking_id, actor, BookingStatus.COMPLETED, admin_only=True
    )
    await emit(
        dispatcher,
        BookingEvent(EventKind.STATUS_CHANGED, info, old_status=previous, by_admin=True),
    )
    return info


async def delete_booking(
    booking_id: int, actor: Actor, *, dispatcher: NotificationDispatcher | None = None
) -> BookingInfo:
    """Hard-delete a booking (reschedule history cascades)."""
    _require_admin(actor)
    async with store_errors():
        async with get_session() as session:
            loaded = await load_booking(session, booking_id, lock=True)
            if loaded is None:
                raise NotFoundError("Запись не найдена")
            booking, product = loaded
            info = booking_info_from_model(booking, product)
            await session.delete(booking)
            await session.commit()
    logger.info("Booking %s deleted by %s", booking_id, actor.id)
    await emit(dispatcher, BookingEvent(EventKind.DELETED, info, by_admin=True))
    return info


__all__ = [
    "SETTINGS_ROW_ID",
    "SettingsRepo",
    "BlockedSlotRepo",
    "get_blocked_days",
    "apply_status_transition",
    "list_bookings",
    "complete_booking",
    "delete_booking",
]
