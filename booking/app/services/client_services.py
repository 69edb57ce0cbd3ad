from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from booking.app.core.db import get_session, store_errors
from booking.app.core.notifications import BookingEvent, EventKind, NotificationDispatcher, emit
from booking.app.domain.actors import Actor
from booking.app.domain.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from booking.app.domain.models import (
    ACTIVE_STATUSES,
    OCCUPYING_STATUSES,
    Booking,
    BookingStatus,
    Client,
    Product,
    RescheduleHistory,
    normalize_booking_status,
)
from booking.app.services.admin_services import BlockedSlotRepo, SettingsRepo, apply_status_transition
from booking.app.services.shared_services import (
    BookingInfo,
    ScheduleSettings,
    WorkingHoursPolicy,
    booking_info_from_model,
    ensure_utc,
    ensure_within_horizon,
    hash_phone,
    hhmm_to_time,
    load_booking,
    local_today,
    meets_lead_time,
    normalize_phone,
    parse_booking_date,
    parse_booking_time,
    time_to_hhmm,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    """Contact details submitted with a booking request."""

    name: str
    phone: str
    email: str | None = None
    telegram: str | None = None
    telegram_chat_id: str | None = None


@dataclass(frozen=True)
class PaymentDetails:
    amount: int | None = None
    provider: str | None = None
    payment_id: str | None = None


def _is_slot_conflict(exc: IntegrityError) -> bool:
    # PostgreSQL names the index; SQLite names the columns.
    msg = str(getattr(exc, "orig", exc))
    return "ux_bookings_slot_active" in msg or "bookings.booking_date" in msg


# ---------------- Repositories ---------------- #
class ClientRepo:
    @staticmethod
    async def get(client_id: str) -> Client | None:
        async with store_errors():
            async with get_session() as session:
                return await session.get(Client, str(client_id))

    @staticmethod
    async def get_or_create_by_phone(info: ClientInfo) -> Client:
        """Find a client by phone hash or create one.

        A concurrent insert of the same phone loses on the unique hash and
        re-reads the winner's row.
        """
        phone_hash = hash_phone(info.phone)
        async with store_errors():
            async with get_session() as session:
                existing = await session.scalar(select(Client).where(Client.phone_hash == phone_hash))
                if existing is not None:
                    return existing
                client = Client(
                    name=info.name.strip(),
                    phone=info.phone.strip(),
                    phone_hash=phone_hash,
                    email=info.email,
                    telegram=info.telegram,
                    telegram_chat_id=info.telegram_chat_id,
                )
                session.add(client)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info("Client with phone hash %s created concurrently, re-reading", phone_hash[:8])
                    existing = await session.scalar(select(Client).where(Client.phone_hash == phone_hash))
                    if existing is None:
                        raise
                    return existing
                logger.info("Created client %s", client.id)
                return client


class ProductRepo:
    @staticmethod
    async def get_active(product_id: int) -> Product:
        async with store_errors():
            async with get_session() as session:
                product = await session.get(Product, int(product_id))
        if product is None or not product.is_active:
            raise ValidationError("Услуга не найдена или неактивна", code="product_not_found")
        return product


class BookingRepo:
    @staticmethod
    async def occupied_times(day: date, *, exclude_booking_id: int | None = None) -> set[str]:
        """Times on `day` held by non-cancelled bookings."""
        stmt = select(Booking.booking_time).where(
            Booking.booking_date == day,
            Booking.status.in_(OCCUPYING_STATUSES),
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != int(exclude_booking_id))
        async with store_errors():
            async with get_session() as session:
                result = await session.scalars(stmt)
                return {time_to_hhmm(t) for t in result.all()}

    @staticmethod
    async def list_by_phone(
        phone: str, statuses: Sequence[BookingStatus], *, from_date: date | None = None
    ) -> list[BookingInfo]:
        if not normalize_phone(phone):
            raise ValidationError("Укажите номер телефона", code="invalid_client_phone")
        stmt = (
            select(Booking, Product)
            .outerjoin(Product, Product.id == Booking.product_id)
            .where(Booking.phone_hash == hash_phone(phone), Booking.status.in_(list(statuses)))
        )
        if from_date is not None:
            stmt = stmt.where(Booking.booking_date >= from_date)
        stmt = stmt.order_by(Booking.booking_date, Booking.booking_time)
        async with store_errors():
            async with get_session() as session:
                rows = (await session.execute(stmt)).all()
        return [booking_info_from_model(booking, product) for booking, product in rows]


# ---------------- Availability ---------------- #
async def get_available_slots(
    day: date | str,
    *,
    now: datetime | None = None,
    settings: ScheduleSettings | None = None,
    exclude_booking_id: int | None = None,
) -> list[str]:
    """Bookable "HH:MM" starts for `day`, ascending.

    Raises ValidationError for a malformed date and OutOfRangeError outside
    [today, today + horizon]. A valid but full day yields [].
    """
    parsed_day = parse_booking_date(day)
    now = ensure_utc(now) or utc_now()
    ensure_within_horizon(parsed_day, now)
    if settings is None:
        settings = await SettingsRepo.get_schedule_settings()

    all_slots = WorkingHoursPolicy.slots_for_day(settings)
    if not all_slots:
        return []

    occupied, blocked = await asyncio.gather(
        BookingRepo.occupied_times(parsed_day, exclude_booking_id=exclude_booking_id),
        BlockedSlotRepo.blocked_times(parsed_day),
    )
    return [
        slot
        for slot in all_slots
        if slot not in occupied and slot not in blocked and meets_lead_time(parsed_day, slot, now)
    ]


async def _ensure_slot_available(
    day: date,
    hhmm: str,
    *,
    now: datetime,
    exclude_booking_id: int | None = None,
) -> None:
    available = await get_available_slots(day, now=now, exclude_booking_id=exclude_booking_id)
    if hhmm not in available:
        logger.info("Slot %s %s is not available", day, hhmm)
        raise SlotUnavailableError("Выбранное время недоступно. Пожалуйста, выберите другое время")


# ---------------- Booking lifecycle ---------------- #
async def create_booking(
    day: date | str,
    slot_time: str,
    client: ClientInfo,
    *,
    product_id: int | None = None,
    notes: str | None = None,
    actor: Actor | None = None,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> BookingInfo:
    """Создает новую запись в статусе pending_payment.

    Availability is re-checked here and the insert is guarded by the partial
    unique index, so a lost race surfaces as SlotUnavailableError.
    """
    parsed_day = parse_booking_date(day)
    hhmm = parse_booking_time(slot_time)
    if not (client.name or "").strip():
        raise ValidationError("Укажите имя", code="invalid_client_name")
    if not normalize_phone(client.phone):
        raise ValidationError("Укажите номер телефона", code="invalid_client_phone")
    now = ensure_utc(now) or utc_now()
    ensure_within_horizon(parsed_day, now)

    product = await ProductRepo.get_active(product_id) if product_id is not None else None
    await _ensure_slot_available(parsed_day, hhmm, now=now)

    if actor is not None and actor.id and not actor.is_admin:
        owner = await ClientRepo.get(actor.id)
        if owner is None:
            raise NotFoundError("Клиент не найден")
    else:
        owner = await ClientRepo.get_or_create_by_phone(client)

    booking = Booking(
        client_id=owner.id,
        client_name=client.name.strip(),
        client_phone=client.phone.strip(),
        phone_hash=hash_phone(client.phone),
        client_email=client.email or owner.email,
        client_telegram=client.telegram or owner.telegram,
        telegram_chat_id=client.telegram_chat_id or owner.telegram_chat_id,
        booking_date=parsed_day,
        booking_time=hhmm_to_time(hhmm),
        status=BookingStatus.PENDING_PAYMENT,
        product_id=product.id if product is not None else None,
        amount=int(product.price_rub) if product is not None else None,
        notes=notes,
    )
    async with store_errors():
        async with get_session() as session:
            session.add(booking)
            try:
                await session.commit()
            except IntegrityError as ie:
                await session.rollback()
                if not _is_slot_conflict(ie):
                    raise
                logger.info("Lost race for slot %s %s: %s", parsed_day, hhmm, ie)
                raise SlotUnavailableError("Это время уже занято. Пожалуйста, выберите другое время") from ie
            await session.refresh(booking)

    info = booking_info_from_model(booking, product)
    logger.info("Booking created #%s: %s %s client=%s", info.id, parsed_day, hhmm, owner.id)
    await emit(dispatcher, BookingEvent(EventKind.CREATED, info))
    return info


async def confirm_payment(
    booking_id: int,
    details: PaymentDetails | None = None,
    *,
    actor: Actor | None = None,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> BookingInfo:
    """pending_payment -> confirmed; stamps paid_at and a payment id.

    Without a provider payment id a stub id ``pay_<epoch_ms>_<booking_id>`` is
    generated, since no real gateway is integrated yet.
    """
    details = details or PaymentDetails()
    now = ensure_utc(now) or utc_now()
    payment_id = details.payment_id or f"pay_{int(now.timestamp() * 1000)}_{booking_id}"
    info, previous = await apply_status_transition(
        booking_id,
        actor,
        BookingStatus.CONFIRMED,
        values={"paid_at": now, "payment_id": payment_id},
    )
    logger.info(
        "Payment confirmed for booking %s: payment_id=%s provider=%s amount=%s",
        booking_id,
        payment_id,
        details.provider,
        details.amount,
    )
    await emit(
        dispatcher,
        BookingEvent(
            EventKind.STATUS_CHANGED,
            info,
            old_status=previous,
            by_admin=bool(actor and actor.is_admin),
        ),
    )
    return info


async def reschedule_booking(
    booking_id: int,
    new_date: date | str,
    new_time: str,
    actor: Actor,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> BookingInfo:
    """Move an active booking to another free slot and record the move."""
    target_day = parse_booking_date(new_date)
    target_hhmm = parse_booking_time(new_time)
    now = ensure_utc(now) or utc_now()

    async with store_errors():
        async with get_session() as session:
            loaded = await load_booking(session, booking_id)
    if loaded is None:
        raise NotFoundError("Запись не найдена")
    booking, product = loaded
    if not actor.can_access(booking.client_id):
        raise ForbiddenError("Нет прав на эту запись")
    current = normalize_booking_status(booking.status)
    if current not in ACTIVE_STATUSES:
        raise InvalidStateError("Перенести можно только активную запись")

    old_date: date = booking.booking_date
    old_time: time = booking.booking_time
    old_hhmm = time_to_hhmm(old_time)
    if (old_date, old_hhmm) == (target_day, target_hhmm):
        raise ValidationError("Новое время совпадает с текущим")

    ensure_within_horizon(target_day, now)
    await _ensure_slot_available(target_day, target_hhmm, now=now, exclude_booking_id=booking.id)

    async with store_errors():
        async with get_session() as session:
            try:
                # Conditioned on the state read above: a concurrent move or
                # cancel makes this a zero-row update.
                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking.id,
                        Booking.status.in_(ACTIVE_STATUSES),
                        Booking.booking_date == old_date,
                        Booking.booking_time == old_time,
                    )
                    .values(
                        booking_date=target_day,
                        booking_time=hhmm_to_time(target_hhmm),
                        reminder_24h_sent=False,
                        reminder_1h_sent=False,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise InvalidStateError("Запись была изменена, обновите данные и повторите")
                session.add(
                    RescheduleHistory(
                        booking_id=booking.id,
                        old_date=old_date,
                        old_time=old_time,
                        new_date=target_day,
                        new_time=hhmm_to_time(target_hhmm),
                        rescheduled_by=actor.id or actor.role.value,
                        reason=reason,
                        rescheduled_at=now,
                    )
                )
                await session.commit()
            except IntegrityError as ie:
                await session.rollback()
                if not _is_slot_conflict(ie):
                    raise
                logger.info("Lost race rescheduling booking %s to %s %s", booking_id, target_day, target_hhmm)
                raise SlotUnavailableError("Это время уже занято. Пожалуйста, выберите другое время") from ie

            reloaded = await load_booking(session, booking.id)
    if reloaded is None:
        raise NotFoundError("Запись не найдена")
    info = booking_info_from_model(*reloaded)
    logger.info(
        "Booking %s rescheduled %s %s -> %s %s by %s",
        booking_id,
        old_date,
        old_hhmm,
        target_day,
        target_hhmm,
        actor.role.value,
    )
    await emit(
        dispatcher,
        BookingEvent(
            EventKind.RESCHEDULED,
            info,
            old_date=old_date,
            old_time=old_hhmm,
            by_admin=actor.is_admin,
        ),
    )
    return info


async def cancel_booking(
    booking_id: int,
    actor: Actor,
    *,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> BookingInfo:
    now = ensure_utc(now) or utc_now()
    info, previous = await apply_status_transition(
        booking_id,
        actor,
        BookingStatus.CANCELLED,
        values={"cancelled_by": actor.id or actor.role.value, "cancelled_at": now},
    )
    logger.info("Booking %s cancelled by %s (was %s)", booking_id, actor.role.value, previous.value)
    await emit(dispatcher, BookingEvent(EventKind.CANCELLED, info, old_status=previous, by_admin=actor.is_admin))
    return info


# ---------------- Reads ---------------- #
async def get_booking(booking_id: int, actor: Actor) -> BookingInfo:
    async with store_errors():
        async with get_session() as session:
            loaded = await load_booking(session, booking_id)
    if loaded is None:
        raise NotFoundError("Запись не найдена")
    booking, product = loaded
    if not actor.can_access(booking.client_id):
        raise ForbiddenError("Нет прав на эту запись")
    return booking_info_from_model(booking, product)


async def get_reschedule_history(booking_id: int, actor: Actor) -> list[RescheduleHistory]:
    """Moves of a booking, newest first."""
    await get_booking(booking_id, actor)
    async with store_errors():
        async with get_session() as session:
            result = await session.scalars(
                select(RescheduleHistory)
                .where(RescheduleHistory.booking_id == int(booking_id))
                .order_by(RescheduleHistory.rescheduled_at.desc(), RescheduleHistory.id.desc())
            )
            return list(result.all())


async def list_upcoming_by_phone(phone: str, *, now: datetime | None = None) -> list[BookingInfo]:
    return await BookingRepo.list_by_phone(
        phone,
        [BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED],
        from_date=local_today(now),
    )


async def list_pending_by_phone(phone: str) -> list[BookingInfo]:
    return await BookingRepo.list_by_phone(phone, [BookingStatus.PENDING_PAYMENT])


__all__ = [
    "ClientInfo",
    "PaymentDetails",
    "ClientRepo",
    "ProductRepo",
    "BookingRepo",
    "get_available_slots",
    "create_booking",
    "confirm_payment",
    "reschedule_booking",
    "cancel_booking",
    "get_booking",
    "get_reschedule_history",
    "list_upcoming_by_phone",
    "list_pending_by_phone",
]
