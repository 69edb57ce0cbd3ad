from __future__ import annotations

import hashlib
import html
import logging
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking.app.core.constants import (
    BOOKING_HORIZON_DAYS,
    DEFAULT_SESSION_DURATION,
    DEFAULT_WORK_END,
    DEFAULT_WORK_START,
    MIN_LEAD_MINUTES,
)
from booking.app.domain.errors import OutOfRangeError, ValidationError
from booking.app.domain.models import Booking, BookingStatus, Product, normalize_booking_status
from booking.config import LOCAL_TZ

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


# ---------------- Time utilities (shared) ---------------- #
def utc_now() -> datetime:
    """Return current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Convert given datetime to an aware UTC datetime.

    If `dt` is naive, interpret it as UTC (do not guess local timezone).
    Returns None when `dt` is None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def local_now(now: datetime | None = None) -> datetime:
    """Return `now` (default: the current instant) in the practice's civil time."""
    return (ensure_utc(now) or utc_now()).astimezone(LOCAL_TZ)


def local_today(now: datetime | None = None) -> date:
    return local_now(now).date()


def parse_hhmm(value: str) -> int:
    """Parse strict 'HH:MM' (00:00-23:59) into minutes since midnight.

    Raises ValueError on anything else.
    """
    match = _HHMM_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid HH:MM value: {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def minutes_to_hhmm(minutes: int) -> str:
    h, m = divmod(int(minutes), 60)
    return f"{h:02d}:{m:02d}"


def time_to_hhmm(value: time | str) -> str:
    if isinstance(value, time):
        return f"{value.hour:02d}:{value.minute:02d}"
    return minutes_to_hhmm(parse_hhmm(value))


def hhmm_to_time(value: str) -> time:
    h, m = divmod(parse_hhmm(value), 60)
    return time(h, m)


# ---------------- Working hours ---------------- #
@dataclass(frozen=True)
class ScheduleSettings:
    """Immutable snapshot of the working-hours row, fetched once per operation."""

    work_start: str = DEFAULT_WORK_START
    work_end: str = DEFAULT_WORK_END
    session_duration: int = DEFAULT_SESSION_DURATION

    @property
    def start_minutes(self) -> int:
        return parse_hhmm(self.work_start)

    @property
    def end_minutes(self) -> int:
        return parse_hhmm(self.work_end)

    def as_dict(self) -> dict[str, Any]:
        return {
            "work_start": self.work_start,
            "work_end": self.work_end,
            "session_duration": self.session_duration,
        }


class WorkingHoursPolicy:
    """Derives the day's slot grid from the working-hours settings."""

    @staticmethod
    def slots_for_day(settings: ScheduleSettings) -> list[str]:
        """Ordered slot starts ("HH:MM") within [work_start, work_end).

        A slot is emitted only when it ends by ``work_end``; a trailing partial
        interval is dropped. Non-positive durations or an empty window yield [].
        """
        duration = int(settings.session_duration or 0)
        start = settings.start_minutes
        end = settings.end_minutes
        if duration <= 0 or start >= end:
            return []
        slots: list[str] = []
        cursor = start
        while cursor + duration <= end:
            slots.append(minutes_to_hhmm(cursor))
            cursor += duration
        return slots

    @staticmethod
    def slot_count(settings: ScheduleSettings) -> int:
        return len(WorkingHoursPolicy.slots_for_day(settings))


slots_for_day = WorkingHoursPolicy.slots_for_day


# ---------------- Booking window ---------------- #
def slot_start_utc(day: date, hhmm: str) -> datetime:
    """Instant at which the (day, HH:MM) slot starts, as UTC."""
    return datetime.combine(day, hhmm_to_time(hhmm), tzinfo=LOCAL_TZ).astimezone(UTC)


def horizon_bounds(now: datetime | None = None) -> tuple[date, date]:
    today = local_today(now)
    return today, today + timedelta(days=BOOKING_HORIZON_DAYS)


def ensure_within_horizon(day: date, now: datetime | None = None) -> None:
    first, last = horizon_bounds(now)
    if day < first or day > last:
        raise OutOfRangeError(
            f"Дата должна быть в диапазоне с {first.isoformat()} по {last.isoformat()}"
        )


def meets_lead_time(day: date, hhmm: str, now: datetime | None = None) -> bool:
    earliest = (ensure_utc(now) or utc_now()) + timedelta(minutes=MIN_LEAD_MINUTES)
    return slot_start_utc(day, hhmm) >= earliest


# ---------------- Input parsing ---------------- #
def parse_booking_date(value: date | str | None) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not _DATE_RE.match(raw):
        raise ValidationError("Неверный формат даты. Используйте YYYY-MM-DD", code="invalid_date")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError("Неверная дата", code="invalid_date") from exc


def parse_booking_time(value: time | str | None) -> str:
    if isinstance(value, time):
        return time_to_hhmm(value)
    try:
        return minutes_to_hhmm(parse_hhmm(str(value or "")))
    except ValueError as exc:
        raise ValidationError("Неверный формат времени. Используйте HH:MM", code="invalid_time") from exc


def normalize_phone(phone: str | None) -> str:
    """Digits-only form of a phone number."""
    return re.sub(r"\D", "", phone or "")


def hash_phone(phone: str | None) -> str:
    return hashlib.sha256(normalize_phone(phone).encode("utf-8")).hexdigest()


# ---------------- Booking snapshot + message formatting ---------------- #
@dataclass(frozen=True)
class BookingInfo:
    """Detached view of a booking used by notifications and API responses."""

    id: int
    client_id: str | None
    client_name: str
    client_phone: str
    client_email: str | None
    client_telegram: str | None
    telegram_chat_id: str | None
    booking_date: date
    booking_time: str
    status: BookingStatus
    product_id: int | None = None
    product_name: str | None = None
    product_description: str | None = None
    amount: int | None = None
    paid_at: datetime | None = None
    payment_id: str | None = None
    notes: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "client_name": self.client_name,
            "client_phone": self.client_phone,
            "client_email": self.client_email,
            "client_telegram": self.client_telegram,
            "booking_date": self.booking_date.isoformat(),
            "booking_time": self.booking_time,
            "status": self.status.value,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "amount": self.amount,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_id": self.payment_id,
            "notes": self.notes,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def booking_info_from_model(booking: Any, product: Any | None = None) -> BookingInfo:
    """Build a BookingInfo from a Booking ORM row (and optional Product row)."""
    status = normalize_booking_status(booking.status) or BookingStatus.PENDING_PAYMENT
    return BookingInfo(
        id=int(booking.id),
        client_id=booking.client_id,
        client_name=booking.client_name,
        client_phone=booking.client_phone,
        client_email=booking.client_email,
        client_telegram=booking.client_telegram,
        telegram_chat_id=booking.telegram_chat_id,
        booking_date=booking.booking_date,
        booking_time=time_to_hhmm(booking.booking_time),
        status=status,
        product_id=booking.product_id,
        product_name=getattr(product, "name", None),
        product_description=getattr(product, "description", None),
        amount=booking.amount,
        paid_at=ensure_utc(booking.paid_at),
        payment_id=booking.payment_id,
        notes=booking.notes,
        cancelled_by=booking.cancelled_by,
        cancelled_at=ensure_utc(booking.cancelled_at),
        created_at=ensure_utc(booking.created_at),
        updated_at=ensure_utc(booking.updated_at),
    )


async def load_booking(
    session: AsyncSession, booking_id: int, *, lock: bool = False
) -> tuple[Booking, Product | None] | None:
    """Fetch a booking with its product; `lock` takes a row lock on the booking."""
    stmt = (
        select(Booking, Product)
        .outerjoin(Product, Product.id == Booking.product_id)
        .where(Booking.id == int(booking_id))
    )
    if lock:
        stmt = stmt.with_for_update(of=Booking)
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return row[0], row[1]


_MONTHS_GENITIVE = (
    "января", "февраля", "марта", "апреля", "мая", "июня",
    "июля", "августа", "сентября", "октября", "ноября", "декабря",
)

STATUS_LABELS: dict[BookingStatus, str] = {
    BookingStatus.PENDING_PAYMENT: "⏳ Ожидает оплаты",
    BookingStatus.CONFIRMED: "✅ Подтверждена",
    BookingStatus.COMPLETED: "🎉 Завершена",
    BookingStatus.CANCELLED: "❌ Отменена",
}


def format_date_ru(day: date) -> str:
    """'10 июня 2025'."""
    return f"{day.day} {_MONTHS_GENITIVE[day.month - 1]} {day.year}"


def format_amount(amount: int | None) -> str:
    return f"{int(amount or 0):,}".replace(",", " ") + " ₽"


def status_label(status: BookingStatus | str | None) -> str:
    normalized = normalize_booking_status(status)
    if normalized is None:
        return str(status)
    return STATUS_LABELS[normalized]


def _esc(value: Any) -> str:
    return html.escape(str(value), quote=False)


def _join(lines: Sequence[str | None]) -> str:
    return "\n".join(line for line in lines if line is not None).strip()


def _product_lines(info: BookingInfo) -> list[str | None]:
    return [
        f"🎯 <b>Услуга:</b> {_esc(info.product_name)}" if info.product_name else None,
        f"📝 <b>Описание:</b> {_esc(info.product_description)}" if info.product_description else None,
    ]


def format_new_booking_admin(info: BookingInfo) -> str:
    return _join([
        f"🆕 <b>НОВАЯ ЗАПИСЬ #{info.id}</b>",
        "",
        f"👤 <b>Клиент:</b> {_esc(info.client_name)}",
        f"📞 <b>Телефон:</b> {_esc(info.client_phone)}",
        f"📧 <b>Email:</b> {_esc(info.client_email)}" if info.client_email else None,
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
        f"💰 <b>Сумма:</b> {format_amount(info.amount)}",
    ])


def format_new_booking_client(info: BookingInfo) -> str:
    return _join([
        "📝 <b>Вы записаны на консультацию</b>",
        "",
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
        f"💰 <b>Сумма:</b> {format_amount(info.amount)}",
        "",
        "<i>Запись будет подтверждена после оплаты.</i>",
    ])


def format_status_change(info: BookingInfo, old_status: BookingStatus | str | None) -> str:
    return _join([
        f"🔔 <b>СТАТУС ЗАПИСИ ИЗМЕНЁН #{info.id}</b>",
        "",
        f"👤 <b>Клиент:</b> {_esc(info.client_name)}",
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
        "",
        f"<b>Было:</b> {status_label(old_status)}",
        f"<b>Стало:</b> {status_label(info.status)}",
    ])


def format_status_change_client(info: BookingInfo) -> str:
    return _join([
        "🔔 <b>Статус вашей записи изменён</b>",
        "",
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
        f"<b>Статус:</b> {status_label(info.status)}",
    ])


def format_reschedule(
    info: BookingInfo, old_date: date, old_time: str, *, by_admin: bool, for_client: bool = False
) -> str:
    header = "🔄 <b>Ваша запись перенесена!</b>" if for_client else f"🔄 <b>ЗАПИСЬ ПЕРЕНЕСЕНА #{info.id}</b>"
    return _join([
        header,
        "",
        None if for_client else f"👤 <b>Клиент:</b> {_esc(info.client_name)}",
        None if for_client else f"📞 <b>Телефон:</b> {_esc(info.client_phone)}",
        f"⏰ <b>Было:</b> {format_date_ru(old_date)} {old_time}",
        f"⏰ <b>Стало:</b> {format_date_ru(info.booking_date)} {info.booking_time}",
        *_product_lines(info),
        None if for_client else f"👤 <b>Перенес:</b> {'Администратор' if by_admin else 'Клиент'}",
    ])


def format_cancel(info: BookingInfo, *, by_admin: bool, for_client: bool = False) -> str:
    header = "❌ <b>Ваша запись отменена</b>" if for_client else f"❌ <b>ЗАПИСЬ ОТМЕНЕНА #{info.id}</b>"
    return _join([
        header,
        "",
        None if for_client else f"👤 <b>Клиент:</b> {_esc(info.client_name)}",
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
        f"👤 <b>Отменил:</b> {'Администратор' if by_admin else 'Клиент'}",
    ])


def format_delete_admin(info: BookingInfo) -> str:
    return _join([
        f"🗑️ <b>ЗАПИСЬ УДАЛЕНА #{info.id}</b>",
        "",
        f"👤 <b>Клиент:</b> {_esc(info.client_name)}",
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
    ])


def format_client_reminder(info: BookingInfo, hours_until: int) -> str:
    when = "завтра" if hours_until >= 24 else "через 1 час"
    return _join([
        "🔔 <b>Напоминание о записи</b>",
        "",
        f"📅 <b>Дата:</b> {format_date_ru(info.booking_date)}",
        f"⏰ <b>Время:</b> {info.booking_time}",
        *_product_lines(info),
        f"⏳ <b>До консультации:</b> {when}",
        "",
        "Увидимся на консультации! 👋",
    ])


def format_admin_reminder(info: BookingInfo) -> str:
    return _join([
        "⏰ <b>НАПОМИНАНИЕ: ЗАПИСЬ ЧЕРЕЗ 1 ЧАС!</b>",
        "",
        f"📋 <b>Запись #{info.id}</b>",
        f"⏰ <b>Время:</b> {info.booking_time} (через ~1 час)",
        *_product_lines(info),
        f"👤 <b>Клиент:</b> {_esc(info.client_name)}",
        f"📞 <b>Телефон:</b> {_esc(info.client_phone)}",
        f"📧 <b>Email:</b> {_esc(info.client_email)}" if info.client_email else None,
        "<i>Подготовьтесь к консультации 📝</i>",
    ])


__all__ = [
    "utc_now",
    "ensure_utc",
    "local_now",
    "local_today",
    "parse_hhmm",
    "minutes_to_hhmm",
    "time_to_hhmm",
    "hhmm_to_time",
    "ScheduleSettings",
    "WorkingHoursPolicy",
    "slots_for_day",
    "slot_start_utc",
    "horizon_bounds",
    "ensure_within_horizon",
    "meets_lead_time",
    "parse_booking_date",
    "parse_booking_time",
    "normalize_phone",
    "hash_phone",
    "BookingInfo",
    "booking_info_from_model",
    "load_booking",
    "STATUS_LABELS",
    "format_date_ru",
    "format_amount",
    "status_label",
    "format_new_booking_admin",
    "format_new_booking_client",
    "format_status_change",
    "format_status_change_client",
    "format_reschedule",
    "format_cancel",
    "format_delete_admin",
    "format_client_reminder",
    "format_admin_reminder",
]
