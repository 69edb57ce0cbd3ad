import uuid
from datetime import UTC, date, datetime, time as _time
from enum import Enum as _Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


class BookingStatus(_Enum):  # Values match DB labels
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def normalize_booking_status(value: str | BookingStatus | None) -> BookingStatus | None:
    """Return a BookingStatus enum when possible (accepts strings/enum values)."""
    if isinstance(value, BookingStatus):
        return value
    if isinstance(value, str):
        cleaned = value.strip().lower().replace("-", "_")
        try:
            return BookingStatus(cleaned)
        except ValueError:
            return None
    return None


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# Bookings a client can still act on (pay, reschedule, cancel)
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED})

# Every non-cancelled booking holds its (date, time) slot
OCCUPYING_STATUSES = frozenset(
    {BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED, BookingStatus.COMPLETED}
)

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING_PAYMENT: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Settings(Base):
    """Singleton row (id=1) with the practitioner's working hours."""

    __tablename__ = "settings"
    __table_args__ = (
        CheckConstraint("session_duration BETWEEN 15 AND 180", name="ck_settings_session_duration"),
        CheckConstraint("work_start < work_end", name="ck_settings_work_window"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    work_start: Mapped[_time] = mapped_column(Time, nullable=False)
    work_end: Mapped[_time] = mapped_column(Time, nullable=False)
    session_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Client(Base):
    __tablename__ = "clients"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(200))
    phone: Mapped[str] = mapped_column(String(32))
    # sha256 of the digits-only phone; the uniqueness key for clients
    phone_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    telegram: Mapped[str | None] = mapped_column(String(64), nullable=True)
    telegram_chat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="client", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_rub: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        # Commit-time guard against double booking: at most one non-cancelled
        # booking per (date, time).
        Index(
            "ux_bookings_slot_active",
            "booking_date",
            "booking_time",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("ix_bookings_client_phone", "client_phone"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_name: Mapped[str] = mapped_column(String(200))
    client_phone: Mapped[str] = mapped_column(String(32))
    phone_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_telegram: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Snapshot of the client's Telegram chat at booking time
    telegram_chat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    booking_time: Mapped[_time] = mapped_column(Time, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status",
            values_callable=lambda e: [m.value for m in e],  # persist lowercase labels
            native_enum=True,
        ),
        default=BookingStatus.PENDING_PAYMENT,
        nullable=False,
    )
    product_id: Mapped[int | None] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_24h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_1h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class BlockedSlot(Base):
    __tablename__ = "blocked_slots"
    __table_args__ = (UniqueConstraint("slot_date", "slot_time", name="uq_blocked_slots_date_time"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slot_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    slot_time: Mapped[_time] = mapped_column(Time, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class RescheduleHistory(Base):
    """Append-only log of booking moves."""

    __tablename__ = "booking_reschedule_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    old_date: Mapped[date] = mapped_column(Date, nullable=False)
    old_time: Mapped[_time] = mapped_column(Time, nullable=False)
    new_date: Mapped[date] = mapped_column(Date, nullable=False)
    new_time: Mapped[_time] = mapped_column(Time, nullable=False)
    rescheduled_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rescheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


__all__ = [
    "Base",
    "BookingStatus",
    "Settings",
    "Client",
    "Product",
    "Booking",
    "BlockedSlot",
    "RescheduleHistory",
    "normalize_booking_status",
    "can_transition",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "OCCUPYING_STATUSES",
]
