"""FastAPI facade over the booking engine.

Thin HTTP glue: request parsing, JWT-based actor resolution and error
mapping. All scheduling and lifecycle rules live in the service layer.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from functools import wraps
from typing import Any, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from booking.app.core import constants
from booking.app.core.db import dispose_engine, init_db
from booking.app.core.notifications import drain_notifications, get_dispatcher
from booking.app.domain.actors import Actor, Role
from booking.app.domain.errors import BookingError
from booking.app.domain.models import BlockedSlot, RescheduleHistory
from booking.app.services import admin_services, client_services
from booking.app.services.admin_services import BlockedSlotRepo, SettingsRepo
from booking.app.services.client_services import ClientInfo, PaymentDetails
from booking.app.services.shared_services import BookingInfo, ScheduleSettings, parse_booking_date, time_to_hhmm
from booking.app.workers.reminders import start_reminders_worker, stop_reminders_worker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class BookingOut(BaseModel):
    id: int
    client_id: Optional[str] = None
    client_name: str
    client_phone: str
    client_email: Optional[str] = None
    client_telegram: Optional[str] = None
    booking_date: str
    booking_time: str
    status: str
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    amount: Optional[int] = None
    paid_at: Optional[str] = None
    payment_id: Optional[str] = None
    notes: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_info(cls, info: BookingInfo) -> "BookingOut":
        return cls(**info.as_dict())


class BookingCreateRequest(BaseModel):
    booking_date: str = ""
    booking_time: str = ""
    client_name: str = ""
    client_phone: str = ""
    client_email: Optional[str] = None
    client_telegram: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    product_id: Optional[int] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: Optional[int] = None
    provider: Optional[str] = None
    payment_id: Optional[str] = None


class PaymentResponse(BaseModel):
    success: bool
    payment_id: Optional[str] = None
    booking: BookingOut


class RescheduleRequest(BaseModel):
    new_date: str = ""
    new_time: str = ""
    reason: Optional[str] = None


class RescheduleHistoryOut(BaseModel):
    id: int
    booking_id: int
    old_date: str
    old_time: str
    new_date: str
    new_time: str
    rescheduled_by: Optional[str] = None
    reason: Optional[str] = None
    rescheduled_at: str

    @classmethod
    def from_row(cls, row: RescheduleHistory) -> "RescheduleHistoryOut":
        return cls(
            id=row.id,
            booking_id=row.booking_id,
            old_date=row.old_date.isoformat(),
            old_time=time_to_hhmm(row.old_time),
            new_date=row.new_date.isoformat(),
            new_time=time_to_hhmm(row.new_time),
            rescheduled_by=row.rescheduled_by,
            reason=row.reason,
            rescheduled_at=row.rescheduled_at.isoformat(),
        )


class SlotsResponse(BaseModel):
    date: str
    slots: list[str]


class BlockedDaysResponse(BaseModel):
    blocked_days: list[str]


class BlockRequest(BaseModel):
    slot_date: str = ""
    slot_time: Optional[str] = None
    reason: Optional[str] = None
    block_entire_day: bool = False


class BlockedSlotOut(BaseModel):
    id: int
    slot_date: str
    slot_time: str
    reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: BlockedSlot) -> "BlockedSlotOut":
        return cls(
            id=row.id,
            slot_date=row.slot_date.isoformat(),
            slot_time=time_to_hhmm(row.slot_time),
            reason=row.reason,
        )


class BlockResponse(BaseModel):
    success: bool = True
    blocked: list[BlockedSlotOut]


class SettingsOut(BaseModel):
    work_start: str
    work_end: str
    session_duration: int

    @classmethod
    def from_settings(cls, settings: ScheduleSettings) -> "SettingsOut":
        return cls(**settings.as_dict())


class SettingsPatch(BaseModel):
    work_start: Optional[str] = None
    work_end: Optional[str] = None
    session_duration: Optional[int] = Field(default=None)


# ---------------------------------------------------------------------------
# Error handling helpers
# ---------------------------------------------------------------------------


def _normalize_error_code(val: str | Exception | None, default: str) -> str:
    """Return a safe error code for frontend without leaking exception text."""
    if val is None:
        return default
    code = str(val).strip().lower()
    if not code or not all(ch.isalnum() or ch in {"_", "-"} for ch in code):
        return default
    return code[:64]


def booking_error_handler(default_error: str = "internal_error"):
    """Decorator mapping engine errors to HTTP responses.

    - Passes through FastAPI `HTTPException` untouched.
    - Converts `BookingError` to its HTTP status with ``{"error", "message"}``.
    - Logs unexpected exceptions and returns 500 `internal_error` tagged with `default_error`.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except BookingError as exc:
                raise HTTPException(
                    status_code=exc.http_status,
                    detail={"error": _normalize_error_code(exc.code, default_error), "message": exc.message},
                ) from exc
            except Exception as exc:  # noqa: BLE001
                logger.exception("%s failed: %s", func.__name__, exc)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail={"error": "internal_error", "operation": default_error, "message": "Внутренняя ошибка сервера"},
                ) from exc

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def issue_token(actor: Actor, ttl_seconds: int | None = None) -> str:
    """Sign a session token for `actor` (used by the auth collaborator)."""
    payload: dict[str, Any] = {
        "role": actor.role.value,
        "exp": datetime.now(UTC) + timedelta(seconds=ttl_seconds or constants.JWT_TTL_SECONDS),
    }
    if actor.id is not None:
        payload["sub"] = str(actor.id)
    return jwt.encode(payload, constants.JWT_SECRET, algorithm=constants.JWT_ALGO)


def _decode_token(token: str) -> Actor:
    try:
        data = jwt.decode(token, constants.JWT_SECRET, algorithms=[constants.JWT_ALGO])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc
    try:
        role = Role(data.get("role") or Role.CLIENT.value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc
    return Actor(id=data.get("sub"), role=role)


async def get_optional_actor(authorization: str | None = Header(default=None)) -> Actor | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_authorization_header")
    return _decode_token(token)


async def get_current_actor(actor: Actor | None = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")
    return actor


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Доступ только для администратора"},
        )
    return actor


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await init_db(force=False)
    stop_reminders = None
    if constants.REMINDERS_ENABLED:
        if constants.REMINDERS_CHECK_SECONDS_INVALID:
            logger.warning(
                "Invalid REMINDERS_CHECK_SECONDS=%r, using %ss",
                constants.REMINDERS_CHECK_SECONDS_RAW,
                constants.REMINDERS_CHECK_SECONDS,
            )
        stop_reminders = await start_reminders_worker()
    try:
        yield
    finally:
        await stop_reminders_worker(stop_reminders)
        await drain_notifications()
        await get_dispatcher().close()
        await dispose_engine()


app = FastAPI(title="Booking API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=constants.CORS_ORIGINS or ["*"],
    allow_credentials=bool(constants.CORS_ORIGINS),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


# ---------------- Public: availability ---------------- #


@app.get("/api/slots/available", response_model=SlotsResponse)
@booking_error_handler("slots_failed")
async def available_slots(date_: str = Query(default="", alias="date")) -> SlotsResponse:
    slots = await client_services.get_available_slots(date_)
    return SlotsResponse(date=date_, slots=slots)


@app.get("/api/blocked-days", response_model=BlockedDaysResponse)
@booking_error_handler("blocked_days_failed")
async def blocked_days(
    start_date: str = Query(default=""), end_date: str = Query(default="")
) -> BlockedDaysResponse:
    days = await admin_services.get_blocked_days(start_date, end_date)
    return BlockedDaysResponse(blocked_days=[d.isoformat() for d in days])


# ---------------- Bookings ---------------- #


@app.post("/api/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
@booking_error_handler("create_failed")
async def create_booking(
    payload: BookingCreateRequest, actor: Actor | None = Depends(get_optional_actor)
) -> BookingOut:
    info = await client_services.create_booking(
        payload.booking_date,
        payload.booking_time,
        ClientInfo(
            name=payload.client_name,
            phone=payload.client_phone,
            email=payload.client_email,
            telegram=payload.client_telegram,
            telegram_chat_id=payload.telegram_chat_id,
        ),
        product_id=payload.product_id,
        notes=payload.notes,
        actor=actor,
    )
    return BookingOut.from_info(info)


@app.get("/api/bookings/upcoming", response_model=list[BookingOut])
@booking_error_handler("lookup_failed")
async def upcoming_bookings(phone: str = Query(default="")) -> list[BookingOut]:
    return [BookingOut.from_info(i) for i in await client_services.list_upcoming_by_phone(phone)]


@app.get("/api/bookings/pending", response_model=list[BookingOut])
@booking_error_handler("lookup_failed")
async def pending_bookings(phone: str = Query(default="")) -> list[BookingOut]:
    return [BookingOut.from_info(i) for i in await client_services.list_pending_by_phone(phone)]


@app.get("/api/bookings/{booking_id}", response_model=BookingOut)
@booking_error_handler("get_failed")
async def get_booking(booking_id: int, actor: Actor = Depends(get_current_actor)) -> BookingOut:
    return BookingOut.from_info(await client_services.get_booking(booking_id, actor))


@app.post("/api/bookings/{booking_id}/payment", response_model=PaymentResponse)
@booking_error_handler("payment_failed")
async def pay_booking(
    booking_id: int,
    payload: PaymentRequest | None = None,
    actor: Actor = Depends(get_current_actor),
) -> PaymentResponse:
    details = PaymentDetails(**payload.model_dump()) if payload is not None else None
    info = await client_services.confirm_payment(booking_id, details, actor=actor)
    return PaymentResponse(success=True, payment_id=info.payment_id, booking=BookingOut.from_info(info))


@app.put("/api/bookings/{booking_id}/reschedule", response_model=BookingOut)
@booking_error_handler("reschedule_failed")
async def reschedule_booking(
    booking_id: int, payload: RescheduleRequest, actor: Actor = Depends(get_current_actor)
) -> BookingOut:
    info = await client_services.reschedule_booking(
        booking_id, payload.new_date, payload.new_time, actor, reason=payload.reason
    )
    return BookingOut.from_info(info)


@app.get("/api/bookings/{booking_id}/reschedule-history", response_model=list[RescheduleHistoryOut])
@booking_error_handler("history_failed")
async def reschedule_history(
    booking_id: int, actor: Actor = Depends(get_current_actor)
) -> list[RescheduleHistoryOut]:
    rows = await client_services.get_reschedule_history(booking_id, actor)
    return [RescheduleHistoryOut.from_row(r) for r in rows]


@app.post("/api/bookings/{booking_id}/cancel", response_model=BookingOut)
@booking_error_handler("cancel_failed")
async def cancel_booking(booking_id: int, actor: Actor = Depends(get_current_actor)) -> BookingOut:
    return BookingOut.from_info(await client_services.cancel_booking(booking_id, actor))


# ---------------- Admin ---------------- #


@app.get("/api/admin/bookings", response_model=list[BookingOut])
@booking_error_handler("list_failed")
async def admin_list_bookings(
    status_: Optional[str] = Query(default=None, alias="status"),
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    client_id: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    actor: Actor = Depends(require_admin),
) -> list[BookingOut]:
    statuses = [s for s in (status_ or "").split(",") if s.strip()]
    infos = await admin_services.list_bookings(
        actor,
        statuses=statuses or None,
        start_date=start_date,
        end_date=end_date,
        client_id=client_id,
        search=search,
    )
    return [BookingOut.from_info(i) for i in infos]


@app.post("/api/admin/bookings/{booking_id}/complete", response_model=BookingOut)
@booking_error_handler("complete_failed")
async def admin_complete_booking(booking_id: int, actor: Actor = Depends(require_admin)) -> BookingOut:
    return BookingOut.from_info(await admin_services.complete_booking(booking_id, actor))


@app.delete("/api/admin/bookings/{booking_id}")
@booking_error_handler("delete_failed")
async def admin_delete_booking(booking_id: int, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
    info = await admin_services.delete_booking(booking_id, actor)
    return {"success": True, "booking": BookingOut.from_info(info).model_dump()}


@app.get("/api/admin/blocked-slots", response_model=list[BlockedSlotOut])
@booking_error_handler("blocked_slots_failed")
async def admin_list_blocked_slots(
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    _actor: Actor = Depends(require_admin),
) -> list[BlockedSlotOut]:
    start = parse_booking_date(start_date) if start_date else None
    end = parse_booking_date(end_date) if end_date else None
    rows = await BlockedSlotRepo.list_blocked_slots(start, end)
    return [BlockedSlotOut.from_row(r) for r in rows]


@app.post("/api/admin/blocked-slots", response_model=BlockResponse, status_code=status.HTTP_201_CREATED)
@booking_error_handler("block_failed")
async def admin_block(payload: BlockRequest, _actor: Actor = Depends(require_admin)) -> BlockResponse:
    if payload.block_entire_day:
        rows = await BlockedSlotRepo.block_entire_day(payload.slot_date, payload.reason)
    else:
        rows = [await BlockedSlotRepo.block_slot(payload.slot_date, payload.slot_time or "", payload.reason)]
    return BlockResponse(blocked=[BlockedSlotOut.from_row(r) for r in rows])


@app.delete("/api/admin/blocked-slots/{block_id}")
@booking_error_handler("unblock_failed")
async def admin_unblock(block_id: int, _actor: Actor = Depends(require_admin)) -> dict[str, bool]:
    deleted = await BlockedSlotRepo.unblock_slot(block_id)
    return {"success": True, "deleted": deleted}


@app.get("/api/admin/settings", response_model=SettingsOut)
@booking_error_handler("settings_failed")
async def admin_get_settings(_actor: Actor = Depends(require_admin)) -> SettingsOut:
    return SettingsOut.from_settings(await SettingsRepo.get_schedule_settings())


@app.patch("/api/admin/settings", response_model=SettingsOut)
@booking_error_handler("settings_failed")
async def admin_update_settings(payload: SettingsPatch, _actor: Actor = Depends(require_admin)) -> SettingsOut:
    updated = await SettingsRepo.update_schedule_settings(
        work_start=payload.work_start,
        work_end=payload.work_end,
        session_duration=payload.session_duration,
    )
    return SettingsOut.from_settings(updated)


__all__ = ["app", "issue_token", "booking_error_handler"]
