"""Best-effort notification delivery for booking lifecycle events.

Lifecycle operations commit first and then call :func:`emit`, which schedules
delivery in the background; nothing in this module raises into the caller.
Each channel (Telegram via aiogram, email via Resend) is attempted
independently and reports success as a bool. Pending deliveries are awaited
by :func:`drain_notifications` on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Iterable

import resend
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.exceptions import TelegramAPIError

from booking.app.core.constants import (
    ADMIN_EMAIL,
    EMAIL_FROM,
    RESEND_API_KEY,
    TELEGRAM_ADMIN_CHAT_IDS,
    TELEGRAM_BOT_TOKEN,
)
from booking.app.domain.models import BookingStatus
from booking.app.services.shared_services import (
    BookingInfo,
    format_cancel,
    format_delete_admin,
    format_new_booking_admin,
    format_new_booking_client,
    format_reschedule,
    format_status_change,
    format_status_change_client,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientAddress:
    telegram_chat_id: str | None = None
    email: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.telegram_chat_id or self.email)

    @classmethod
    def for_booking(cls, info: BookingInfo) -> "ClientAddress":
        return cls(telegram_chat_id=info.telegram_chat_id, email=info.client_email)


class EventKind(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    DELETED = "deleted"


@dataclass(frozen=True)
class BookingEvent:
    kind: EventKind
    booking: BookingInfo
    old_status: BookingStatus | None = None
    old_date: date | None = None
    old_time: str | None = None
    by_admin: bool = False


_SUBJECTS: dict[EventKind, str] = {
    EventKind.CREATED: "Новая запись на консультацию",
    EventKind.STATUS_CHANGED: "Статус записи изменён",
    EventKind.RESCHEDULED: "Запись перенесена",
    EventKind.CANCELLED: "Запись отменена",
    EventKind.DELETED: "Запись удалена",
}


class TelegramChannel:
    """Sends HTML messages through an aiogram Bot created on first use."""

    def __init__(
        self,
        token: str | None = None,
        admin_chat_ids: Iterable[int | str] | None = None,
        bot: Bot | None = None,
    ) -> None:
        self._token = token if token is not None else TELEGRAM_BOT_TOKEN
        self._admin_chat_ids = list(admin_chat_ids if admin_chat_ids is not None else TELEGRAM_ADMIN_CHAT_IDS)
        self._bot = bot

    @property
    def enabled(self) -> bool:
        return self._bot is not None or bool(self._token)

    @property
    def admin_chat_ids(self) -> list[int | str]:
        return list(self._admin_chat_ids)

    def _get_bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(token=self._token, default=DefaultBotProperties(parse_mode="HTML"))
        return self._bot

    async def send(self, chat_id: int | str, text: str) -> bool:
        if not self.enabled or not chat_id:
            return False
        try:
            await self._get_bot().send_message(chat_id=chat_id, text=text)
            return True
        except TelegramAPIError as exc:
            logger.warning("Telegram send failed for %s: %s", chat_id, exc)
            return False
        except Exception:
            logger.exception("Telegram send unexpected error for %s", chat_id)
            return False

    async def send_admin(self, text: str) -> bool:
        delivered = False
        for chat_id in self._admin_chat_ids:
            if await self.send(chat_id, text):
                delivered = True
        return delivered

    async def close(self) -> None:
        if self._bot is not None:
            try:
                await self._bot.session.close()
            except Exception:
                logger.exception("Failed to close Telegram bot session")


class EmailChannel:
    """Resend-backed email delivery; the blocking SDK call runs in a thread."""

    def __init__(
        self,
        api_key: str | None = None,
        sender: str | None = None,
        admin_email: str | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else RESEND_API_KEY
        self._sender = sender or EMAIL_FROM
        self.admin_email = admin_email if admin_email is not None else ADMIN_EMAIL

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _send_sync(self, to_email: str, subject: str, html_body: str) -> Any:
        resend.api_key = self._api_key
        email_data = {
            "from": self._sender,
            "to": [to_email],
            "subject": subject,
            "html": html_body.replace("\n", "<br>"),
        }
        return resend.Emails.send(email_data)

    async def send(self, to_email: str | None, subject: str, html_body: str) -> bool:
        if not self.enabled or not to_email:
            return False
        try:
            response = await asyncio.to_thread(self._send_sync, to_email, subject, html_body)
            logger.info("Email sent to %s (%s): %s", to_email, subject, response)
            return True
        except Exception as exc:
            logger.error("Failed to send email to %s: %s", to_email, exc)
            return False


class NotificationDispatcher:
    def __init__(self, telegram: TelegramChannel | None = None, email: EmailChannel | None = None) -> None:
        self.telegram = telegram or TelegramChannel()
        self.email = email or EmailChannel()

    async def notify_admin(self, message: str, *, subject: str = "Уведомление о записи") -> bool:
        """Deliver to every configured admin channel; True if any succeeded."""
        results = await asyncio.gather(
            self.telegram.send_admin(message),
            self.email.send(self.email.admin_email, subject, message),
        )
        return any(results)

    async def notify_client(
        self, address: ClientAddress, message: str, *, subject: str = "Уведомление о записи"
    ) -> bool:
        if address.is_empty:
            return False
        results = await asyncio.gather(
            self.telegram.send(address.telegram_chat_id, message) if address.telegram_chat_id else _false(),
            self.email.send(address.email, subject, message) if address.email else _false(),
        )
        return any(results)

    async def dispatch(self, event: BookingEvent) -> None:
        info = event.booking
        subject = _SUBJECTS[event.kind]
        address = ClientAddress.for_booking(info)

        if event.kind == EventKind.CREATED:
            admin_text = format_new_booking_admin(info)
            client_text: str | None = format_new_booking_client(info)
        elif event.kind == EventKind.STATUS_CHANGED:
            admin_text = format_status_change(info, event.old_status)
            client_text = format_status_change_client(info)
        elif event.kind == EventKind.RESCHEDULED:
            old_date = event.old_date or info.booking_date
            old_time = event.old_time or info.booking_time
            admin_text = format_reschedule(info, old_date, old_time, by_admin=event.by_admin)
            client_text = format_reschedule(info, old_date, old_time, by_admin=event.by_admin, for_client=True)
        elif event.kind == EventKind.CANCELLED:
            admin_text = format_cancel(info, by_admin=event.by_admin)
            client_text = format_cancel(info, by_admin=event.by_admin, for_client=True)
        else:
            admin_text = format_delete_admin(info)
            client_text = None

        admin_ok = await self.notify_admin(admin_text, subject=subject)
        client_ok = await self.notify_client(address, client_text, subject=subject) if client_text else False
        logger.info(
            "Notification %s for booking %s: admin=%s client=%s", event.kind.value, info.id, admin_ok, client_ok
        )

    async def close(self) -> None:
        await self.telegram.close()


async def _false() -> bool:
    return False


_pending: set[asyncio.Task[None]] = set()


async def _dispatch_logged(target: NotificationDispatcher, event: BookingEvent) -> None:
    try:
        await target.dispatch(event)
    except Exception:
        logger.exception("Notification dispatch failed for %s booking %s", event.kind.value, event.booking.id)


async def emit(dispatcher: NotificationDispatcher | None, event: BookingEvent) -> None:
    """Schedule delivery of a committed lifecycle event and return at once; never raises."""
    target = dispatcher or get_dispatcher()
    task = asyncio.create_task(
        _dispatch_logged(target, event), name=f"notify-{event.kind.value}-{event.booking.id}"
    )
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain_notifications() -> None:
    """Wait until every scheduled delivery has finished."""
    while _pending:
        await asyncio.gather(*list(_pending))


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    """Replace the process-wide dispatcher (tests install recording fakes)."""
    global _dispatcher
    _dispatcher = dispatcher


__all__ = [
    "ClientAddress",
    "EventKind",
    "BookingEvent",
    "TelegramChannel",
    "EmailChannel",
    "NotificationDispatcher",
    "emit",
    "drain_notifications",
    "get_dispatcher",
    "set_dispatcher",
]
