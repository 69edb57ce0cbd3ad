"""Error taxonomy of the booking engine.

Every error carries a stable ``code`` (safe to show to the frontend) and a
human-readable message. ``http_status`` is consumed by the API layer only.
"""

from __future__ import annotations


class BookingError(Exception):
    code: str = "booking_error"
    http_status: int = 400

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if code:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class ValidationError(BookingError):
    code = "validation_error"
    http_status = 400


class OutOfRangeError(BookingError):
    code = "date_out_of_range"
    http_status = 400


class SlotUnavailableError(BookingError):
    code = "slot_unavailable"
    http_status = 409


class InvalidStateError(BookingError):
    code = "invalid_state"
    http_status = 409


class ForbiddenError(BookingError):
    code = "forbidden"
    http_status = 403


class NotFoundError(BookingError):
    code = "not_found"
    http_status = 404


class StoreUnavailableError(BookingError):
    code = "store_unavailable"
    http_status = 503


__all__ = [
    "BookingError",
    "ValidationError",
    "OutOfRangeError",
    "SlotUnavailableError",
    "InvalidStateError",
    "ForbiddenError",
    "NotFoundError",
    "StoreUnavailableError",
]
