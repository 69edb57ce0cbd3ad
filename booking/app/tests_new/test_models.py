from booking.app.domain import models
from booking.app.domain.actors import Actor, Role
from booking.app.domain.errors import (
    BookingError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    OutOfRangeError,
    SlotUnavailableError,
    StoreUnavailableError,
    ValidationError,
)


def test_normalize_booking_status_variants():
    assert models.normalize_booking_status("CONFIRMED") is models.BookingStatus.CONFIRMED
    assert models.normalize_booking_status("pending-payment") is models.BookingStatus.PENDING_PAYMENT
    assert models.normalize_booking_status(models.BookingStatus.COMPLETED) is models.BookingStatus.COMPLETED
    assert models.normalize_booking_status("unknown") is None
    assert models.normalize_booking_status(None) is None


def test_status_collections():
    assert models.BookingStatus.CANCELLED in models.TERMINAL_STATUSES
    assert models.BookingStatus.COMPLETED in models.TERMINAL_STATUSES
    assert models.BookingStatus.CONFIRMED not in models.TERMINAL_STATUSES
    assert models.ACTIVE_STATUSES == {models.BookingStatus.PENDING_PAYMENT, models.BookingStatus.CONFIRMED}
    assert models.BookingStatus.CANCELLED not in models.OCCUPYING_STATUSES
    assert models.BookingStatus.COMPLETED in models.OCCUPYING_STATUSES


def test_transition_table():
    S = models.BookingStatus
    assert models.can_transition(S.PENDING_PAYMENT, S.CONFIRMED)
    assert models.can_transition(S.PENDING_PAYMENT, S.CANCELLED)
    assert models.can_transition(S.CONFIRMED, S.COMPLETED)
    assert models.can_transition(S.CONFIRMED, S.CANCELLED)
    assert not models.can_transition(S.PENDING_PAYMENT, S.COMPLETED)
    assert not models.can_transition(S.CONFIRMED, S.CONFIRMED)
    for terminal in models.TERMINAL_STATUSES:
        assert all(not models.can_transition(terminal, target) for target in S)


def test_slot_index_is_partial_and_unique():
    index = next(i for i in models.Booking.__table__.indexes if i.name == "ux_bookings_slot_active")
    assert index.unique
    assert [c.name for c in index.columns] == ["booking_date", "booking_time"]
    assert "cancelled" in str(index.dialect_options["postgresql"]["where"])
    assert "cancelled" in str(index.dialect_options["sqlite"]["where"])


def test_actor_authorization_rule():
    admin = Actor(id="a1", role=Role.ADMIN)
    owner = Actor(id="c1")
    stranger = Actor(id="c2")
    anonymous = Actor(id=None)

    assert admin.can_access("c1")
    assert admin.can_access(None)
    assert owner.can_access("c1")
    assert not stranger.can_access("c1")
    assert not anonymous.can_access(None)


def test_error_codes_and_statuses():
    expected = {
        ValidationError: ("validation_error", 400),
        OutOfRangeError: ("date_out_of_range", 400),
        SlotUnavailableError: ("slot_unavailable", 409),
        InvalidStateError: ("invalid_state", 409),
        ForbiddenError: ("forbidden", 403),
        NotFoundError: ("not_found", 404),
        StoreUnavailableError: ("store_unavailable", 503),
    }
    for cls, (code, http_status) in expected.items():
        err = cls("msg")
        assert isinstance(err, BookingError)
        assert (err.code, err.http_status, err.message) == (code, http_status, "msg")

    specific = ValidationError("bad", code="invalid_date")
    assert specific.code == "invalid_date"
    assert ValidationError.code == "validation_error"
    assert str(NotFoundError()) == "not_found"
