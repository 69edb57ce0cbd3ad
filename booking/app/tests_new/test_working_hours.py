from datetime import UTC, date, datetime

import pytest

from booking.app.domain.errors import OutOfRangeError, ValidationError
from booking.app.services.shared_services import (
    ScheduleSettings,
    WorkingHoursPolicy,
    ensure_within_horizon,
    format_amount,
    format_date_ru,
    hash_phone,
    horizon_bounds,
    local_today,
    meets_lead_time,
    normalize_phone,
    parse_booking_date,
    parse_booking_time,
    parse_hhmm,
    slot_start_utc,
)

from conftest import NOW


def test_default_day_has_nine_hourly_slots():
    slots = WorkingHoursPolicy.slots_for_day(ScheduleSettings("09:00", "18:00", 60))
    assert slots == ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00", "17:00"]


def test_trailing_partial_slot_is_dropped():
    assert WorkingHoursPolicy.slots_for_day(ScheduleSettings("09:00", "12:30", 60)) == ["09:00", "10:00", "11:00"]
    assert WorkingHoursPolicy.slots_for_day(ScheduleSettings("09:00", "10:00", 45)) == ["09:00"]
    assert WorkingHoursPolicy.slots_for_day(ScheduleSettings("09:00", "10:30", 45)) == ["09:00", "09:45"]


@pytest.mark.parametrize(
    "settings",
    [
        ScheduleSettings("09:00", "18:00", 0),
        ScheduleSettings("09:00", "18:00", -15),
        ScheduleSettings("18:00", "09:00", 60),
        ScheduleSettings("09:00", "09:00", 60),
        ScheduleSettings("09:00", "09:30", 60),
    ],
)
def test_degenerate_settings_yield_no_slots(settings):
    assert WorkingHoursPolicy.slots_for_day(settings) == []
    assert WorkingHoursPolicy.slot_count(settings) == 0


@pytest.mark.parametrize(
    "start,end,duration",
    [("08:00", "20:00", 15), ("09:30", "17:10", 50), ("00:00", "23:59", 180), ("10:00", "11:00", 60)],
)
def test_slots_tile_the_window(start, end, duration):
    settings = ScheduleSettings(start, end, duration)
    minutes = [parse_hhmm(s) for s in WorkingHoursPolicy.slots_for_day(settings)]
    assert minutes[0] == parse_hhmm(start)
    assert all(b - a == duration for a, b in zip(minutes, minutes[1:]))
    assert minutes[-1] + duration <= parse_hhmm(end)
    assert minutes[-1] + 2 * duration > parse_hhmm(end)


def test_parse_hhmm_is_strict():
    assert parse_hhmm("00:00") == 0
    assert parse_hhmm("23:59") == 23 * 60 + 59
    for bad in ("24:00", "9:00", "09:60", "0900", "", "ab:cd"):
        with pytest.raises(ValueError):
            parse_hhmm(bad)


def test_parse_booking_inputs():
    assert parse_booking_date("2025-06-10") == date(2025, 6, 10)
    assert parse_booking_date(datetime(2025, 6, 10, 12, 0)) == date(2025, 6, 10)
    assert parse_booking_time("09:00") == "09:00"

    for bad in ("2025/06/10", "10-06-2025", "2025-02-30", "", None):
        with pytest.raises(ValidationError) as exc_info:
            parse_booking_date(bad)
        assert exc_info.value.code == "invalid_date"

    with pytest.raises(ValidationError) as exc_info:
        parse_booking_time("25:00")
    assert exc_info.value.code == "invalid_time"


def test_practice_clock_is_utc_plus_three():
    assert slot_start_utc(date(2025, 6, 10), "09:00") == datetime(2025, 6, 10, 6, 0, tzinfo=UTC)
    assert local_today(datetime(2025, 6, 9, 20, 59, tzinfo=UTC)) == date(2025, 6, 9)
    assert local_today(datetime(2025, 6, 9, 21, 0, tzinfo=UTC)) == date(2025, 6, 10)


def test_horizon_is_inclusive_thirty_days():
    assert horizon_bounds(NOW) == (date(2025, 6, 9), date(2025, 7, 9))
    ensure_within_horizon(date(2025, 6, 9), NOW)
    ensure_within_horizon(date(2025, 7, 9), NOW)
    for day in (date(2025, 6, 8), date(2025, 7, 10)):
        with pytest.raises(OutOfRangeError):
            ensure_within_horizon(day, NOW)


def test_horizon_follows_local_day_not_utc_day():
    late_evening_utc = datetime(2025, 6, 9, 22, 30, tzinfo=UTC)  # 01:30 on June 10 locally
    with pytest.raises(OutOfRangeError):
        ensure_within_horizon(date(2025, 6, 9), late_evening_utc)
    ensure_within_horizon(date(2025, 7, 10), late_evening_utc)


def test_lead_time_boundary():
    # NOW is 09:00 local on 2025-06-09
    assert not meets_lead_time(date(2025, 6, 9), "09:00", NOW)
    assert not meets_lead_time(date(2025, 6, 9), "09:45", NOW)
    assert meets_lead_time(date(2025, 6, 9), "10:00", NOW)
    assert meets_lead_time(date(2025, 6, 10), "09:00", NOW)


def test_phone_normalization_and_hash():
    assert normalize_phone("+7 (999) 123-45-67") == "79991234567"
    assert normalize_phone(None) == ""
    assert hash_phone("+7 (999) 123-45-67") == hash_phone("79991234567")
    assert len(hash_phone("79991234567")) == 64


def test_russian_formatting():
    assert format_date_ru(date(2025, 6, 10)) == "10 июня 2025"
    assert format_date_ru(date(2025, 1, 1)) == "1 января 2025"
    assert format_amount(3500) == "3 500 ₽"
    assert format_amount(None) == "0 ₽"
