from datetime import date

import pytest

from booking.app.core.constants import DEFAULT_DAY_BLOCK_REASON
from booking.app.domain.errors import ValidationError
from booking.app.services.admin_services import BlockedSlotRepo, SettingsRepo, get_blocked_days

from conftest import TOMORROW

pytestmark = pytest.mark.usefixtures("db")


async def test_block_slot_is_idempotent_and_last_reason_wins():
    first = await BlockedSlotRepo.block_slot(TOMORROW, "10:00", "Врач")
    second = await BlockedSlotRepo.block_slot("2025-06-10", "10:00", "Отпуск")

    assert first.id == second.id
    assert second.reason == "Отпуск"
    rows = await BlockedSlotRepo.list_blocked_slots()
    assert len(rows) == 1
    assert rows[0].reason == "Отпуск"
    assert await BlockedSlotRepo.blocked_times(TOMORROW) == {"10:00"}


async def test_block_slot_validates_input():
    with pytest.raises(ValidationError):
        await BlockedSlotRepo.block_slot("2025-13-01", "10:00")
    with pytest.raises(ValidationError):
        await BlockedSlotRepo.block_slot(TOMORROW, "10-00")


async def test_block_entire_day_covers_the_grid_once():
    await SettingsRepo.update_schedule_settings(work_start="09:00", work_end="12:00", session_duration=60)
    await BlockedSlotRepo.block_slot(TOMORROW, "10:00", "Врач")

    blocks = await BlockedSlotRepo.block_entire_day(TOMORROW)
    assert [b.slot_time.strftime("%H:%M") for b in blocks] == ["09:00", "10:00", "11:00"]
    assert {b.reason for b in blocks} == {DEFAULT_DAY_BLOCK_REASON}

    again = await BlockedSlotRepo.block_entire_day(TOMORROW, "Праздник")
    assert len(again) == 3
    assert len(await BlockedSlotRepo.list_blocked_slots(TOMORROW, TOMORROW)) == 3
    assert {b.reason for b in again} == {"Праздник"}


async def test_unblock_missing_id_is_a_noop():
    assert await BlockedSlotRepo.unblock_slot(987654) is False

    block = await BlockedSlotRepo.block_slot(TOMORROW, "09:00")
    assert await BlockedSlotRepo.unblock_slot(block.id) is True
    assert await BlockedSlotRepo.blocked_times(TOMORROW) == set()
    assert await BlockedSlotRepo.unblock_slot(block.id) is False


async def test_list_blocked_slots_filters_by_range():
    await BlockedSlotRepo.block_slot(date(2025, 6, 10), "09:00")
    await BlockedSlotRepo.block_slot(date(2025, 6, 12), "09:00")
    await BlockedSlotRepo.block_slot(date(2025, 6, 15), "09:00")

    rows = await BlockedSlotRepo.list_blocked_slots(date(2025, 6, 11), date(2025, 6, 15))
    assert [r.slot_date for r in rows] == [date(2025, 6, 12), date(2025, 6, 15)]


async def test_blocked_days_require_the_full_grid():
    await SettingsRepo.update_schedule_settings(work_start="09:00", work_end="12:00", session_duration=60)
    await BlockedSlotRepo.block_entire_day(date(2025, 6, 10))
    await BlockedSlotRepo.block_slot(date(2025, 6, 11), "09:00")

    assert await get_blocked_days("2025-06-01", "2025-06-30") == [date(2025, 6, 10)]
    assert await get_blocked_days(date(2025, 6, 11), date(2025, 6, 30)) == []

    # A longer working day makes the earlier whole-day block partial
    await SettingsRepo.update_schedule_settings(work_end="13:00")
    assert await get_blocked_days("2025-06-01", "2025-06-30") == []


async def test_blocked_days_rejects_inverted_range():
    with pytest.raises(ValidationError) as exc_info:
        await get_blocked_days("2025-06-30", "2025-06-01")
    assert exc_info.value.code == "invalid_date"
