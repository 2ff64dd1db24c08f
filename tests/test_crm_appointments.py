from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

from app.schemas.company_settings import load_company_settings
from app.services.crm.appointments import (
    is_slot_available,
    is_slot_within_hours,
    next_available_slots,
    normalize_duration,
    overlaps,
    parse_local_slot,
)
from app.services.crm.calendar_sync import CalendarTaskSync, event_for_task

UTC = ZoneInfo("UTC")
COMPLETED_AT = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


def salon_settings(buffer_minutes=0):
    return load_company_settings(
        {
            "account_type": "with_appointments",
            "appointment": {"enabled": True, "slot_minutes": 30, "buffer_minutes": buffer_minutes, "max_days_ahead": 2},
            "business": {
                "timezone": "UTC",
                "schedule": {
                    "monday": {"start_time": "09:00", "end_time": "18:00"},
                    "tuesday": {"start_time": "09:00", "end_time": "18:00"},
                },
            },
        }
    )


def event(start_hour, start_minute, end_hour, end_minute):
    return SimpleNamespace(
        starts_at=datetime(2025, 3, 10, start_hour, start_minute, tzinfo=timezone.utc),
        ends_at=datetime(2025, 3, 10, end_hour, end_minute, tzinfo=timezone.utc),
    )


def slot(time_text, minutes):
    return parse_local_slot("2025-03-10", time_text, minutes, UTC)


class TestDuration:
    def test_bounds(self):
        assert normalize_duration(15) == 15
        assert normalize_duration("720") == 720
        assert normalize_duration(14) is None
        assert normalize_duration(721) is None

    def test_invalid_values(self):
        assert normalize_duration(None) is None
        assert normalize_duration("") is None
        assert normalize_duration(True) is None
        assert normalize_duration("abc") is None


class TestParseSlot:
    def test_requires_24h_clock(self):
        assert parse_local_slot("2025-03-10", "9:00", 30, UTC) is None
        assert parse_local_slot("2025-03-10", "24:00", 30, UTC) is None
        assert parse_local_slot("10.03.2025", "10:00", 30, UTC) is None

    def test_builds_end_from_duration(self):
        start, end = slot("10:00", 60)
        assert (end - start).total_seconds() == 3600


class TestSlotCollisions:
    def test_booking_sequence(self):
        settings = salon_settings()
        store = MagicMock()
        store.blocking_events.return_value = []

        first = slot("10:00", 60)
        assert is_slot_available(store, 3, settings, *first) is True

        store.blocking_events.return_value = [event(10, 0, 11, 0)]
        assert is_slot_available(store, 3, settings, *slot("10:30", 30)) is False
        assert is_slot_available(store, 3, settings, *slot("11:00", 30)) is True

    def test_only_events_reaching_into_the_slot_are_loaded(self):
        store = MagicMock()
        store.blocking_events.return_value = []
        start, end = slot("11:00", 30)

        is_slot_available(store, 3, salon_settings(buffer_minutes=15), start, end)

        _company_id, starts_before, ends_after = store.blocking_events.call_args.args
        assert starts_before == datetime(2025, 3, 10, 11, 45, tzinfo=timezone.utc)
        assert ends_after == datetime(2025, 3, 10, 10, 45, tzinfo=timezone.utc)

    def test_buffer_only_when_configured(self):
        existing = [event(10, 0, 11, 0)]
        start, end = slot("11:00", 30)
        assert overlaps(start, end, existing, 0) is False
        assert overlaps(start, end, existing, 15) is True

    def test_outside_working_hours(self):
        settings = salon_settings()
        assert is_slot_within_hours(settings, *slot("17:45", 30)) is False
        assert is_slot_within_hours(settings, *slot("17:30", 30)) is True
        assert is_slot_within_hours(settings, *slot("08:30", 30)) is False

    def test_day_off(self):
        settings = salon_settings()
        wednesday = parse_local_slot("2025-03-12", "10:00", 30, UTC)
        assert is_slot_within_hours(settings, *wednesday) is False


class TestNextAvailableSlots:
    def test_skips_busy_slots(self):
        store = MagicMock()
        store.blocking_events.return_value = [event(10, 0, 11, 0)]
        now = datetime(2025, 3, 10, 9, 40, tzinfo=timezone.utc)

        slots = next_available_slots(store, 3, salon_settings(), now, limit=3)

        starts = [start.strftime("%H:%M") for start, _ in slots]
        assert starts == ["11:00", "11:30", "12:00"]
        ends_after = store.blocking_events.call_args.args[2]
        assert ends_after == datetime(2025, 3, 10, 9, 45, tzinfo=timezone.utc)


class TestCalendarTaskSync:
    def _task(self, **overrides):
        values = {
            "sync_with_calendar": True,
            "company_calendar_event_id": 1,
            "status": "todo",
            "board_column": "todo",
            "scheduled_at": None,
            "due_at": None,
            "completed_at": None,
        }
        values.update(overrides)
        return SimpleNamespace(**values)

    def _event(self, status):
        return SimpleNamespace(id=1, status=status, **vars(event(10, 0, 11, 0)))

    def test_completed_event_finishes_task(self):
        task = self._task()
        sync = CalendarTaskSync(clock=lambda: COMPLETED_AT)

        assert sync.apply_event_to_task(task, self._event("completed")) is True
        assert task.status == "done"
        assert task.board_column == "done"
        assert task.completed_at == COMPLETED_AT
        assert task.due_at == task.scheduled_at.replace(hour=11)

    def test_canceled_event_cancels_task(self):
        task = self._task()
        CalendarTaskSync(clock=lambda: COMPLETED_AT).apply_event_to_task(task, self._event("canceled"))
        assert task.status == "canceled"
        assert task.completed_at == COMPLETED_AT

    def test_reopened_event_clears_completion(self):
        task = self._task(status="done", completed_at=COMPLETED_AT)
        CalendarTaskSync().apply_event_to_task(task, self._event("confirmed"))
        assert task.status == "in_progress"
        assert task.completed_at is None

    def test_unsynchronised_task_is_left_alone(self):
        task = self._task(sync_with_calendar=False)
        assert CalendarTaskSync().apply_event_to_task(task, self._event("completed")) is False
        assert task.status == "todo"

    def test_sync_tasks_skips_other_events(self):
        tasks = [self._task(), self._task(company_calendar_event_id=2), self._task(company_calendar_event_id=None)]
        assert CalendarTaskSync().sync_tasks(self._event("scheduled"), tasks) == 2

    def test_event_for_task(self):
        lookup = MagicMock(return_value="event")
        assert event_for_task(self._task(), lookup) == "event"
        assert event_for_task(self._task(company_calendar_event_id=None), lookup) is None
