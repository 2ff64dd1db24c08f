"""
Appointment slot rules.

A slot is bookable when it falls inside the company's working hours for that
weekday and does not overlap a scheduled or confirmed calendar event. Slots
are expressed in the company timezone; events are stored in UTC.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from app.schemas.company_settings import WEEKDAYS, CompanySettings, DaySchedule
from app.services.billing_ledger import as_aware

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")
MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 720
DEFAULT_EVENT_MINUTES = 30
SLOT_LEAD_MINUTES = 5


def normalize_duration(value) -> Optional[int]:
    """Whole minutes in [15, 720], or None when the value is missing or out of range."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        minutes = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    if minutes < MIN_DURATION_MINUTES or minutes > MAX_DURATION_MINUTES:
        return None
    return minutes


def company_zone(settings: CompanySettings) -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def parse_local_slot(
    date_text: str, time_text: str, duration_minutes: int, tz: ZoneInfo
) -> Optional[tuple[datetime, datetime]]:
    date_text = str(date_text or "").strip()
    time_text = str(time_text or "").strip()
    if not DATE_RE.match(date_text) or not TIME_RE.match(time_text):
        return None
    try:
        start = datetime.strptime(f"{date_text} {time_text}", "%Y-%m-%d %H:%M").replace(tzinfo=tz)
    except ValueError:
        return None
    return start, start + timedelta(minutes=duration_minutes)


def working_window(day: DaySchedule, on: date, tz: ZoneInfo) -> Optional[tuple[datetime, datetime]]:
    if not day.is_open:
        return None
    start = datetime.combine(on, datetime.strptime(day.start_time, "%H:%M").time(), tzinfo=tz)
    end = datetime.combine(on, datetime.strptime(day.end_time, "%H:%M").time(), tzinfo=tz)
    if end <= start:
        return None
    return start, end


def weekday_key(value: datetime) -> str:
    return WEEKDAYS[value.weekday()]


def is_slot_within_hours(settings: CompanySettings, start_local: datetime, end_local: datetime) -> bool:
    if end_local <= start_local:
        return False
    window = working_window(settings.business.day(weekday_key(start_local)), start_local.date(), start_local.tzinfo)
    if window is None:
        return False
    day_start, day_end = window
    return start_local >= day_start and end_local <= day_end


def overlaps(start: datetime, end: datetime, events: Iterable, buffer_minutes: int = 0) -> bool:
    buffer = timedelta(minutes=buffer_minutes) if buffer_minutes > 0 else timedelta(0)
    for event in events:
        event_start = as_aware(event.starts_at)
        if event_start is None:
            continue
        event_end = as_aware(event.ends_at) or event_start + timedelta(minutes=DEFAULT_EVENT_MINUTES)
        if event_start - buffer < end and event_end + buffer > start:
            return True
    return False


def is_time_free(
    store,
    company_id: int,
    start: datetime,
    end: datetime,
    buffer_minutes: int = 0,
    ignore_event_id: Optional[int] = None,
) -> bool:
    """No scheduled or confirmed event (plus buffer) intersects [start, end)."""
    buffer = timedelta(minutes=max(buffer_minutes, 0))
    events = store.blocking_events(
        company_id,
        end.astimezone(timezone.utc) + buffer,
        start.astimezone(timezone.utc) - buffer,
        ignore_event_id=ignore_event_id,
        open_ended_minutes=DEFAULT_EVENT_MINUTES,
    )
    return not overlaps(start, end, events, buffer_minutes)


def is_slot_available(
    store,
    company_id: int,
    settings: CompanySettings,
    start_local: datetime,
    end_local: datetime,
    ignore_event_id: Optional[int] = None,
) -> bool:
    if not is_slot_within_hours(settings, start_local, end_local):
        return False
    return is_time_free(
        store, company_id, start_local, end_local, settings.appointment.buffer_minutes, ignore_event_id
    )


def next_available_slots(
    store,
    company_id: int,
    settings: CompanySettings,
    now: datetime,
    duration_minutes: Optional[int] = None,
    limit: int = 6,
) -> list[tuple[datetime, datetime]]:
    """First free slots from now on, walking each working day in steps of duration plus buffer."""
    tz = company_zone(settings)
    duration = normalize_duration(duration_minutes) or settings.appointment.slot_minutes
    buffer_minutes = settings.appointment.buffer_minutes
    step = timedelta(minutes=max(duration + buffer_minutes, MIN_DURATION_MINUTES))
    length = timedelta(minutes=duration)

    now_local = as_aware(now).astimezone(tz)
    earliest = now_local + timedelta(minutes=SLOT_LEAD_MINUTES)
    last_day = now_local.date() + timedelta(days=settings.appointment.max_days_ahead)
    horizon = datetime.combine(last_day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    buffer = timedelta(minutes=max(buffer_minutes, 0))
    events = store.blocking_events(
        company_id,
        horizon.astimezone(timezone.utc) + buffer,
        earliest.astimezone(timezone.utc) - buffer,
        open_ended_minutes=DEFAULT_EVENT_MINUTES,
    )

    slots: list[tuple[datetime, datetime]] = []
    for offset in range(settings.appointment.max_days_ahead + 1):
        day = now_local.date() + timedelta(days=offset)
        window = working_window(settings.business.day(WEEKDAYS[day.weekday()]), day, tz)
        if window is None:
            continue
        cursor, day_end = window
        while cursor < earliest:
            cursor += step
        while cursor + length <= day_end:
            if not overlaps(cursor, cursor + length, events, buffer_minutes):
                slots.append((cursor, cursor + length))
                if len(slots) >= limit:
                    return slots
            cursor += step
    return slots


def schedule_lines(settings: CompanySettings) -> list[str]:
    lines = []
    for key in WEEKDAYS:
        day = settings.business.day(key)
        hours = f"{day.start_time}-{day.end_time}" if day.is_open else "day off"
        lines.append(f"  - {key.capitalize()}: {hours}")
    return lines
