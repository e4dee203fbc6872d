from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from ..domain import CalendarEvent, FreeSlot, MeetingSuggestion
from ..errors import ValidationError
from .timezones import resolve_zone, to_storage

Interval = Tuple[datetime, datetime]


def _date_range(start: date, end: date) -> Iterable[date]:
    delta = (end - start).days
    for index in range(delta + 1):
        yield start + timedelta(days=index)


def _event_bounds(event: CalendarEvent, zone: ZoneInfo) -> Interval:
    if event.all_day:
        # Floating dates occupy whole local days in the zone being examined.
        start = datetime.combine(event.start.date(), time.min, tzinfo=zone)
        end = datetime.combine(event.end.date(), time.min, tzinfo=zone)
        if end <= start:
            end = start + timedelta(days=1)
        return start, end
    return to_storage(event.start), to_storage(event.end)


def _validate_hours(work_start_hour: int, work_end_hour: int) -> None:
    if not 0 <= work_start_hour < work_end_hour <= 24:
        raise ValidationError("work hours must satisfy 0 <= start < end <= 24")


def _day_window(day: date, zone: ZoneInfo, work_start_hour: int, work_end_hour: int) -> Interval:
    opens = datetime.combine(day, time(hour=work_start_hour), tzinfo=zone)
    if work_end_hour == 24:
        closes = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    else:
        closes = datetime.combine(day, time(hour=work_end_hour), tzinfo=zone)
    return opens, closes


def _busy_intervals(events: Sequence[CalendarEvent], zone: ZoneInfo) -> List[Interval]:
    return sorted(_event_bounds(event, zone) for event in events)


def _gaps(busy: Sequence[Interval], opens: datetime, closes: datetime, minimum: timedelta) -> List[FreeSlot]:
    slots: List[FreeSlot] = []
    cursor = opens
    for start, end in busy:
        if end <= opens or start >= closes:
            continue
        if start - cursor >= minimum:
            slots.append(FreeSlot(start=cursor, end=start))
        cursor = max(cursor, min(end, closes))
    if closes - cursor >= minimum:
        slots.append(FreeSlot(start=cursor, end=closes))
    return slots


def _free_slots_for_busy(
    busy: Sequence[Interval],
    window_start: datetime,
    window_end: datetime,
    min_duration_minutes: int,
    work_start_hour: int,
    work_end_hour: int,
    timezone: str,
) -> List[FreeSlot]:
    _validate_hours(work_start_hour, work_end_hour)
    if min_duration_minutes <= 0:
        raise ValidationError("min_duration_minutes must be positive")
    zone = resolve_zone(timezone)
    lower = to_storage(window_start)
    upper = to_storage(window_end)
    if upper <= lower:
        return []
    minimum = timedelta(minutes=min_duration_minutes)

    slots: List[FreeSlot] = []
    for day in _date_range(lower.astimezone(zone).date(), upper.astimezone(zone).date()):
        opens, closes = _day_window(day, zone, work_start_hour, work_end_hour)
        opens = max(opens, lower.astimezone(zone))
        closes = min(closes, upper.astimezone(zone))
        if opens >= closes:
            continue
        slots.extend(_gaps(busy, opens, closes, minimum))
    return slots


def find_free_slots(
    events: Sequence[CalendarEvent],
    window_start: datetime,
    window_end: datetime,
    min_duration_minutes: int,
    work_start_hour: int = 9,
    work_end_hour: int = 17,
    timezone: str = "UTC",
) -> List[FreeSlot]:
    """Return every gap of at least ``min_duration_minutes`` inside each day's working hours.

    Days are cut in ``timezone``; each day's working window is intersected with
    ``[window_start, window_end]`` and the gaps between the events overlapping it
    become slots spanning the whole gap.
    """

    zone = resolve_zone(timezone)
    busy = _busy_intervals(events, zone)
    return _free_slots_for_busy(
        busy, window_start, window_end, min_duration_minutes, work_start_hour, work_end_hour, timezone
    )


def find_conflicts(
    events: Sequence[CalendarEvent],
    candidate_start: datetime,
    candidate_end: datetime,
    buffer_minutes: int = 0,
    *,
    exclude_event_id: Optional[str] = None,
    timezone: str = "UTC",
) -> bool:
    if buffer_minutes < 0:
        raise ValidationError("buffer_minutes must not be negative")
    buffer = timedelta(minutes=buffer_minutes)
    lower = to_storage(candidate_start, timezone) - buffer
    upper = to_storage(candidate_end, timezone) + buffer
    zone = resolve_zone(timezone)
    for event in events:
        if exclude_event_id and event.id == exclude_event_id:
            continue
        start, end = _event_bounds(event, zone)
        if lower < end and start < upper:
            return True
    return False


def find_optimal_meeting_time(
    calendars: Mapping[str, Optional[Sequence[CalendarEvent]]],
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    work_start_hour: int = 9,
    work_end_hour: int = 17,
    timezone: str = "UTC",
) -> MeetingSuggestion:
    """Find slots free for every participant whose calendar is known.

    A ``None`` calendar marks a participant that could not be checked; they are
    reported as assumed available rather than silently treated as free.
    """

    zone = resolve_zone(timezone)
    checked = sorted(name for name, events in calendars.items() if events is not None)
    assumed = sorted(name for name, events in calendars.items() if events is None)
    busy: List[Interval] = []
    for name in checked:
        busy.extend(_busy_intervals(calendars[name] or [], zone))
    busy.sort()
    slots = _free_slots_for_busy(
        busy, window_start, window_end, duration_minutes, work_start_hour, work_end_hour, timezone
    )
    return MeetingSuggestion(slots=slots, checked_participants=checked, assumed_available=assumed)


__all__ = ["find_conflicts", "find_free_slots", "find_optimal_meeting_time"]
