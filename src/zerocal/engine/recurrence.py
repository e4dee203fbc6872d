"""Recurrence expansion with per-date exception overlays.

Masters own a :class:`RecurrenceRule` and a list of exceptions. Instances are
never stored: they are materialized here for a query window and carry an id
derived from the master id and the occurrence date in the rule's zone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule

from ..domain import CalendarEvent, ExceptionStatus, Frequency, RecurrenceException, RecurrenceRule
from ..domain.models import OVERRIDABLE_FIELDS, WEEKDAY_CODES, parse_datetime
from ..errors import ValidationError
from .timezones import STORAGE_ZONE, localize, resolve_zone, to_storage

logger = logging.getLogger(__name__)

_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}
_WEEKDAYS = dict(zip(WEEKDAY_CODES, (MO, TU, WE, TH, FR, SA, SU)))
_INSTANCE_ID = re.compile(r"^(?P<master>.+)_(?P<stamp>\d{8})$")


def validate_rule(rule: RecurrenceRule) -> None:
    if rule.interval < 1:
        raise ValidationError("interval must be a positive integer")
    if rule.count is not None and rule.until is not None:
        raise ValidationError("count and until are mutually exclusive")
    if rule.count is not None and rule.count < 1:
        raise ValidationError("count must be a positive integer")
    if rule.week_start not in _WEEKDAYS:
        raise ValidationError(f"Unknown week start: {rule.week_start!r}")
    for entry in rule.by_day:
        if entry.day not in _WEEKDAYS:
            raise ValidationError(f"Unknown weekday: {entry.day!r}")
        if entry.ordinal is None:
            continue
        if rule.frequency not in (Frequency.MONTHLY, Frequency.YEARLY):
            raise ValidationError("weekday ordinals only apply to monthly or yearly rules")
        if entry.ordinal == 0 or abs(entry.ordinal) > 53:
            raise ValidationError(f"Weekday ordinal out of range: {entry.ordinal}")
    if any(value == 0 or abs(value) > 31 for value in rule.by_month_day):
        raise ValidationError("by_month_day values must be within 1..31 or -31..-1")
    if any(value < 1 or value > 12 for value in rule.by_month):
        raise ValidationError("by_month values must be within 1..12")
    if any(value == 0 or abs(value) > 366 for value in rule.by_set_pos):
        raise ValidationError("by_set_pos values must be within 1..366 or -366..-1")


def reference_zone(master: CalendarEvent) -> str:
    # All-day series float, so their dates are read in the storage zone.
    if master.all_day:
        return STORAGE_ZONE
    return master.timezone or STORAGE_ZONE


def build_rule(rule: RecurrenceRule, dtstart: datetime) -> rrule:
    validate_rule(rule)
    kwargs: Dict[str, Any] = {
        "dtstart": dtstart,
        "interval": rule.interval,
        "wkst": _WEEKDAYS[rule.week_start],
    }
    if rule.count is not None:
        kwargs["count"] = rule.count
    if rule.until is not None:
        until = rule.until if rule.until.tzinfo else rule.until.replace(tzinfo=timezone.utc)
        kwargs["until"] = until.astimezone(dtstart.tzinfo)
    if rule.by_day:
        kwargs["byweekday"] = [
            _WEEKDAYS[entry.day](entry.ordinal) if entry.ordinal else _WEEKDAYS[entry.day]
            for entry in rule.by_day
        ]
    if rule.by_month_day:
        kwargs["bymonthday"] = list(rule.by_month_day)
    if rule.by_month:
        kwargs["bymonth"] = list(rule.by_month)
    if rule.by_set_pos:
        kwargs["bysetpos"] = list(rule.by_set_pos)
    return rrule(_FREQUENCIES[rule.frequency], **kwargs)


def instance_id(master_id: str, day: date) -> str:
    return f"{master_id}_{day:%Y%m%d}"


def parse_instance_id(event_id: str) -> Optional[Tuple[str, date]]:
    """Split a derived instance id into ``(master_id, occurrence_date)``."""

    match = _INSTANCE_ID.match(event_id or "")
    if not match:
        return None
    try:
        day = datetime.strptime(match.group("stamp"), "%Y%m%d").date()
    except ValueError:
        return None
    return match.group("master"), day


def _overlaps(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    return start < window_end and window_start < end


def _occurrences(master: CalendarEvent, window_start: datetime, window_end: datetime) -> List[datetime]:
    assert master.recurrence is not None
    dtstart = localize(master.start, reference_zone(master))
    return build_rule(master.recurrence, dtstart).between(window_start, window_end, inc=True)


_NON_NULLABLE = frozenset({"title", "start", "end", "all_day", "categories", "reminders", "attendees"})


def _apply_overrides(instance: CalendarEvent, overrides: Dict[str, Any], zone_name: str) -> CalendarEvent:
    values: Dict[str, Any] = {}
    for key in OVERRIDABLE_FIELDS:
        if key not in overrides:
            continue
        value = overrides[key]
        if value is None and key in _NON_NULLABLE:
            continue
        values[key] = list(value) if isinstance(value, list) else value
    if "start" in values:
        values["start"] = to_storage(parse_datetime(values["start"]), zone_name)
    if "end" in values:
        values["end"] = to_storage(parse_datetime(values["end"]), zone_name)
    elif "start" in values:
        values["end"] = values["start"] + instance.duration
    return replace(instance, **values)


def _materialize(
    master: CalendarEvent,
    occurrence: datetime,
    exception: Optional[RecurrenceException],
) -> CalendarEvent:
    start = occurrence.astimezone(timezone.utc)
    day = occurrence.date()
    instance = replace(
        master,
        id=instance_id(master.id, day),
        start=start,
        end=start + master.duration,
        categories=list(master.categories),
        reminders=list(master.reminders),
        attendees=list(master.attendees),
        recurrence=None,
        exceptions=[],
        is_recurring_instance=True,
        original_event_id=master.id,
        exception_date=None,
    )
    if exception is not None and exception.status is ExceptionStatus.MODIFIED:
        instance = _apply_overrides(instance, exception.overrides, reference_zone(master))
        instance.exception_date = exception.date
    return instance


def expand(master: CalendarEvent, window_start: datetime, window_end: datetime) -> List[CalendarEvent]:
    """Materialize the occurrences of ``master`` starting within the window."""

    window_start = to_storage(window_start)
    window_end = to_storage(window_end)
    if master.recurrence is None:
        start = to_storage(master.start)
        end = to_storage(master.end)
        return [master] if _overlaps(start, end, window_start, window_end) else []

    instances: List[CalendarEvent] = []
    for occurrence in _occurrences(master, window_start, window_end):
        exception = master.find_exception(occurrence.date())
        if exception is not None and exception.status is ExceptionStatus.CANCELLED:
            continue
        instances.append(_materialize(master, occurrence, exception))
    logger.debug("Expanded %s into %d instance(s)", master.id, len(instances))
    return instances


def _day_bounds(master: CalendarEvent, day: date) -> Tuple[datetime, datetime]:
    zone = resolve_zone(reference_zone(master))
    return datetime.combine(day, time.min, tzinfo=zone), datetime.combine(day, time.max, tzinfo=zone)


def is_occurrence(master: CalendarEvent, day: date) -> bool:
    """Whether the rule itself yields an occurrence on ``day``, ignoring exceptions."""

    if master.recurrence is None:
        return False
    lower, upper = _day_bounds(master, day)
    return any(item.date() == day for item in _occurrences(master, lower, upper))


def occurrence_on(master: CalendarEvent, day: date) -> Optional[CalendarEvent]:
    lower, upper = _day_bounds(master, day)
    wanted = instance_id(master.id, day)
    for instance in expand(master, lower, upper):
        if instance.id == wanted:
            return instance
    return None


__all__ = [
    "build_rule",
    "expand",
    "instance_id",
    "is_occurrence",
    "occurrence_on",
    "parse_instance_id",
    "reference_zone",
    "validate_rule",
]
