"""Timezone normalization for calendar events.

Instants are stored in UTC; each event carries the IANA zone it is displayed and
recurred in. All-day events are floating dates and are never shifted.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..domain import CalendarEvent
from ..errors import ValidationError

STORAGE_ZONE = "UTC"


@lru_cache(maxsize=256)
def resolve_zone(name: str) -> ZoneInfo:
    if not name or not isinstance(name, str):
        raise ValidationError(f"Invalid timezone: {name!r}")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name!r}") from exc


def localize(value: datetime, zone_name: str) -> datetime:
    """Express ``value`` in ``zone_name``; naive values are read as wall time there."""

    zone = resolve_zone(zone_name)
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def to_storage(value: datetime, zone_name: str = STORAGE_ZONE) -> datetime:
    return localize(value, zone_name).astimezone(timezone.utc)


def to_millis(value: datetime) -> int:
    return int(to_storage(value).timestamp() * 1000)


def normalize(event: CalendarEvent, from_zone: str, to_zone: str) -> CalendarEvent:
    if event.all_day or from_zone == to_zone:
        return event
    destination = resolve_zone(to_zone)
    return replace(
        event,
        start=localize(event.start, from_zone).astimezone(destination),
        end=localize(event.end, from_zone).astimezone(destination),
        timezone=to_zone,
    )


def normalize_to(event: CalendarEvent, to_zone: str) -> CalendarEvent:
    """Align ``event`` to ``to_zone`` for display, starting from its own zone."""

    if event.all_day:
        return event
    source_zone = event.timezone or STORAGE_ZONE
    if source_zone != to_zone:
        return normalize(event, source_zone, to_zone)
    return replace(event, start=localize(event.start, to_zone), end=localize(event.end, to_zone))


__all__ = ["STORAGE_ZONE", "localize", "normalize", "normalize_to", "resolve_zone", "to_millis", "to_storage"]
