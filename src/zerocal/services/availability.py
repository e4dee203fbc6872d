from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from ..domain import CalendarEvent, FreeSlot, MeetingSuggestion
from ..engine import find_conflicts, find_free_slots, find_optimal_meeting_time
from ..errors import LedgerUnavailable, ValidationError
from .calendar import CalendarService

logger = logging.getLogger(__name__)

# Occurrences are selected by start, so look back far enough to catch ones still running.
_LOOKBEHIND = timedelta(days=1)


@dataclass(slots=True)
class AvailabilityService:
    calendar: CalendarService

    def _hours(self, work_start_hour: Optional[int], work_end_hour: Optional[int]) -> tuple[int, int]:
        settings = self.calendar.context.settings.availability
        start = settings.work_start_hour if work_start_hour is None else work_start_hour
        end = settings.work_end_hour if work_end_hour is None else work_end_hour
        return start, end

    def find_free_slots(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        min_duration_minutes: int = 30,
        *,
        work_start_hour: Optional[int] = None,
        work_end_hour: Optional[int] = None,
    ) -> List[FreeSlot]:
        zone, lower, upper = self.calendar.window(user_id, start, end)
        opens, closes = self._hours(work_start_hour, work_end_hour)
        events = self.calendar.get_events(user_id, lower - _LOOKBEHIND, upper)
        return find_free_slots(events, lower, upper, min_duration_minutes, opens, closes, zone)

    def find_conflicts(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        buffer_minutes: int = 0,
        *,
        exclude_event_id: Optional[str] = None,
    ) -> bool:
        zone, lower, upper = self.calendar.window(user_id, start, end)
        if buffer_minutes < 0:
            raise ValidationError("buffer_minutes must not be negative")
        buffer = timedelta(minutes=buffer_minutes)
        events = self.calendar.get_events(user_id, lower - buffer - _LOOKBEHIND, upper + buffer)
        return find_conflicts(
            events, lower, upper, buffer_minutes, exclude_event_id=exclude_event_id, timezone=zone
        )

    def _participant_events(self, user_id: str, lower: datetime, upper: datetime) -> Optional[List[CalendarEvent]]:
        if not self.calendar.context.profiles.exists(user_id):
            logger.info("No profile for %s, assuming available", user_id)
            return None
        try:
            return self.calendar.get_events(user_id, lower - _LOOKBEHIND, upper)
        except LedgerUnavailable as exc:
            logger.warning("Could not read calendar for %s, assuming available: %s", user_id, exc)
            return None

    def find_meeting_time(
        self,
        user_ids: Iterable[str],
        start: datetime,
        end: datetime,
        duration_minutes: int = 30,
        *,
        work_start_hour: Optional[int] = None,
        work_end_hour: Optional[int] = None,
    ) -> MeetingSuggestion:
        """Common free slots across ``user_ids``, evaluated in the first participant's zone."""

        participants: Sequence[str] = list(dict.fromkeys(user_ids))
        if not participants:
            raise ValidationError("at least one participant is required")
        zone, lower, upper = self.calendar.window(participants[0], start, end)
        opens, closes = self._hours(work_start_hour, work_end_hour)
        calendars: Dict[str, Optional[List[CalendarEvent]]] = {
            user_id: self._participant_events(user_id, lower, upper) for user_id in participants
        }
        return find_optimal_meeting_time(calendars, lower, upper, duration_minutes, opens, closes, zone)


__all__ = ["AvailabilityService"]
