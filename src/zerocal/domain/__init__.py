"""Domain models for calendar resolution."""

from __future__ import annotations

from .enums import EventSource, ExceptionStatus, Frequency
from .models import (
    CalendarEvent,
    FreeSlot,
    MeetingSuggestion,
    RecurrenceException,
    RecurrenceRule,
    SyncCredential,
    WeekdayRule,
)

__all__ = [
    "CalendarEvent",
    "EventSource",
    "ExceptionStatus",
    "FreeSlot",
    "Frequency",
    "MeetingSuggestion",
    "RecurrenceException",
    "RecurrenceRule",
    "SyncCredential",
    "WeekdayRule",
]
