from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain import CalendarEvent, EventSource, FreeSlot, MeetingSuggestion, RecurrenceException, RecurrenceRule
from ..errors import ValidationError


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str
    title: str
    start: str
    end: str
    timezone: Optional[str] = Field(default=None)
    all_day: bool = Field(default=False)
    description: Optional[str] = Field(default=None)
    location: Optional[str] = Field(default=None)
    color: Optional[str] = Field(default=None)
    categories: List[str] = Field(default_factory=list)
    reminders: List[Dict[str, Any]] = Field(default_factory=list)
    attendees: List[Dict[str, Any]] = Field(default_factory=list)
    source: str
    source_id: Optional[str] = Field(default=None)
    recurrence: Optional[Dict[str, Any]] = Field(default=None)
    exceptions: List[Dict[str, Any]] = Field(default_factory=list)
    is_recurring_instance: bool = Field(default=False)
    original_event_id: Optional[str] = Field(default=None)
    exception_date: Optional[str] = Field(default=None)

    @classmethod
    def from_domain(cls, event: CalendarEvent) -> "EventPayload":
        return cls(**event.to_record())


class EventInput(BaseModel):
    """Event fields accepted from callers; naive instants are read in the user's zone."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = Field(default=None)
    title: str
    start: datetime
    end: datetime
    timezone: Optional[str] = Field(default=None)
    all_day: bool = Field(default=False)
    description: Optional[str] = Field(default=None)
    location: Optional[str] = Field(default=None)
    color: Optional[str] = Field(default=None)
    categories: List[str] = Field(default_factory=list)
    reminders: List[Dict[str, Any]] = Field(default_factory=list)
    attendees: List[Dict[str, Any]] = Field(default_factory=list)
    source: EventSource = Field(default=EventSource.LOCAL)
    source_id: Optional[str] = Field(default=None)
    recurrence: Optional[Dict[str, Any]] = Field(default=None)
    exceptions: List[Dict[str, Any]] = Field(default_factory=list)

    def to_domain(self, user_id: str) -> CalendarEvent:
        try:
            recurrence = RecurrenceRule.from_record(self.recurrence) if self.recurrence else None
            exceptions = [RecurrenceException.from_record(item) for item in self.exceptions]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid recurrence payload: {exc}") from exc
        return CalendarEvent(
            id=self.id or "",
            user_id=user_id,
            title=self.title,
            start=self.start,
            end=self.end,
            timezone=self.timezone,
            all_day=self.all_day,
            description=self.description,
            location=self.location,
            color=self.color,
            categories=list(self.categories),
            reminders=list(self.reminders),
            attendees=list(self.attendees),
            source=self.source,
            source_id=self.source_id,
            recurrence=recurrence,
            exceptions=exceptions,
        )


class SlotPayload(BaseModel):
    start: str
    end: str
    duration_minutes: int

    @classmethod
    def from_domain(cls, slot: FreeSlot) -> "SlotPayload":
        return cls(**slot.to_record())


class MeetingPayload(BaseModel):
    slots: List[SlotPayload] = Field(default_factory=list)
    checked_participants: List[str] = Field(default_factory=list)
    assumed_available: List[str] = Field(default_factory=list)
    partial: bool = Field(default=False)

    @classmethod
    def from_domain(cls, suggestion: MeetingSuggestion) -> "MeetingPayload":
        return cls(
            slots=[SlotPayload.from_domain(slot) for slot in suggestion.slots],
            checked_participants=list(suggestion.checked_participants),
            assumed_available=list(suggestion.assumed_available),
            partial=suggestion.is_partial,
        )


class WindowRequest(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    timeout: Optional[float] = Field(default=None)


class CreateEventRequest(BaseModel):
    user_id: str
    event: EventInput
    local_only: bool = Field(default=False)


class UpdateEventRequest(BaseModel):
    user_id: str
    event: EventInput


class DeleteEventRequest(BaseModel):
    user_id: str
    event_id: str
    delete_all_instances: bool = Field(default=False)


class SearchRequest(BaseModel):
    user_id: str
    query: str


class FreeSlotsRequest(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    min_duration_minutes: int = Field(default=30)
    work_start_hour: Optional[int] = Field(default=None)
    work_end_hour: Optional[int] = Field(default=None)


class ConflictsRequest(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    buffer_minutes: int = Field(default=0)
    exclude_event_id: Optional[str] = Field(default=None)


class MeetingRequest(BaseModel):
    user_ids: List[str]
    start: datetime
    end: datetime
    duration_minutes: int = Field(default=30)
    work_start_hour: Optional[int] = Field(default=None)
    work_end_hour: Optional[int] = Field(default=None)


class SyncRequest(BaseModel):
    user_id: str
