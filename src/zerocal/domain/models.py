from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .enums import EventSource, ExceptionStatus, Frequency

WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

_WEEKDAY_PATTERN = re.compile(r"^(?P<ordinal>[+-]?\d{1,2})?(?P<day>[A-Za-z]{2})$")

# Fields a modified exception may override on a single occurrence.
OVERRIDABLE_FIELDS = (
    "title",
    "description",
    "location",
    "start",
    "end",
    "all_day",
    "color",
    "categories",
    "reminders",
    "attendees",
)


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"Unsupported datetime value: {value!r}")


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError(f"Unsupported date value: {value!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(slots=True)
class WeekdayRule:
    """A weekday constraint, optionally with an ordinal such as ``2TU`` or ``-1FR``."""

    day: str
    ordinal: Optional[int] = None

    @classmethod
    def parse(cls, value: Any) -> "WeekdayRule":
        if isinstance(value, WeekdayRule):
            return value
        if isinstance(value, dict):
            ordinal = value.get("ordinal")
            return cls(day=str(value["day"]).upper(), ordinal=int(ordinal) if ordinal is not None else None)
        match = _WEEKDAY_PATTERN.match(str(value).strip())
        if not match:
            raise ValueError(f"Unsupported weekday value: {value!r}")
        ordinal = match.group("ordinal")
        return cls(day=match.group("day").upper(), ordinal=int(ordinal) if ordinal else None)

    def to_value(self) -> str:
        return f"{self.ordinal}{self.day}" if self.ordinal else self.day


@dataclass(slots=True)
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_day: List[WeekdayRule] = field(default_factory=list)
    by_month_day: List[int] = field(default_factory=list)
    by_month: List[int] = field(default_factory=list)
    by_set_pos: List[int] = field(default_factory=list)
    week_start: str = "MO"

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RecurrenceRule":
        until = record.get("until")
        count = record.get("count")
        return cls(
            frequency=Frequency(str(record["frequency"]).lower()),
            interval=int(record.get("interval", 1)),
            count=int(count) if count is not None else None,
            until=parse_datetime(until) if until else None,
            by_day=[WeekdayRule.parse(item) for item in record.get("by_day") or []],
            by_month_day=[int(item) for item in record.get("by_month_day") or []],
            by_month=[int(item) for item in record.get("by_month") or []],
            by_set_pos=[int(item) for item in record.get("by_set_pos") or []],
            week_start=str(record.get("week_start") or "MO").upper(),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "count": self.count,
            "until": _iso(self.until),
            "by_day": [item.to_value() for item in self.by_day],
            "by_month_day": list(self.by_month_day),
            "by_month": list(self.by_month),
            "by_set_pos": list(self.by_set_pos),
            "week_start": self.week_start,
        }


@dataclass(slots=True)
class RecurrenceException:
    """Per-date overlay keyed by the original occurrence date."""

    date: date
    status: ExceptionStatus
    overrides: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RecurrenceException":
        return cls(
            date=parse_date(record["date"]),
            status=ExceptionStatus(record.get("status") or ExceptionStatus.MODIFIED),
            overrides=dict(record.get("overrides") or {}),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "status": self.status.value,
            "overrides": dict(self.overrides),
        }


@dataclass(slots=True)
class CalendarEvent:
    id: str
    user_id: str
    title: str
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    color: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    reminders: List[Dict[str, Any]] = field(default_factory=list)
    attendees: List[Dict[str, Any]] = field(default_factory=list)
    source: EventSource = EventSource.LOCAL
    source_id: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None
    exceptions: List[RecurrenceException] = field(default_factory=list)
    is_recurring_instance: bool = False
    original_event_id: Optional[str] = None
    exception_date: Optional[date] = None

    @property
    def is_master(self) -> bool:
        return self.recurrence is not None and not self.is_recurring_instance

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def score(self) -> int:
        """Ledger ordering key: start as epoch milliseconds."""
        start = self.start if self.start.tzinfo else self.start.replace(tzinfo=timezone.utc)
        return int(start.timestamp() * 1000)

    def find_exception(self, day: date) -> Optional[RecurrenceException]:
        for entry in self.exceptions:
            if entry.date == day:
                return entry
        return None

    def upsert_exception(self, exception: RecurrenceException) -> None:
        self.exceptions = [entry for entry in self.exceptions if entry.date != exception.date]
        self.exceptions.append(exception)
        self.exceptions.sort(key=lambda entry: entry.date)

    def matches(self, query: str) -> bool:
        needle = query.lower()
        haystacks = (self.title, self.description, self.location)
        return any(text and needle in text.lower() for text in haystacks)

    @classmethod
    def from_record(cls, record: Dict[str, Any], *, user_id: Optional[str] = None) -> "CalendarEvent":
        recurrence = record.get("recurrence")
        exception_date = record.get("exception_date")
        return cls(
            id=str(record.get("id") or ""),
            user_id=str(user_id or record.get("user_id") or ""),
            title=str(record.get("title") or ""),
            start=parse_datetime(record["start"]),
            end=parse_datetime(record["end"]),
            timezone=record.get("timezone"),
            all_day=bool(record.get("all_day", False)),
            description=record.get("description"),
            location=record.get("location"),
            color=record.get("color"),
            categories=list(record.get("categories") or []),
            reminders=list(record.get("reminders") or []),
            attendees=list(record.get("attendees") or []),
            source=EventSource(record.get("source") or EventSource.LOCAL),
            source_id=record.get("source_id"),
            recurrence=RecurrenceRule.from_record(recurrence) if recurrence else None,
            exceptions=[RecurrenceException.from_record(item) for item in record.get("exceptions") or []],
            is_recurring_instance=bool(record.get("is_recurring_instance", False)),
            original_event_id=record.get("original_event_id"),
            exception_date=parse_date(exception_date) if exception_date else None,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "timezone": self.timezone,
            "all_day": self.all_day,
            "description": self.description,
            "location": self.location,
            "color": self.color,
            "categories": list(self.categories),
            "reminders": list(self.reminders),
            "attendees": list(self.attendees),
            "source": self.source.value,
            "source_id": self.source_id,
            "recurrence": self.recurrence.to_record() if self.recurrence else None,
            "exceptions": [entry.to_record() for entry in self.exceptions],
            "is_recurring_instance": self.is_recurring_instance,
            "original_event_id": self.original_event_id,
            "exception_date": self.exception_date.isoformat() if self.exception_date else None,
        }


@dataclass(slots=True)
class SyncCredential:
    access_token: str
    refresh_token: str
    expires_at: int
    provider: str = "google"

    @property
    def is_usable(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def is_expired(self, now: float, *, skew_seconds: int = 300) -> bool:
        return now >= self.expires_at - skew_seconds

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SyncCredential":
        return cls(
            access_token=str(record.get("access_token") or ""),
            refresh_token=str(record.get("refresh_token") or ""),
            expires_at=int(record.get("expires_at") or 0),
            provider=str(record.get("provider") or "google"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "provider": self.provider,
        }


@dataclass(frozen=True, slots=True)
class FreeSlot:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def to_record(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


@dataclass(slots=True)
class MeetingSuggestion:
    """Free slots common to the participants whose calendars could be read."""

    slots: List[FreeSlot]
    checked_participants: List[str]
    assumed_available: List[str]

    @property
    def is_partial(self) -> bool:
        return bool(self.assumed_available)
