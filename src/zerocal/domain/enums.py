from __future__ import annotations

from enum import Enum


class EventSource(str, Enum):
    LOCAL = "local"
    EXTERNAL = "external"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ExceptionStatus(str, Enum):
    CANCELLED = "cancelled"
    MODIFIED = "modified"
