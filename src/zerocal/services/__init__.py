"""Application services orchestrating data access and domain logic."""

from __future__ import annotations

from .availability import AvailabilityService
from .calendar import CalendarService, ReconcileResult, SyncReport
from .context import ServiceContext
from .locks import UserLocks

__all__ = [
    "AvailabilityService",
    "CalendarService",
    "ReconcileResult",
    "ServiceContext",
    "SyncReport",
    "UserLocks",
]
