from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from ..services import AvailabilityService, CalendarService, ServiceContext


@dataclass(slots=True)
class ApiState:
    context: ServiceContext = field(default_factory=ServiceContext)
    calendar: CalendarService = field(init=False)
    availability: AvailabilityService = field(init=False)

    def __post_init__(self) -> None:
        self.calendar = CalendarService(self.context)
        self.availability = AvailabilityService(self.calendar)

    def close(self) -> None:
        self.context.close()


@lru_cache(maxsize=1)
def default_state() -> ApiState:
    return ApiState()
