from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from ..domain import CalendarEvent, SyncCredential

T = TypeVar("T")


@dataclass(slots=True)
class ProviderResult(Generic[T]):
    """Value returned by a provider call plus the credential it ended up using.

    The credential differs from the one passed in whenever the call had to
    refresh the access token, so callers persist it when it changed.
    """

    value: T
    credential: SyncCredential


class ExternalProviderClient(abc.ABC):
    """Interface implemented by external calendar providers."""

    name: str = "external"

    @abc.abstractmethod
    def ensure_fresh(self, credential: SyncCredential) -> ProviderResult[SyncCredential]:
        """Refresh ``credential`` when it is within the refresh skew of expiring."""

    @abc.abstractmethod
    def refresh(self, credential: SyncCredential) -> ProviderResult[SyncCredential]:
        """Renew the access token unconditionally, after the provider rejected it."""

    @abc.abstractmethod
    def list_events(
        self,
        credential: SyncCredential,
        start: datetime,
        end: datetime,
    ) -> ProviderResult[List[CalendarEvent]]:
        ...

    @abc.abstractmethod
    def create_event(self, credential: SyncCredential, event: CalendarEvent) -> ProviderResult[CalendarEvent]:
        ...

    @abc.abstractmethod
    def update_event(
        self,
        credential: SyncCredential,
        event: CalendarEvent,
    ) -> ProviderResult[Optional[CalendarEvent]]:
        """Replace ``event`` upstream; the value is ``None`` when it no longer exists."""

    @abc.abstractmethod
    def delete_event(self, credential: SyncCredential, event_id: str) -> ProviderResult[bool]:
        ...

    def close(self) -> None:
        return None
