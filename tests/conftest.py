"""Shared fixtures: a state file under tmp_path and an in-memory provider."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import pytest

from zerocal.config import (
    AppSettings,
    AvailabilitySettings,
    ConcurrencySettings,
    ProviderSettings,
    StorageSettings,
    SupabaseSettings,
    SyncSettings,
)
from zerocal.data import StateStore
from zerocal.domain import CalendarEvent, EventSource, SyncCredential
from zerocal.errors import TokenRejected
from zerocal.providers import ExternalProviderClient, ProviderResult
from zerocal.services import AvailabilityService, CalendarService, ServiceContext

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
USER = "user-1"


def build_event(
    event_id: str,
    start: datetime,
    end: datetime,
    *,
    user_id: str = USER,
    title: Optional[str] = None,
    **extra,
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        user_id=user_id,
        title=title or event_id,
        start=start,
        end=end,
        **extra,
    )


class FakeProvider(ExternalProviderClient):
    """In-memory provider keyed by external event id."""

    name = "fake"

    def __init__(self) -> None:
        self.events: Dict[str, CalendarEvent] = {}
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.barrier: Optional[threading.Barrier] = None
        self.rejected_tokens: Set[str] = set()
        self.refresh_calls = 0
        self.created: List[CalendarEvent] = []
        self.deleted: List[str] = []
        self._counter = 0
        self._refresh_lock = threading.Lock()

    def _check(self, credential: Optional[SyncCredential] = None) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if credential is not None and credential.access_token in self.rejected_tokens:
            raise TokenRejected("token rejected")

    def seed(self, native_id: str, start: datetime, end: datetime, **extra) -> CalendarEvent:
        event = CalendarEvent(
            id=f"google_{native_id}",
            user_id="",
            title=extra.pop("title", native_id),
            start=start,
            end=end,
            source=EventSource.EXTERNAL,
            source_id=native_id,
            **extra,
        )
        self.events[event.id] = event
        return event

    def ensure_fresh(self, credential: SyncCredential) -> ProviderResult[SyncCredential]:
        return ProviderResult(credential, credential)

    def refresh(self, credential: SyncCredential) -> ProviderResult[SyncCredential]:
        with self._refresh_lock:
            self.refresh_calls += 1
            renewed = replace(credential, access_token=f"renewed-{self.refresh_calls}")
        return ProviderResult(renewed, renewed)

    def list_events(self, credential, start, end):
        if self.gate is not None:
            self.gate.wait(5)
        if self.barrier is not None and credential.access_token in self.rejected_tokens:
            self.barrier.wait(5)
        self._check(credential)
        items = [replace(event) for event in self.events.values() if event.start < end and start < event.end]
        items.sort(key=lambda event: event.score)
        return ProviderResult(items, credential)

    def create_event(self, credential, event):
        self._check(credential)
        self._counter += 1
        native = f"n{self._counter}"
        created = replace(
            event,
            id=f"google_{native}",
            source=EventSource.EXTERNAL,
            source_id=native,
            categories=[],
            reminders=[],
        )
        self.events[created.id] = created
        self.created.append(created)
        return ProviderResult(replace(created), credential)

    def update_event(self, credential, event):
        self._check(credential)
        if event.id not in self.events:
            return ProviderResult(None, credential)
        updated = replace(event, source=EventSource.EXTERNAL, categories=[], reminders=[])
        self.events[event.id] = updated
        return ProviderResult(replace(updated), credential)

    def delete_event(self, credential, event_id):
        self._check(credential)
        self.deleted.append(event_id)
        return ProviderResult(self.events.pop(event_id, None) is not None, credential)


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        provider=ProviderSettings(client_id="client", client_secret="secret", max_retries=2, backoff_seconds=0),
        sync=SyncSettings(),
        concurrency=ConcurrencySettings(io_workers=2, expansion_workers=2, io_timeout_seconds=5),
        availability=AvailabilitySettings(),
        storage=StorageSettings(state_file=tmp_path / "state.json"),
        supabase=SupabaseSettings(),
    )


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state.json")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def context(settings, store, provider):
    ctx = ServiceContext(settings=settings, store=store, provider=provider, clock=lambda: NOW)
    yield ctx
    ctx.close()


@pytest.fixture
def service(context) -> CalendarService:
    return CalendarService(context)


@pytest.fixture
def availability(service) -> AvailabilityService:
    return AvailabilityService(service)


@pytest.fixture
def credential() -> SyncCredential:
    return SyncCredential(access_token="access", refresh_token="refresh", expires_at=4_000_000_000)


@pytest.fixture
def connected(context, credential) -> SyncCredential:
    context.credentials.save(USER, credential)
    return credential
