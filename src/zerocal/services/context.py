from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..config import AppSettings, get_settings
from ..data import StateStore, SupabaseGateway
from ..data.repositories import (
    CredentialRepository,
    EventLedger,
    EventMetadataRepository,
    JsonEventLedger,
    ProfileRepository,
    SupabaseEventLedger,
    SyncLinkRepository,
)
from ..providers import ExternalProviderClient, GoogleCalendarClient
from .locks import UserLocks


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ServiceContext:
    """Aggregate root for services to share settings, stores, the provider and pools."""

    settings: AppSettings = field(default_factory=get_settings)
    store: Optional[StateStore] = None
    provider: Optional[ExternalProviderClient] = None
    clock: Callable[[], datetime] = _utc_now
    gateway: SupabaseGateway = field(init=False)
    ledger: EventLedger = field(init=False)
    mirror: JsonEventLedger = field(init=False)
    credentials: CredentialRepository = field(init=False)
    metadata: EventMetadataRepository = field(init=False)
    links: SyncLinkRepository = field(init=False)
    profiles: ProfileRepository = field(init=False)
    locks: UserLocks = field(init=False)
    _io_executor: Optional[ThreadPoolExecutor] = field(init=False, default=None)
    _expansion_executor: Optional[ThreadPoolExecutor] = field(init=False, default=None)
    _ledger_executor: Optional[ThreadPoolExecutor] = field(init=False, default=None)

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = StateStore(self.settings.storage.state_file)
        if self.provider is None:
            self.provider = GoogleCalendarClient(self.settings.provider)
        self.gateway = SupabaseGateway(self.settings.supabase)
        if self.settings.storage.backend == "supabase":
            self.ledger = SupabaseEventLedger(gateway=self.gateway, table_name=self.settings.storage.events_table)
        else:
            self.ledger = JsonEventLedger(store=self.store, section="ledger")
        self.mirror = JsonEventLedger(store=self.store, section="mirror")
        self.credentials = CredentialRepository(store=self.store)
        self.metadata = EventMetadataRepository(store=self.store)
        self.links = SyncLinkRepository(store=self.store)
        self.profiles = ProfileRepository(store=self.store)
        self.locks = UserLocks()

    @property
    def io_executor(self) -> ThreadPoolExecutor:
        if self._io_executor is None:
            self._io_executor = ThreadPoolExecutor(
                max_workers=max(1, self.settings.concurrency.io_workers),
                thread_name_prefix="zerocal-io",
            )
        return self._io_executor

    @property
    def ledger_executor(self) -> ThreadPoolExecutor:
        """Pool for ledger reads, kept apart from provider fetches that may hang."""

        if self._ledger_executor is None:
            self._ledger_executor = ThreadPoolExecutor(
                max_workers=max(1, self.settings.concurrency.ledger_workers),
                thread_name_prefix="zerocal-ledger",
            )
        return self._ledger_executor

    @property
    def expansion_executor(self) -> ThreadPoolExecutor:
        if self._expansion_executor is None:
            self._expansion_executor = ThreadPoolExecutor(
                max_workers=max(1, self.settings.concurrency.expansion_workers),
                thread_name_prefix="zerocal-expand",
            )
        return self._expansion_executor

    def close(self) -> None:
        for executor in (self._io_executor, self._ledger_executor, self._expansion_executor):
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)
        self._io_executor = None
        self._ledger_executor = None
        self._expansion_executor = None
        if self.provider is not None:
            self.provider.close()
