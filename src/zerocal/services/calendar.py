"""Merge local and external calendars into one ordered, deduplicated view.

Reads pull the provider window and the local ledger concurrently, expand
recurring masters for the window, align everything to the user's display zone
and merge. Reads prefer stale mirror data to none; writes that cannot reach the
provider are kept as local events.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import uuid4

from ..domain import CalendarEvent, EventSource, ExceptionStatus, RecurrenceException, SyncCredential
from ..domain.models import OVERRIDABLE_FIELDS
from ..engine import (
    expand,
    is_occurrence,
    normalize_to,
    occurrence_on,
    parse_instance_id,
    resolve_zone,
    to_millis,
    validate_rule,
)
from ..engine.timezones import localize, to_storage
from ..errors import (
    AuthExpired,
    ExternalNotConnected,
    LedgerUnavailable,
    ProviderError,
    TokenRejected,
    ValidationError,
)
from ..providers import ProviderResult
from .context import ServiceContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

STATUS_LIVE = "live"
STATUS_CACHED = "cached"
STATUS_DISCONNECTED = "disconnected"


@dataclass(slots=True)
class ReconcileResult:
    events: List[CalendarEvent]
    external_status: str = STATUS_DISCONNECTED
    auth_failed: bool = False
    failed_masters: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncReport:
    pushed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    mirrored: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "pushed": list(self.pushed),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
            "mirrored": self.mirrored,
        }


def _sort_key(event: CalendarEvent) -> Tuple[int, str]:
    return event.score, event.id


@dataclass(slots=True)
class CalendarService:
    context: ServiceContext

    # ------------------------------------------------------------------
    # Zones and windows
    # ------------------------------------------------------------------
    def display_zone(self, user_id: str) -> str:
        default = self.context.settings.availability.default_timezone
        zone = self.context.profiles.timezone_for(user_id, default)
        resolve_zone(zone)
        return zone

    def set_display_zone(self, user_id: str, zone: str) -> str:
        resolve_zone(zone)
        self.context.profiles.set_timezone(user_id, zone)
        return zone

    def window(self, user_id: str, start: datetime, end: datetime) -> Tuple[str, datetime, datetime]:
        """Resolve the display zone and convert a query window to UTC."""

        zone = self.display_zone(user_id)
        lower = to_storage(start, zone)
        upper = to_storage(end, zone)
        if upper < lower:
            raise ValidationError("window end must not precede window start")
        return zone, lower, upper

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    def is_connected(self, user_id: str) -> bool:
        return self.context.credentials.get(user_id) is not None

    def _fresh_credential(self, user_id: str) -> Optional[SyncCredential]:
        with self.context.locks.hold(user_id):
            credential = self.context.credentials.get(user_id)
            if credential is None:
                return None
            result = self.context.provider.ensure_fresh(credential)
            if result.credential != credential:
                self.context.credentials.save(user_id, result.credential)
            return result.credential

    def _remember(self, user_id: str, before: SyncCredential, after: SyncCredential) -> SyncCredential:
        if after != before:
            with self.context.locks.hold(user_id):
                self.context.credentials.save(user_id, after)
        return after

    def _reauthorize(self, user_id: str, rejected: SyncCredential) -> SyncCredential:
        with self.context.locks.hold(user_id):
            stored = self.context.credentials.get(user_id)
            if stored is not None and stored.access_token != rejected.access_token:
                # Another request already refreshed while this one waited.
                return stored
            refreshed = self.context.provider.refresh(rejected).credential
            self.context.credentials.save(user_id, refreshed)
            return refreshed

    def _call(
        self,
        user_id: str,
        credential: SyncCredential,
        operation: Callable[[SyncCredential], ProviderResult[T]],
    ) -> ProviderResult[T]:
        """Run a provider call, refreshing the token once under the user's lock on rejection."""

        try:
            return operation(credential)
        except TokenRejected:
            logger.info("Access token for %s was rejected, refreshing", user_id)
        renewed = self._reauthorize(user_id, credential)
        try:
            return operation(renewed)
        except TokenRejected as exc:
            raise AuthExpired(f"Provider rejected refreshed credentials for {user_id}") from exc

    def _credential_for_write(self, user_id: str) -> Optional[SyncCredential]:
        try:
            return self._fresh_credential(user_id)
        except ProviderError as exc:
            logger.warning("Could not refresh credentials for %s, writing locally: %s", user_id, exc)
            return None

    # ------------------------------------------------------------------
    # External side
    # ------------------------------------------------------------------
    def _with_sidecar(self, user_id: str, event: CalendarEvent) -> CalendarEvent:
        event = replace(event, user_id=user_id)
        if not event.source_id:
            return event
        sidecar = self.context.metadata.get(user_id, event.source_id)
        if sidecar:
            event.categories = list(sidecar.get("categories") or [])
            event.reminders = list(sidecar.get("reminders") or [])
        return event

    def _save_sidecar(self, user_id: str, event: CalendarEvent, source: CalendarEvent) -> CalendarEvent:
        if event.source_id:
            self.context.metadata.save(
                user_id, event.source_id, categories=source.categories, reminders=source.reminders
            )
        return replace(
            event,
            user_id=user_id,
            categories=list(source.categories),
            reminders=list(source.reminders),
        )

    def _fetch_external(self, user_id: str, lower: datetime, upper: datetime) -> List[CalendarEvent]:
        credential = self._fresh_credential(user_id)
        if credential is None:
            raise ExternalNotConnected(f"User {user_id} has no external calendar connected.")
        provider = self.context.provider
        result = self._call(user_id, credential, lambda cred: provider.list_events(cred, lower, upper))
        self._remember(user_id, credential, result.credential)
        events = [self._with_sidecar(user_id, event) for event in result.value]
        self._write_mirror(user_id, events, lower, upper)
        return events

    def _write_mirror(self, user_id: str, events: List[CalendarEvent], lower: datetime, upper: datetime) -> None:
        mirror = self.context.mirror
        upstream = {event.id for event in events}
        with self.context.locks.hold(user_id):
            cached = self._read_mirror(user_id, lower, upper)
            for event in events:
                mirror.upsert(user_id, event)
            stale = [event for event in cached if event.id not in upstream]
            for event in stale:
                mirror.remove(user_id, event)
        if stale:
            logger.debug("Dropped %d stale cached event(s) for %s", len(stale), user_id)

    def _read_mirror(self, user_id: str, lower: datetime, upper: datetime) -> List[CalendarEvent]:
        """Cached external events overlapping the window, matching what the provider returns."""

        cached = self.context.mirror.all_for_user(user_id)
        return [event for event in cached if event.start < upper and lower < event.end]

    def _await_external(
        self,
        user_id: str,
        future: Future,
        lower: datetime,
        upper: datetime,
        wait: float,
    ) -> Tuple[List[CalendarEvent], str, bool]:
        try:
            return future.result(timeout=wait), STATUS_LIVE, False
        except FutureTimeout:
            future.cancel()
            logger.warning("Provider fetch for %s timed out after %.1fs, serving cached events", user_id, wait)
        except AuthExpired as exc:
            logger.error("Provider credentials for %s were rejected, serving cached events: %s", user_id, exc)
            return self._read_mirror(user_id, lower, upper), STATUS_CACHED, True
        except ExternalNotConnected:
            return [], STATUS_DISCONNECTED, False
        except ProviderError as exc:
            logger.warning("Provider fetch for %s failed, serving cached events: %s", user_id, exc)
        return self._read_mirror(user_id, lower, upper), STATUS_CACHED, False

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------
    def _expand_local(
        self,
        events: List[CalendarEvent],
        lower: datetime,
        upper: datetime,
    ) -> Tuple[List[CalendarEvent], List[str]]:
        executor = self.context.expansion_executor
        futures = [(event, executor.submit(expand, event, lower, upper)) for event in events]
        expanded: List[CalendarEvent] = []
        failed: List[str] = []
        for event, future in futures:
            try:
                expanded.extend(future.result())
            except ValueError as exc:
                logger.error("Skipping malformed recurring event %s: %s", event.id, exc)
                failed.append(event.id)
        return expanded, failed

    def _merge(
        self,
        user_id: str,
        external: List[CalendarEvent],
        local: List[CalendarEvent],
        zone: str,
    ) -> List[CalendarEvent]:
        links = self.context.links.all_for_user(user_id)
        upstream = {event.id for event in external}
        merged: Dict[str, CalendarEvent] = {}
        for event in external:
            merged.setdefault(event.id, event)
        for event in local:
            anchor = event.original_event_id or event.id
            if links.get(anchor) in upstream:
                continue
            merged.setdefault(event.id, event)
        return sorted((normalize_to(event, zone) for event in merged.values()), key=_sort_key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def resolve_events(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        *,
        timeout: Optional[float] = None,
    ) -> ReconcileResult:
        zone, lower, upper = self.window(user_id, start, end)
        wait = timeout if timeout is not None else self.context.settings.concurrency.io_timeout_seconds
        local_future = self.context.ledger_executor.submit(self.context.ledger.all_for_user, user_id)
        external: List[CalendarEvent] = []
        status, auth_failed = STATUS_DISCONNECTED, False
        if self.is_connected(user_id):
            external_future = self.context.io_executor.submit(self._fetch_external, user_id, lower, upper)
            external, status, auth_failed = self._await_external(user_id, external_future, lower, upper, wait)

        try:
            stored = local_future.result(timeout=wait)
        except FutureTimeout as exc:
            local_future.cancel()
            raise LedgerUnavailable(f"Local calendar for {user_id} did not answer within {wait:.1f}s") from exc

        local, failed = self._expand_local(stored, lower, upper)
        events = self._merge(user_id, external, local, zone)
        logger.debug(
            "Resolved %d event(s) for %s (external=%s, failed masters=%d)",
            len(events),
            user_id,
            status,
            len(failed),
        )
        return ReconcileResult(events=events, external_status=status, auth_failed=auth_failed, failed_masters=failed)

    def get_events(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        *,
        timeout: Optional[float] = None,
    ) -> List[CalendarEvent]:
        return self.resolve_events(user_id, start, end, timeout=timeout).events

    def search_events(self, user_id: str, query: str) -> List[CalendarEvent]:
        needle = (query or "").strip()
        if not needle:
            raise ValidationError("search query must not be empty")
        zone = self.display_zone(user_id)
        local = [event for event in self.context.ledger.all_for_user(user_id) if event.matches(needle)]

        external: List[CalendarEvent] = []
        if self.is_connected(user_id):
            horizon = self.context.clock() + self.context.settings.sync.search_horizon
            try:
                credential = self._fresh_credential(user_id)
                if credential is not None:
                    provider = self.context.provider
                    result = self._call(
                        user_id, credential, lambda cred: provider.list_events(cred, EPOCH, horizon)
                    )
                    self._remember(user_id, credential, result.credential)
                    external = [self._with_sidecar(user_id, event) for event in result.value]
            except ProviderError as exc:
                logger.warning("Provider search for %s failed, searching cached events: %s", user_id, exc)
                external = self.context.mirror.all_for_user(user_id)
        external = [event for event in external if event.matches(needle)]
        return self._merge(user_id, external, local, zone)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _prepare(self, event: CalendarEvent) -> CalendarEvent:
        if not event.user_id:
            raise ValidationError("event user_id is required")
        if event.is_recurring_instance:
            raise ValidationError("recurring instances are derived; edit them through update_event")
        if event.recurrence is not None:
            validate_rule(event.recurrence)
        zone = event.timezone or self.display_zone(event.user_id)
        resolve_zone(zone)
        if event.all_day:
            start = localize(event.start, "UTC") if event.start.tzinfo is None else event.start
            end = localize(event.end, "UTC") if event.end.tzinfo is None else event.end
        else:
            start = to_storage(event.start, zone)
            end = to_storage(event.end, zone)
        if end < start:
            raise ValidationError("event end must not precede its start")
        return replace(
            event,
            id=event.id or f"event_{uuid4().hex}",
            start=start,
            end=end,
            timezone=None if event.all_day else zone,
        )

    def _store_local(self, event: CalendarEvent) -> CalendarEvent:
        local = replace(event, source=EventSource.LOCAL, source_id=None)
        self.context.ledger.upsert(local.user_id, local)
        return local

    def create_event(self, event: CalendarEvent, *, local_only: bool = False) -> CalendarEvent:
        prepared = self._prepare(event)
        user_id = prepared.user_id
        zone = self.display_zone(user_id)

        credential = None
        if not local_only and prepared.recurrence is None and self.is_connected(user_id):
            credential = self._credential_for_write(user_id)
        if credential is None:
            return normalize_to(self._store_local(prepared), zone)

        try:
            provider = self.context.provider
            result = self._call(user_id, credential, lambda cred: provider.create_event(cred, prepared))
        except ProviderError as exc:
            logger.warning("Provider create for %s failed, storing locally: %s", user_id, exc)
            return normalize_to(self._store_local(prepared), zone)

        self._remember(user_id, credential, result.credential)
        created = self._save_sidecar(user_id, result.value, prepared)
        with self.context.locks.hold(user_id):
            self.context.mirror.upsert(user_id, created)
        logger.info("Created external event %s for %s", created.id, user_id)
        return normalize_to(created, zone)

    def _instance_ref(self, user_id: str, event_id: str) -> Optional[Tuple[CalendarEvent, date]]:
        if self.context.ledger.get(user_id, event_id) is not None:
            return None
        parsed = parse_instance_id(event_id)
        if parsed is None:
            return None
        master_id, day = parsed
        master = self.context.ledger.get(user_id, master_id)
        if master is None or not master.is_master or not is_occurrence(master, day):
            return None
        return master, day

    @staticmethod
    def _overrides(plain: CalendarEvent, edited: CalendarEvent) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        for key in OVERRIDABLE_FIELDS:
            value = getattr(edited, key)
            if value == getattr(plain, key):
                continue
            overrides[key] = value.isoformat() if isinstance(value, datetime) else value
        return overrides

    def _update_instance(
        self,
        user_id: str,
        event: CalendarEvent,
        master_id: str,
        day: date,
    ) -> Optional[CalendarEvent]:
        with self.context.locks.hold(user_id):
            master = self.context.ledger.get(user_id, master_id)
            if master is None:
                return None
            plain = occurrence_on(replace(master, exceptions=[]), day)
            if plain is None:
                return None
            zone = master.timezone or self.display_zone(user_id)
            edited = replace(
                event,
                start=to_storage(event.start, zone),
                end=to_storage(event.end, zone),
            )
            if edited.end < edited.start:
                raise ValidationError("event end must not precede its start")
            master.upsert_exception(
                RecurrenceException(date=day, status=ExceptionStatus.MODIFIED, overrides=self._overrides(plain, edited))
            )
            self.context.ledger.upsert(user_id, master)
        updated = occurrence_on(master, day)
        return normalize_to(updated, self.display_zone(user_id)) if updated else None

    def _push_linked_update(self, user_id: str, event: CalendarEvent, external_id: str) -> None:
        """Carry an edit of a backfilled local event over to its provider copy.

        If the copy cannot be updated the link is dropped, so reads show the
        edited local event instead of the stale provider copy.
        """

        if event.recurrence is not None:
            self.context.links.forget(user_id, event.id)
            self._delete_linked_copy(user_id, external_id)
            return

        cached = self.context.mirror.get(user_id, external_id)
        upstream = replace(
            event,
            id=external_id,
            source=EventSource.EXTERNAL,
            source_id=cached.source_id if cached else None,
        )
        updated: Optional[CalendarEvent] = None
        credential = self._credential_for_write(user_id)
        if credential is not None:
            provider = self.context.provider
            try:
                result = self._call(user_id, credential, lambda cred: provider.update_event(cred, upstream))
                self._remember(user_id, credential, result.credential)
                updated = result.value
                if updated is None and cached is not None:
                    with self.context.locks.hold(user_id):
                        self.context.mirror.remove(user_id, cached)
            except ProviderError as exc:
                logger.warning("Provider update of %s for %s failed: %s", external_id, user_id, exc)

        if updated is None:
            self.context.links.forget(user_id, event.id)
            logger.warning("Unlinked %s from %s, showing the local edit", event.id, external_id)
            return
        updated = self._save_sidecar(user_id, updated, event)
        with self.context.locks.hold(user_id):
            self.context.mirror.upsert(user_id, updated)

    def update_event(self, event: CalendarEvent) -> Optional[CalendarEvent]:
        user_id = event.user_id
        if not user_id:
            raise ValidationError("event user_id is required")

        ref = self._instance_ref(user_id, event.id)
        if ref is not None:
            master, day = ref
            return self._update_instance(user_id, event, master.id, day)

        existing = self.context.ledger.get(user_id, event.id)
        if existing is not None:
            prepared = self._prepare(replace(event, is_recurring_instance=False, original_event_id=None))
            if prepared.recurrence is not None and not prepared.exceptions:
                prepared.exceptions = list(existing.exceptions)
            self.context.ledger.upsert(user_id, prepared)
            linked = self.context.links.get(user_id, prepared.id)
            if linked is not None:
                self._push_linked_update(user_id, prepared, linked)
            return normalize_to(prepared, self.display_zone(user_id))

        cached = self.context.mirror.get(user_id, event.id)
        if cached is None and event.source is not EventSource.EXTERNAL:
            return None
        prepared = self._prepare(replace(event, source_id=event.source_id or (cached.source_id if cached else None)))
        zone = self.display_zone(user_id)

        credential = self._credential_for_write(user_id)
        if credential is None:
            return normalize_to(self._store_local(prepared), zone)
        try:
            provider = self.context.provider
            result = self._call(user_id, credential, lambda cred: provider.update_event(cred, prepared))
        except ProviderError as exc:
            logger.warning("Provider update for %s failed, storing locally: %s", event.id, exc)
            return normalize_to(self._store_local(prepared), zone)

        self._remember(user_id, credential, result.credential)
        if result.value is None:
            with self.context.locks.hold(user_id):
                self.context.mirror.remove(user_id, prepared)
            if prepared.source_id:
                self.context.metadata.delete(user_id, prepared.source_id)
            return None
        updated = self._save_sidecar(user_id, result.value, prepared)
        with self.context.locks.hold(user_id):
            self.context.mirror.upsert(user_id, updated)
        return normalize_to(updated, zone)

    def _delete_linked_copy(self, user_id: str, external_id: str) -> None:
        cached = self.context.mirror.get(user_id, external_id)
        credential = self._credential_for_write(user_id)
        if credential is not None:
            try:
                provider = self.context.provider
                result = self._call(
                    user_id, credential, lambda cred: provider.delete_event(cred, external_id)
                )
                self._remember(user_id, credential, result.credential)
            except ProviderError as exc:
                logger.warning("Could not delete provider copy %s of a local event: %s", external_id, exc)
        if cached is not None:
            with self.context.locks.hold(user_id):
                self.context.mirror.remove(user_id, cached)
            if cached.source_id:
                self.context.metadata.delete(user_id, cached.source_id)

    def _delete_local(self, user_id: str, event: CalendarEvent) -> bool:
        removed = self.context.ledger.remove(user_id, event)
        linked = self.context.links.forget(user_id, event.id)
        if linked:
            self._delete_linked_copy(user_id, linked)
        return removed

    def delete_event(self, user_id: str, event_id: str, delete_all_instances: bool = False) -> bool:
        ref = self._instance_ref(user_id, event_id)
        if ref is not None:
            master, day = ref
            if delete_all_instances:
                return self._delete_local(user_id, master)
            with self.context.locks.hold(user_id):
                current = self.context.ledger.get(user_id, master.id)
                if current is None:
                    return False
                current.upsert_exception(RecurrenceException(date=day, status=ExceptionStatus.CANCELLED))
                self.context.ledger.upsert(user_id, current)
            return True

        existing = self.context.ledger.get(user_id, event_id)
        if existing is not None:
            return self._delete_local(user_id, existing)

        cached = self.context.mirror.get(user_id, event_id)
        if not self.is_connected(user_id):
            if cached is None:
                return False
            raise ExternalNotConnected(f"Cannot delete external event {event_id}: no calendar connected.")

        credential = self._fresh_credential(user_id)
        if credential is None:
            raise ExternalNotConnected(f"Cannot delete external event {event_id}: no calendar connected.")
        provider = self.context.provider
        result = self._call(user_id, credential, lambda cred: provider.delete_event(cred, event_id))
        self._remember(user_id, credential, result.credential)
        if cached is not None:
            with self.context.locks.hold(user_id):
                self.context.mirror.remove(user_id, cached)
            if cached.source_id:
                self.context.metadata.delete(user_id, cached.source_id)
        return result.value or cached is not None

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------
    def sync_external(self, user_id: str) -> SyncReport:
        """Push local-only events in the sync window to the provider, once each."""

        if not self.is_connected(user_id):
            raise ExternalNotConnected(f"User {user_id} has no external calendar connected.")
        settings = self.context.settings.sync
        now = self.context.clock()
        lower, upper = now - settings.window_before, now + settings.window_after

        credential = self._fresh_credential(user_id)
        if credential is None:
            raise ExternalNotConnected(f"User {user_id} has no external calendar connected.")
        links = self.context.links.all_for_user(user_id)
        candidates = [
            event
            for event in self.context.ledger.range_query(user_id, to_millis(lower), to_millis(upper))
            if event.source is EventSource.LOCAL and event.recurrence is None
        ]

        provider = self.context.provider
        report = SyncReport()
        for event in candidates:
            if event.id in links:
                report.skipped.append(event.id)
                continue
            try:
                result = self._call(user_id, credential, lambda cred, item=event: provider.create_event(cred, item))
            except AuthExpired:
                raise
            except ProviderError as exc:
                logger.warning("Backfill of %s for %s failed: %s", event.id, user_id, exc)
                report.failed.append(event.id)
                continue
            credential = self._remember(user_id, credential, result.credential)
            self.context.links.record(user_id, event.id, result.value.id)
            self._save_sidecar(user_id, result.value, event)
            report.pushed.append(event.id)

        try:
            report.mirrored = len(self._fetch_external(user_id, lower, upper))
        except AuthExpired:
            raise
        except ProviderError as exc:
            logger.warning("Refreshing cached events after backfill for %s failed: %s", user_id, exc)
        logger.info(
            "Backfill for %s pushed %d, skipped %d, failed %d",
            user_id,
            len(report.pushed),
            len(report.skipped),
            len(report.failed),
        )
        return report


__all__ = ["CalendarService", "ReconcileResult", "SyncReport"]
