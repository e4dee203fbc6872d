"""Tests for CalendarService: merging, fallbacks, writes, instance edits and backfill."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, USER, build_event
from zerocal.domain import EventSource, ExceptionStatus, Frequency, RecurrenceRule
from zerocal.errors import AuthExpired, ExternalNotConnected, ProviderUnavailable, ValidationError

UTC = timezone.utc
DAY_START = datetime(2025, 1, 15, tzinfo=UTC)
DAY_END = datetime(2025, 1, 16, tzinfo=UTC)


def _at(hour: int, day: int = 15) -> datetime:
    return datetime(2025, 1, day, hour, tzinfo=UTC)


def _daily_master(**extra):
    return build_event(
        "daily",
        _at(10, day=13),
        _at(11, day=13),
        timezone="UTC",
        recurrence=RecurrenceRule(frequency=Frequency.DAILY),
        **extra,
    )


class TestReads:
    def test_local_only_user_is_disconnected(self, service, context):
        context.ledger.upsert(USER, build_event("a", _at(9), _at(10)))
        result = service.resolve_events(USER, DAY_START, DAY_END)

        assert [event.id for event in result.events] == ["a"]
        assert result.external_status == "disconnected"
        assert not result.auth_failed

    def test_merge_dedups_by_id_external_first_and_sorts(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        context.ledger.upsert(USER, build_event("a", _at(9), _at(10)))
        context.ledger.upsert(USER, build_event("google_x", _at(10), _at(11), title="stale local copy"))
        context.ledger.upsert(USER, build_event("b", _at(14), _at(15)))

        events = service.get_events(USER, DAY_START, DAY_END)

        assert [event.id for event in events] == ["a", "google_x", "b"]
        assert events[1].title == "x"
        assert events[1].user_id == USER

    def test_recurring_masters_are_expanded(self, service, context):
        context.ledger.upsert(USER, _daily_master())
        events = service.get_events(USER, datetime(2025, 1, 14, tzinfo=UTC), datetime(2025, 1, 17, tzinfo=UTC))
        assert [event.id for event in events] == ["daily_20250114", "daily_20250115", "daily_20250116"]
        assert all(event.is_recurring_instance for event in events)

    def test_provider_outage_serves_cached_window(self, service, provider, connected):
        provider.seed("x", _at(10), _at(11))
        assert service.resolve_events(USER, DAY_START, DAY_END).external_status == "live"

        provider.fail_with = ProviderUnavailable("down")
        result = service.resolve_events(USER, DAY_START, DAY_END)

        assert result.external_status == "cached"
        assert [event.id for event in result.events] == ["google_x"]

    def test_outage_keeps_events_running_across_window_start(self, service, provider, connected):
        provider.seed("x", _at(9), _at(11))
        live = service.resolve_events(USER, _at(10), _at(12))
        assert [event.id for event in live.events] == ["google_x"]

        provider.fail_with = ProviderUnavailable("down")
        cached = service.resolve_events(USER, _at(10), _at(12))

        assert cached.external_status == "cached"
        assert [event.id for event in cached.events] == ["google_x"]

    def test_sweep_drops_deleted_events_running_across_window_start(self, service, context, provider, connected):
        provider.seed("x", _at(9), _at(11))
        provider.seed("y", _at(10), _at(11))
        service.get_events(USER, _at(10), _at(12))

        del provider.events["google_x"]
        service.get_events(USER, _at(10), _at(12))

        assert [event.id for event in context.mirror.all_for_user(USER)] == ["google_y"]

    def test_hung_provider_does_not_starve_ledger_reads(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        context.ledger.upsert(USER, build_event("a", _at(14), _at(15)))
        service.get_events(USER, DAY_START, DAY_END)

        provider.gate = threading.Event()
        try:
            results = [service.resolve_events(USER, DAY_START, DAY_END, timeout=0.2) for _ in range(3)]
        finally:
            provider.gate.set()

        assert [result.external_status for result in results] == ["cached", "cached", "cached"]
        assert all([event.id for event in result.events] == ["google_x", "a"] for result in results)

    def test_auth_failure_is_reported_not_silent(self, service, provider, connected):
        provider.seed("x", _at(10), _at(11))
        service.get_events(USER, DAY_START, DAY_END)

        provider.fail_with = AuthExpired("refresh rejected")
        result = service.resolve_events(USER, DAY_START, DAY_END)

        assert result.auth_failed is True
        assert result.external_status == "cached"
        assert [event.id for event in result.events] == ["google_x"]

    def test_slow_provider_falls_back_after_timeout(self, service, provider, connected):
        provider.seed("x", _at(10), _at(11))
        service.get_events(USER, DAY_START, DAY_END)

        provider.gate = threading.Event()
        try:
            result = service.resolve_events(USER, DAY_START, DAY_END, timeout=0.05)
        finally:
            provider.gate.set()

        assert result.external_status == "cached"
        assert [event.id for event in result.events] == ["google_x"]

    def test_mirror_drops_events_deleted_upstream(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        provider.seed("y", _at(12), _at(13))
        service.get_events(USER, DAY_START, DAY_END)

        del provider.events["google_y"]
        service.get_events(USER, DAY_START, DAY_END)

        assert [event.id for event in context.mirror.all_for_user(USER)] == ["google_x"]

    def test_malformed_master_does_not_hide_siblings(self, service, context):
        bad = build_event("bad", _at(8), _at(9), recurrence=RecurrenceRule(frequency=Frequency.DAILY, interval=0))
        context.ledger.upsert(USER, bad)
        context.ledger.upsert(USER, _daily_master())

        result = service.resolve_events(USER, DAY_START, DAY_END)

        assert result.failed_masters == ["bad"]
        assert [event.id for event in result.events] == ["daily_20250115"]

    def test_inverted_window_is_rejected(self, service):
        with pytest.raises(ValidationError):
            service.get_events(USER, DAY_END, DAY_START)

    def test_results_use_display_zone(self, service, context):
        service.set_display_zone(USER, "America/New_York")
        context.ledger.upsert(USER, build_event("a", _at(15), _at(16)))

        events = service.get_events(USER, DAY_START, DAY_END)

        assert events[0].start.utcoffset() == timedelta(hours=-5)
        assert events[0].timezone == "America/New_York"

    def test_sidecar_metadata_is_applied_to_external_events(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        context.metadata.save(USER, "x", categories=["work"], reminders=[{"minutes": 5}])

        events = service.get_events(USER, DAY_START, DAY_END)

        assert events[0].categories == ["work"]
        assert events[0].reminders == [{"minutes": 5}]


class TestCreate:
    def test_disconnected_create_goes_to_ledger(self, service, context):
        created = service.create_event(build_event("", _at(9), _at(10)))

        assert created.id.startswith("event_")
        stored = context.ledger.get(USER, created.id)
        assert stored is not None and stored.timezone == "UTC"
        assert stored.source is EventSource.LOCAL

    def test_naive_times_are_read_in_display_zone(self, service, context):
        service.set_display_zone(USER, "America/New_York")
        created = service.create_event(build_event("meet", datetime(2025, 1, 16, 9), datetime(2025, 1, 16, 10)))

        stored = context.ledger.get(USER, created.id)
        assert stored.start == datetime(2025, 1, 16, 14, tzinfo=UTC)
        assert stored.timezone == "America/New_York"

    def test_connected_create_pushes_and_keeps_sidecar(self, service, context, provider, connected):
        created = service.create_event(build_event("", _at(9), _at(10), categories=["work"]))

        assert created.id == "google_n1"
        assert created.categories == ["work"]
        assert context.ledger.all_for_user(USER) == []
        assert context.mirror.get(USER, "google_n1") is not None
        assert service.get_events(USER, DAY_START, DAY_END)[0].categories == ["work"]

    def test_local_only_flag_skips_provider(self, service, context, provider, connected):
        service.create_event(build_event("", _at(9), _at(10)), local_only=True)
        assert provider.created == []
        assert len(context.ledger.all_for_user(USER)) == 1

    def test_provider_failure_falls_back_to_local(self, service, context, provider, connected):
        provider.fail_with = ProviderUnavailable("down")
        created = service.create_event(build_event("", _at(9), _at(10)))

        assert created.source is EventSource.LOCAL
        assert context.ledger.get(USER, created.id) is not None

    def test_recurring_masters_stay_local(self, service, context, provider, connected):
        service.create_event(_daily_master())
        assert provider.created == []
        assert context.ledger.get(USER, "daily").recurrence is not None

    def test_validation_happens_before_any_write(self, service, context, provider, connected):
        with pytest.raises(ValidationError):
            service.create_event(build_event("", _at(10), _at(9)))
        with pytest.raises(ValidationError):
            service.create_event(
                build_event("", _at(9), _at(10), recurrence=RecurrenceRule(frequency=Frequency.DAILY, interval=0))
            )
        assert provider.created == []
        assert context.ledger.all_for_user(USER) == []


class TestUpdateAndDelete:
    def test_local_update_rescores(self, service, context):
        context.ledger.upsert(USER, build_event("a", _at(9), _at(10)))
        context.ledger.upsert(USER, build_event("b", _at(11), _at(12)))

        updated = service.update_event(build_event("a", _at(15), _at(16), title="later"))

        assert updated.title == "later"
        assert [event.id for event in context.ledger.all_for_user(USER)] == ["b", "a"]

    def test_unknown_ids(self, service):
        assert service.update_event(build_event("nope", _at(9), _at(10))) is None
        assert service.delete_event(USER, "nope") is False

    def test_editing_an_instance_writes_a_modified_exception(self, service, context):
        context.ledger.upsert(USER, _daily_master())
        instance = next(e for e in service.get_events(USER, DAY_START, DAY_END) if e.id == "daily_20250115")

        updated = service.update_event(replace(instance, title="Moved"))

        assert updated.id == "daily_20250115" and updated.title == "Moved"
        master = context.ledger.get(USER, "daily")
        assert len(master.exceptions) == 1
        assert master.exceptions[0].status is ExceptionStatus.MODIFIED
        assert master.exceptions[0].overrides == {"title": "Moved"}
        titles = {e.id: e.title for e in service.get_events(USER, _at(0, day=14), _at(0, day=17))}
        assert titles == {"daily_20250114": "daily", "daily_20250115": "Moved", "daily_20250116": "daily"}

    def test_clearing_a_field_on_one_instance_sticks(self, service, context):
        context.ledger.upsert(USER, _daily_master(location="Room 4"))
        instance = next(e for e in service.get_events(USER, DAY_START, DAY_END) if e.id == "daily_20250115")

        updated = service.update_event(replace(instance, location=None))

        assert updated.location is None
        assert context.ledger.get(USER, "daily").exceptions[0].overrides == {"location": None}
        locations = {e.id: e.location for e in service.get_events(USER, _at(0, day=14), _at(0, day=17))}
        assert locations == {"daily_20250114": "Room 4", "daily_20250115": None, "daily_20250116": "Room 4"}

    def test_deleting_an_instance_cancels_one_occurrence(self, service, context):
        context.ledger.upsert(USER, _daily_master())

        assert service.delete_event(USER, "daily_20250115") is True

        ids = [e.id for e in service.get_events(USER, _at(0, day=14), _at(0, day=17))]
        assert ids == ["daily_20250114", "daily_20250116"]
        assert context.ledger.get(USER, "daily").exceptions[0].status is ExceptionStatus.CANCELLED

    def test_delete_all_instances_removes_master(self, service, context):
        context.ledger.upsert(USER, _daily_master())
        assert service.delete_event(USER, "daily_20250115", delete_all_instances=True) is True
        assert context.ledger.get(USER, "daily") is None

    def test_external_update_goes_upstream(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        event = service.get_events(USER, DAY_START, DAY_END)[0]

        updated = service.update_event(replace(event, title="Renamed"))

        assert updated.title == "Renamed"
        assert provider.events["google_x"].title == "Renamed"
        assert context.mirror.get(USER, "google_x").title == "Renamed"

    def test_external_update_falls_back_to_local(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        event = service.get_events(USER, DAY_START, DAY_END)[0]
        provider.fail_with = ProviderUnavailable("down")

        updated = service.update_event(replace(event, title="Offline edit"))

        assert updated.source is EventSource.LOCAL
        assert context.ledger.get(USER, "google_x").title == "Offline edit"

    def test_external_delete(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        service.get_events(USER, DAY_START, DAY_END)

        assert service.delete_event(USER, "google_x") is True
        assert provider.deleted == ["google_x"]
        assert context.mirror.get(USER, "google_x") is None


class TestSearch:
    def test_matches_local_and_external(self, service, context, provider, connected):
        context.ledger.upsert(USER, build_event("a", _at(9), _at(10), title="Team SYNC"))
        context.ledger.upsert(USER, build_event("b", _at(11), _at(12), title="Lunch"))
        provider.seed("x", _at(13), _at(14), title="sync with Bob")

        assert [e.id for e in service.search_events(USER, "sync")] == ["a", "google_x"]

    def test_provider_failure_searches_cache(self, service, provider, connected):
        provider.seed("x", _at(13), _at(14), title="Planning")
        service.get_events(USER, DAY_START, DAY_END)
        provider.fail_with = ProviderUnavailable("down")

        assert [e.id for e in service.search_events(USER, "plan")] == ["google_x"]

    def test_empty_query_rejected(self, service):
        with pytest.raises(ValidationError):
            service.search_events(USER, "  ")


class TestSync:
    def test_requires_connection(self, service):
        with pytest.raises(ExternalNotConnected):
            service.sync_external(USER)

    def test_backfill_is_idempotent(self, service, context, provider, connected):
        start = NOW + timedelta(days=1)
        context.ledger.upsert(USER, build_event("local-1", start, start + timedelta(hours=1)))

        first = service.sync_external(USER)
        second = service.sync_external(USER)

        assert first.pushed == ["local-1"]
        assert first.mirrored == 1
        assert second.pushed == [] and second.skipped == ["local-1"]
        assert len(provider.created) == 1
        assert context.links.get(USER, "local-1") == "google_n1"

        events = service.get_events(USER, start - timedelta(hours=1), start + timedelta(hours=2))
        assert [event.id for event in events] == ["google_n1"]

    def test_skips_recurring_and_out_of_window_events(self, service, context, provider, connected):
        context.ledger.upsert(USER, _daily_master())
        far = NOW + timedelta(days=200)
        context.ledger.upsert(USER, build_event("far", far, far + timedelta(hours=1)))

        report = service.sync_external(USER)

        assert report.pushed == []
        assert provider.created == []

    def test_auth_failure_surfaces(self, service, provider, connected):
        provider.fail_with = AuthExpired("refresh rejected")
        with pytest.raises(AuthExpired):
            service.sync_external(USER)

    def test_failed_mirror_refresh_keeps_the_report(self, service, context, provider, connected, monkeypatch):
        start = NOW + timedelta(days=1)
        context.ledger.upsert(USER, build_event("local-1", start, start + timedelta(hours=1)))

        def unavailable(credential, start, end):
            raise ProviderUnavailable("down")

        monkeypatch.setattr(provider, "list_events", unavailable)
        report = service.sync_external(USER)

        assert report.pushed == ["local-1"]
        assert report.mirrored == 0
        assert context.links.get(USER, "local-1") == "google_n1"

    def test_editing_a_backfilled_event_updates_the_provider_copy(self, service, context, provider, connected):
        start = NOW + timedelta(days=1)
        context.ledger.upsert(USER, build_event("local-1", start, start + timedelta(hours=1), title="Old"))
        service.sync_external(USER)

        local = context.ledger.get(USER, "local-1")
        updated = service.update_event(replace(local, title="New"))

        assert updated.title == "New"
        assert provider.events["google_n1"].title == "New"
        events = service.get_events(USER, start - timedelta(hours=1), start + timedelta(hours=2))
        assert [event.title for event in events] == ["New"]

    def test_failed_push_of_a_backfilled_edit_shows_the_local_copy(self, service, context, provider, connected):
        start = NOW + timedelta(days=1)
        context.ledger.upsert(USER, build_event("local-1", start, start + timedelta(hours=1), title="Old"))
        service.sync_external(USER)

        provider.fail_with = ProviderUnavailable("down")
        service.update_event(replace(context.ledger.get(USER, "local-1"), title="New"))

        assert context.links.get(USER, "local-1") is None
        provider.fail_with = None
        events = service.get_events(USER, start - timedelta(hours=1), start + timedelta(hours=2))
        titles = [event.title for event in events]
        assert "New" in titles


class TestTokenRefresh:
    def test_concurrent_rejections_refresh_once(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        provider.rejected_tokens.add(connected.access_token)
        provider.barrier = threading.Barrier(2)
        results = []

        def read():
            results.append(service.resolve_events(USER, DAY_START, DAY_END))

        threads = [threading.Thread(target=read) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert provider.refresh_calls == 1
        assert [result.external_status for result in results] == ["live", "live"]
        assert context.credentials.get(USER).access_token == "renewed-1"
        assert [event.id for event in context.mirror.all_for_user(USER)] == ["google_x"]

    def test_rejection_after_refresh_reports_auth_failure(self, service, context, provider, connected):
        provider.seed("x", _at(10), _at(11))
        provider.rejected_tokens.update({connected.access_token, "renewed-1"})

        result = service.resolve_events(USER, DAY_START, DAY_END)

        assert result.auth_failed is True
        assert result.external_status == "cached"
        assert provider.refresh_calls == 1


class TestAvailabilityService:
    def test_free_slots_for_user(self, availability, context):
        context.ledger.upsert(USER, build_event("a", _at(10, day=16), _at(11, day=16)))
        slots = availability.find_free_slots(USER, _at(0, day=16), _at(23, day=16), 60)
        assert [(slot.start, slot.end) for slot in slots] == [
            (_at(9, day=16), _at(10, day=16)),
            (_at(11, day=16), _at(17, day=16)),
        ]

    def test_conflicts_with_buffer(self, availability, context):
        context.ledger.upsert(USER, build_event("a", _at(10, day=16), _at(11, day=16)))
        assert availability.find_conflicts(USER, _at(11, day=16), _at(12, day=16), buffer_minutes=15)
        assert not availability.find_conflicts(USER, _at(11, day=16), _at(12, day=16))
        assert not availability.find_conflicts(
            USER, _at(10, day=16), _at(11, day=16), exclude_event_id="a"
        )

    def test_meeting_time_is_partial_for_unknown_participants(self, availability, service, context):
        service.set_display_zone(USER, "UTC")
        context.ledger.upsert(USER, build_event("a", _at(9, day=16), _at(16, day=16)))

        suggestion = availability.find_meeting_time([USER, "ghost"], _at(0, day=16), _at(23, day=16), 60)

        assert suggestion.checked_participants == [USER]
        assert suggestion.assumed_available == ["ghost"]
        assert [(slot.start, slot.end) for slot in suggestion.slots] == [(_at(16, day=16), _at(17, day=16))]
