from __future__ import annotations

import abc
import bisect
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ...domain import CalendarEvent
from ..store import StateStore
from ..supabase import SupabaseGateway


def _ensure_storable(event: CalendarEvent) -> None:
    if event.is_recurring_instance:
        raise ValueError(f"Recurring instance {event.id} is derived and cannot be stored.")


class EventLedger(abc.ABC):
    """Ordered per-user event store scored by start time in epoch milliseconds."""

    @abc.abstractmethod
    def range_query(self, user_id: str, score_min: int, score_max: int) -> List[CalendarEvent]:
        ...

    @abc.abstractmethod
    def upsert(self, user_id: str, event: CalendarEvent, score: Optional[int] = None) -> None:
        """Insert ``event`` or replace the entry sharing its id."""
        ...

    @abc.abstractmethod
    def remove(self, user_id: str, event: CalendarEvent) -> bool:
        ...

    @abc.abstractmethod
    def all_for_user(self, user_id: str) -> List[CalendarEvent]:
        ...

    def get(self, user_id: str, event_id: str) -> Optional[CalendarEvent]:
        for event in self.all_for_user(user_id):
            if event.id == event_id:
                return event
        return None


@dataclass(slots=True)
class JsonEventLedger(EventLedger):
    """Ledger kept as a score-sorted list inside one section of the state file."""

    store: StateStore
    section: str = "ledger"

    def _entries(self, state: Dict[str, Any], user_id: str) -> List[Dict[str, Any]]:
        return StateStore.user_section(state, self.section, user_id, [])

    @staticmethod
    def _decode(entries: List[Dict[str, Any]], user_id: str) -> List[CalendarEvent]:
        return [CalendarEvent.from_record(entry["event"], user_id=user_id) for entry in entries]

    def range_query(self, user_id: str, score_min: int, score_max: int) -> List[CalendarEvent]:
        def _select(state: Dict[str, Any]) -> List[Dict[str, Any]]:
            return [entry for entry in self._entries(state, user_id) if score_min <= entry["score"] <= score_max]

        return self._decode(self.store.read(_select), user_id)

    def upsert(self, user_id: str, event: CalendarEvent, score: Optional[int] = None) -> None:
        _ensure_storable(event)
        entry = {"score": event.score if score is None else int(score), "event": event.to_record()}

        def _upsert(state: Dict[str, Any]) -> None:
            entries = self._entries(state, user_id)
            entries[:] = [item for item in entries if item["event"]["id"] != event.id]
            scores = [item["score"] for item in entries]
            entries.insert(bisect.bisect_right(scores, entry["score"]), entry)

        self.store.mutate(_upsert)

    def remove(self, user_id: str, event: CalendarEvent) -> bool:
        def _remove(state: Dict[str, Any]) -> bool:
            entries = self._entries(state, user_id)
            before = len(entries)
            entries[:] = [item for item in entries if item["event"]["id"] != event.id]
            return len(entries) != before

        return self.store.mutate(_remove)

    def all_for_user(self, user_id: str) -> List[CalendarEvent]:
        return self._decode(self.store.read(lambda state: list(self._entries(state, user_id))), user_id)


@dataclass(slots=True)
class SupabaseEventLedger(EventLedger):
    """Ledger stored in a Supabase table of ``(user_id, id, score, payload)`` rows."""

    gateway: SupabaseGateway
    table_name: str

    def _rows_to_events(self, rows: List[Dict[str, Any]], user_id: str) -> List[CalendarEvent]:
        return [CalendarEvent.from_record(row["payload"], user_id=user_id) for row in rows]

    def range_query(self, user_id: str, score_min: int, score_max: int) -> List[CalendarEvent]:
        response = (
            self.gateway.ensure_client()
            .table(self.table_name)
            .select("payload")
            .eq("user_id", user_id)
            .gte("score", score_min)
            .lte("score", score_max)
            .order("score", desc=False)
            .execute()
        )
        return self._rows_to_events(response.data or [], user_id)

    def upsert(self, user_id: str, event: CalendarEvent, score: Optional[int] = None) -> None:
        _ensure_storable(event)
        payload = {
            "user_id": user_id,
            "id": event.id,
            "score": event.score if score is None else int(score),
            "payload": event.to_record(),
        }
        (
            self.gateway.ensure_client()
            .table(self.table_name)
            .upsert(payload, on_conflict="user_id,id")
            .execute()
        )

    def remove(self, user_id: str, event: CalendarEvent) -> bool:
        response = (
            self.gateway.ensure_client()
            .table(self.table_name)
            .delete()
            .eq("user_id", user_id)
            .eq("id", event.id)
            .execute()
        )
        return bool(response.data)

    def all_for_user(self, user_id: str) -> List[CalendarEvent]:
        response = (
            self.gateway.ensure_client()
            .table(self.table_name)
            .select("payload")
            .eq("user_id", user_id)
            .order("score", desc=False)
            .execute()
        )
        return self._rows_to_events(response.data or [], user_id)
