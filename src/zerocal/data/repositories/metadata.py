from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..store import StateStore


def _sidecar_key(user_id: str, source_id: str) -> str:
    return f"{user_id}:{source_id}"


@dataclass(slots=True)
class EventMetadataRepository:
    """Sidecar for fields the provider cannot hold, keyed by provider event id."""

    store: StateStore
    section: str = "metadata"

    def get(self, user_id: str, source_id: str) -> Optional[Dict[str, Any]]:
        key = _sidecar_key(user_id, source_id)
        return self.store.read(lambda state: state.get(self.section, {}).get(key))

    def save(
        self,
        user_id: str,
        source_id: str,
        *,
        categories: List[str],
        reminders: List[Dict[str, Any]],
    ) -> None:
        key = _sidecar_key(user_id, source_id)
        record = {
            "categories": list(categories),
            "reminders": list(reminders),
            "updated_at": StateStore.utc_now(),
        }

        def _save(state: Dict[str, Any]) -> None:
            state.setdefault(self.section, {})[key] = record

        self.store.mutate(_save)

    def delete(self, user_id: str, source_id: str) -> bool:
        key = _sidecar_key(user_id, source_id)
        return self.store.mutate(lambda state: state.setdefault(self.section, {}).pop(key, None) is not None)


@dataclass(slots=True)
class SyncLinkRepository:
    """Persisted local id to external id links written by backfill."""

    store: StateStore
    section: str = "links"

    def all_for_user(self, user_id: str) -> Dict[str, str]:
        return self.store.read(lambda state: dict(state.get(self.section, {}).get(user_id) or {}))

    def get(self, user_id: str, local_id: str) -> Optional[str]:
        return self.all_for_user(user_id).get(local_id)

    def record(self, user_id: str, local_id: str, external_id: str) -> None:
        def _record(state: Dict[str, Any]) -> None:
            StateStore.user_section(state, self.section, user_id, {})[local_id] = external_id

        self.store.mutate(_record)

    def forget(self, user_id: str, local_id: str) -> Optional[str]:
        return self.store.mutate(
            lambda state: StateStore.user_section(state, self.section, user_id, {}).pop(local_id, None)
        )
