from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..store import StateStore


@dataclass(slots=True)
class ProfileRepository:
    store: StateStore
    section: str = "profiles"

    def fetch(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.store.read(lambda state: state.get(self.section, {}).get(user_id))

    def exists(self, user_id: str) -> bool:
        return self.fetch(user_id) is not None

    def timezone_for(self, user_id: str, default: str) -> str:
        profile = self.fetch(user_id) or {}
        return profile.get("timezone") or default

    def set_timezone(self, user_id: str, timezone: str) -> Dict[str, Any]:
        def _update(state: Dict[str, Any]) -> Dict[str, Any]:
            profile = state.setdefault(self.section, {}).setdefault(user_id, {"id": user_id})
            profile["timezone"] = timezone
            profile["updated_at"] = StateStore.utc_now()
            return profile

        return self.store.mutate(_update)
