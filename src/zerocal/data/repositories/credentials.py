from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ...domain import SyncCredential
from ..store import StateStore


@dataclass(slots=True)
class CredentialRepository:
    store: StateStore
    section: str = "credentials"

    def get(self, user_id: str) -> Optional[SyncCredential]:
        record = self.store.read(lambda state: state.get(self.section, {}).get(user_id))
        if not record:
            return None
        credential = SyncCredential.from_record(record)
        return credential if credential.is_usable else None

    def save(self, user_id: str, credential: SyncCredential) -> None:
        record = credential.to_record()
        record["updated_at"] = StateStore.utc_now()

        def _save(state: Dict[str, Any]) -> None:
            state.setdefault(self.section, {})[user_id] = record

        self.store.mutate(_save)

    def clear(self, user_id: str) -> bool:
        return self.store.mutate(lambda state: state.setdefault(self.section, {}).pop(user_id, None) is not None)
