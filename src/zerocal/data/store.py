from __future__ import annotations

import threading
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

import orjson

from ..config import STATE_FILE

T = TypeVar("T")

DEFAULT_STATE: Dict[str, Any] = {
    "ledger": {},
    "mirror": {},
    "credentials": {},
    "metadata": {},
    "links": {},
    "profiles": {},
    "meta": {"schema_version": 1},
}


class StateStore:
    """File-backed JSON state shared by the local repositories.

    Every read and write goes through one re-entrant lock, so callbacks passed to
    :meth:`mutate` run as atomic read-modify-write steps.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path or STATE_FILE)
        self._state: Optional[Dict[str, Any]] = None
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_materialized(self) -> None:
        if self._state is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            payload = orjson.dumps(DEFAULT_STATE, option=orjson.OPT_INDENT_2)
            self._path.write_bytes(payload + b"\n")
            self._state = deepcopy(DEFAULT_STATE)
            return
        raw = self._path.read_bytes()
        if not raw.strip():
            self._state = deepcopy(DEFAULT_STATE)
            return
        self._state = orjson.loads(raw)
        # Backfill missing sections when upgrading.
        for key, value in DEFAULT_STATE.items():
            if key not in self._state:
                self._state[key] = deepcopy(value)

    def persist(self) -> None:
        with self._lock:
            if self._state is None:
                return
            payload = orjson.dumps(self._state, option=orjson.OPT_INDENT_2)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_bytes(payload + b"\n")
            tmp_path.replace(self._path)

    def read(self, callback: Callable[[Dict[str, Any]], T]) -> T:
        with self._lock:
            self._ensure_materialized()
            assert self._state is not None
            return deepcopy(callback(self._state))

    def mutate(self, callback: Callable[[Dict[str, Any]], T]) -> T:
        with self._lock:
            self._ensure_materialized()
            assert self._state is not None
            result = callback(self._state)
            self.persist()
            return deepcopy(result)

    @staticmethod
    def user_section(state: Dict[str, Any], section: str, user_id: str, default: Any) -> Any:
        return state.setdefault(section, {}).setdefault(user_id, default)

    @staticmethod
    def utc_now() -> str:
        return datetime.now(timezone.utc).replace(microsecond=0).isoformat()
