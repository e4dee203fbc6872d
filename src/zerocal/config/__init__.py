"""Configuration models and helpers."""

from __future__ import annotations

from .paths import DATA_DIR, STATE_FILE, ensure_data_dir
from .settings import (
    AppSettings,
    AvailabilitySettings,
    ConcurrencySettings,
    ProviderSettings,
    StorageSettings,
    SupabaseSettings,
    SyncSettings,
    get_settings,
)

__all__ = [
    "AppSettings",
    "AvailabilitySettings",
    "ConcurrencySettings",
    "DATA_DIR",
    "ProviderSettings",
    "STATE_FILE",
    "StorageSettings",
    "SupabaseSettings",
    "SyncSettings",
    "ensure_data_dir",
    "get_settings",
]
