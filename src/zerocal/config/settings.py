from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .paths import STATE_FILE

load_dotenv()


@dataclass(frozen=True)
class ProviderSettings:
    client_id: Optional[str]
    client_secret: Optional[str]
    calendar_id: str = "primary"
    api_base: str = "https://www.googleapis.com/calendar/v3"
    token_url: str = "https://oauth2.googleapis.com/token"
    timeout_seconds: float = 10.0
    refresh_skew_seconds: int = 300
    max_retries: int = 2
    backoff_seconds: float = 0.5
    max_retry_after_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def missing_env_vars(self) -> list[str]:
        missing = []
        if not self.client_id:
            missing.append("GOOGLE_CLIENT_ID")
        if not self.client_secret:
            missing.append("GOOGLE_CLIENT_SECRET")
        return missing


@dataclass(frozen=True)
class SyncSettings:
    window_before: timedelta = timedelta(days=30)
    window_after: timedelta = timedelta(days=90)
    search_horizon: timedelta = timedelta(days=365)


@dataclass(frozen=True)
class ConcurrencySettings:
    io_workers: int = 4
    expansion_workers: int = 4
    ledger_workers: int = 2
    io_timeout_seconds: float = 15.0


@dataclass(frozen=True)
class AvailabilitySettings:
    default_timezone: str = "UTC"
    work_start_hour: int = 9
    work_end_hour: int = 17


@dataclass(frozen=True)
class SupabaseSettings:
    url: Optional[str] = None
    anon_key: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.anon_key)


@dataclass(frozen=True)
class StorageSettings:
    backend: str = "json"
    state_file: Path = STATE_FILE
    events_table: str = "calendar_ledger"


@dataclass(frozen=True)
class AppSettings:
    provider: ProviderSettings
    sync: SyncSettings
    concurrency: ConcurrencySettings
    availability: AvailabilitySettings
    storage: StorageSettings
    supabase: SupabaseSettings


def _days_from_env(name: str, default_days: int) -> timedelta:
    raw = os.getenv(name)
    if not raw:
        return timedelta(days=default_days)
    try:
        days = float(raw)
    except ValueError:
        return timedelta(days=default_days)
    return timedelta(days=days)


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_from_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    provider = ProviderSettings(
        client_id=os.getenv("GOOGLE_CLIENT_ID"),
        client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
        calendar_id=os.getenv("GOOGLE_CALENDAR_ID", "primary"),
        api_base=os.getenv("GOOGLE_CALENDAR_API_BASE", "https://www.googleapis.com/calendar/v3"),
        token_url=os.getenv("GOOGLE_OAUTH_TOKEN_URL", "https://oauth2.googleapis.com/token"),
        timeout_seconds=_float_from_env("ZEROCAL_PROVIDER_TIMEOUT_SECONDS", 10.0),
        refresh_skew_seconds=_int_from_env("ZEROCAL_TOKEN_REFRESH_SKEW_SECONDS", 300),
        max_retries=_int_from_env("ZEROCAL_PROVIDER_MAX_RETRIES", 2),
        backoff_seconds=_float_from_env("ZEROCAL_PROVIDER_BACKOFF_SECONDS", 0.5),
        max_retry_after_seconds=_float_from_env("ZEROCAL_PROVIDER_MAX_RETRY_AFTER_SECONDS", 30.0),
    )

    sync = SyncSettings(
        window_before=_days_from_env("ZEROCAL_SYNC_WINDOW_BEFORE_DAYS", 30),
        window_after=_days_from_env("ZEROCAL_SYNC_WINDOW_AFTER_DAYS", 90),
        search_horizon=_days_from_env("ZEROCAL_SEARCH_HORIZON_DAYS", 365),
    )

    concurrency = ConcurrencySettings(
        io_workers=max(_int_from_env("ZEROCAL_IO_WORKERS", 4), 2),
        expansion_workers=max(_int_from_env("ZEROCAL_EXPANSION_WORKERS", 4), 1),
        ledger_workers=max(_int_from_env("ZEROCAL_LEDGER_WORKERS", 2), 1),
        io_timeout_seconds=_float_from_env("ZEROCAL_IO_TIMEOUT_SECONDS", 15.0),
    )

    availability = AvailabilitySettings(
        default_timezone=os.getenv("ZEROCAL_DEFAULT_TIMEZONE", "UTC"),
        work_start_hour=_int_from_env("ZEROCAL_WORK_START_HOUR", 9),
        work_end_hour=_int_from_env("ZEROCAL_WORK_END_HOUR", 17),
    )

    storage = StorageSettings(
        backend=os.getenv("ZEROCAL_STORAGE_BACKEND", "json").lower(),
        state_file=Path(os.getenv("ZEROCAL_STATE_FILE") or STATE_FILE),
        events_table=os.getenv("SUPABASE_EVENTS_TABLE", "calendar_ledger"),
    )

    supabase = SupabaseSettings(
        url=os.getenv("SUPABASE_URL"),
        anon_key=os.getenv("SUPABASE_ANON_KEY"),
    )

    return AppSettings(
        provider=provider,
        sync=sync,
        concurrency=concurrency,
        availability=availability,
        storage=storage,
        supabase=supabase,
    )
