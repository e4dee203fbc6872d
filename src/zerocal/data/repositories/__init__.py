"""Repositories over the local state file and Supabase."""

from __future__ import annotations

from .credentials import CredentialRepository
from .events import EventLedger, JsonEventLedger, SupabaseEventLedger
from .metadata import EventMetadataRepository, SyncLinkRepository
from .profiles import ProfileRepository

__all__ = [
    "CredentialRepository",
    "EventLedger",
    "EventMetadataRepository",
    "JsonEventLedger",
    "ProfileRepository",
    "SupabaseEventLedger",
    "SyncLinkRepository",
]
