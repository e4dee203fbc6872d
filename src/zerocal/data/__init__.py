"""Data access layer."""

from __future__ import annotations

from .store import StateStore
from .supabase import SupabaseGateway, SupabaseNotInitializedError

__all__ = ["StateStore", "SupabaseGateway", "SupabaseNotInitializedError"]
