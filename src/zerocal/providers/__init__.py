"""External calendar providers."""

from __future__ import annotations

from .base import ExternalProviderClient, ProviderResult
from .google import GoogleCalendarClient

__all__ = ["ExternalProviderClient", "GoogleCalendarClient", "ProviderResult"]
