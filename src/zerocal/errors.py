from __future__ import annotations

import re
from typing import Optional


class CalendarError(RuntimeError):
    """Base error for calendar resolution failures."""


class ValidationError(CalendarError, ValueError):
    """Raised when an event, rule, zone, or window is malformed."""


class ProviderError(CalendarError):
    """Base error raised by external provider clients."""


class ProviderUnavailable(ProviderError):
    """Raised when the provider cannot be reached, times out, or keeps rate limiting."""


class ProviderRequestError(ProviderError):
    """Raised when the provider rejects a request with a non-retryable status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Provider request failed ({status_code}): {message}")


class AuthExpired(ProviderError):
    """Raised when the access token cannot be refreshed."""


class TokenRejected(ProviderError):
    """Raised when the provider answers 401 to a request made with an access token."""


class ExternalNotConnected(CalendarError):
    """Raised when an external operation is requested for a user without credentials."""


class LedgerUnavailable(CalendarError):
    """Raised when the local ledger does not answer within the allotted time."""


_TOKEN_PATTERN = re.compile(
    r"(?i)\b(client_secret|refresh_token|access_token|token)(['\"]?\s*[:=]\s*['\"]?)([^\s,;'\"]+)"
)


def redact(message: str, *, limit: Optional[int] = 200) -> str:
    """Strip token values from ``message`` and collapse whitespace."""

    redacted = _TOKEN_PATTERN.sub(r"\1\2[REDACTED]", message)
    normalized = " ".join(redacted.split())
    return normalized[:limit] if limit else normalized


__all__ = [
    "AuthExpired",
    "CalendarError",
    "ExternalNotConnected",
    "LedgerUnavailable",
    "ProviderError",
    "ProviderRequestError",
    "ProviderUnavailable",
    "TokenRejected",
    "ValidationError",
    "redact",
]
