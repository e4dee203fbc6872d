"""Google Calendar v3 client over the REST API.

Credentials are never cached on the client: each call receives the user's
:class:`SyncCredential`. Only :meth:`GoogleCalendarClient.ensure_fresh` and
:meth:`GoogleCalendarClient.refresh` talk to the token endpoint; a 401 from the
API surfaces as :class:`TokenRejected` so the caller can refresh once per user.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from ..config.settings import ProviderSettings
from ..domain import CalendarEvent, EventSource, SyncCredential
from ..domain.models import parse_date, parse_datetime
from ..engine.timezones import STORAGE_ZONE, localize, to_storage
from ..errors import AuthExpired, ProviderRequestError, ProviderUnavailable, TokenRejected, redact
from .base import ExternalProviderClient, ProviderResult

logger = logging.getLogger(__name__)

EXTERNAL_ID_PREFIX = "google_"
DEFAULT_COLOR = "#3b82f6"
COLOR_MAP = {
    "1": "#3b82f6",
    "2": "#10b981",
    "3": "#ef4444",
    "4": "#f59e0b",
    "5": "#8b5cf6",
    "6": "#ec4899",
    "7": "#6366f1",
    "8": "#14b8a6",
    "9": "#f97316",
    "10": "#84cc16",
    "11": "#06b6d4",
}
REVERSE_COLOR_MAP = {value: key for key, value in COLOR_MAP.items()}

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
DEFAULT_EXPIRES_IN = 3600
PAGE_SIZE = 250


def external_id(native_id: str) -> str:
    return f"{EXTERNAL_ID_PREFIX}{native_id}"


def native_id(event_id: str) -> str:
    if event_id.startswith(EXTERNAL_ID_PREFIX):
        return event_id[len(EXTERNAL_ID_PREFIX):]
    return event_id


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return redact(error["message"])
        if isinstance(error, str) and error.strip():
            description = payload.get("error_description")
            return redact(f"{error}: {description}" if description else error)
    text = response.text.strip()
    return redact(text) if text else "Request failed without an error payload"


def _rfc3339(value: datetime) -> str:
    return to_storage(value).isoformat().replace("+00:00", "Z")


def _parse_boundary(payload: Dict[str, Any]) -> Tuple[datetime, bool, Optional[str]]:
    if payload.get("dateTime"):
        return to_storage(parse_datetime(payload["dateTime"])), False, payload.get("timeZone")
    day = parse_date(payload["date"])
    return datetime.combine(day, dtime.min, tzinfo=timezone.utc), True, payload.get("timeZone")


def event_from_google(payload: Dict[str, Any], user_id: str = "") -> CalendarEvent:
    start, all_day, zone = _parse_boundary(payload.get("start") or {})
    end, _, _ = _parse_boundary(payload.get("end") or payload.get("start") or {})
    attendees = [
        {key: item[key] for key in ("email", "displayName", "responseStatus", "optional") if key in item}
        for item in payload.get("attendees") or []
        if isinstance(item, dict)
    ]
    color_id = payload.get("colorId")
    return CalendarEvent(
        id=external_id(str(payload["id"])),
        user_id=user_id,
        title=payload.get("summary") or "",
        start=start,
        end=end,
        timezone=None if all_day else zone,
        all_day=all_day,
        description=payload.get("description"),
        location=payload.get("location"),
        color=COLOR_MAP.get(str(color_id), DEFAULT_COLOR) if color_id else DEFAULT_COLOR,
        attendees=attendees,
        source=EventSource.EXTERNAL,
        source_id=str(payload["id"]),
    )


def event_to_google(event: CalendarEvent) -> Dict[str, Any]:
    body: Dict[str, Any] = {"summary": event.title}
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.all_day:
        end_day = event.end.date()
        if end_day <= event.start.date():
            end_day = event.start.date() + timedelta(days=1)
        body["start"] = {"date": event.start.date().isoformat()}
        body["end"] = {"date": end_day.isoformat()}
    else:
        zone = event.timezone or STORAGE_ZONE
        body["start"] = {"dateTime": localize(event.start, zone).isoformat(), "timeZone": zone}
        body["end"] = {"dateTime": localize(event.end, zone).isoformat(), "timeZone": zone}
    if event.color:
        body["colorId"] = REVERSE_COLOR_MAP.get(event.color, "1")
    attendees = [item for item in event.attendees if isinstance(item, dict) and item.get("email")]
    if attendees:
        body["attendees"] = attendees
    return body


class GoogleCalendarClient(ExternalProviderClient):
    """Synchronous Google Calendar client built on :class:`httpx.Client`."""

    name = "google"

    def __init__(
        self,
        settings: ProviderSettings,
        http_client: Optional[httpx.Client] = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=settings.timeout_seconds)
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def ensure_fresh(self, credential: SyncCredential) -> ProviderResult[SyncCredential]:
        if not credential.is_expired(self._clock(), skew_seconds=self._settings.refresh_skew_seconds):
            return ProviderResult(credential, credential)
        refreshed = self._refresh(credential)
        return ProviderResult(refreshed, refreshed)

    def refresh(self, credential: SyncCredential) -> ProviderResult[SyncCredential]:
        refreshed = self._refresh(credential)
        return ProviderResult(refreshed, refreshed)

    def _refresh(self, credential: SyncCredential) -> SyncCredential:
        if not self._settings.is_configured:
            raise AuthExpired(
                "Google OAuth client is not configured: missing " + ", ".join(self._settings.missing_env_vars)
            )
        try:
            response = self._http.post(
                self._settings.token_url,
                data={
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Google OAuth token refresh request failed: {redact(str(exc))}") from exc

        if response.status_code in RETRY_STATUS_CODES:
            raise ProviderUnavailable(f"Google OAuth token endpoint unavailable ({response.status_code})")
        if not response.is_success:
            raise AuthExpired(f"Google OAuth token refresh failed ({response.status_code}): {_error_message(response)}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthExpired("Google OAuth token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthExpired("Google OAuth token response is missing a non-empty access_token")

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN
        logger.info("Refreshed Google access token")
        return SyncCredential(
            access_token=access_token.strip(),
            refresh_token=payload.get("refresh_token") or credential.refresh_token,
            expires_at=int(self._clock() + expires_in),
            provider=credential.provider,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _send(
        self,
        credential: SyncCredential,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {credential.access_token}", "Accept": "application/json"}
        try:
            return self._http.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"Google Calendar request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Google Calendar request failed: {redact(str(exc))}") from exc

    def _backoff(self, response: httpx.Response, attempt: int) -> float:
        delay = self._settings.backoff_seconds * (2**attempt)
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                delay = float(retry_after)
            except ValueError:
                pass
        return min(max(delay, 0.0), self._settings.max_retry_after_seconds)

    def _request(
        self,
        credential: SyncCredential,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[httpx.Response, SyncCredential]:
        url = f"{self._settings.api_base.rstrip('/')}{path}"
        response = self._send(credential, method, url, params, json_body)

        attempt = 0
        while response.status_code in RETRY_STATUS_CODES and attempt < self._settings.max_retries:
            delay = self._backoff(response, attempt)
            logger.warning(
                "Google Calendar returned %d, retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                delay,
                attempt + 1,
                self._settings.max_retries,
            )
            self._sleep(delay)
            response = self._send(credential, method, url, params, json_body)
            attempt += 1

        if response.status_code in RETRY_STATUS_CODES:
            raise ProviderUnavailable(
                f"Google Calendar unavailable ({response.status_code}): {_error_message(response)}"
            )
        if response.status_code == 401:
            raise TokenRejected(f"Google Calendar rejected the access token: {_error_message(response)}")
        return response, credential

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        if not response.is_success:
            raise ProviderRequestError(status_code=response.status_code, message=_error_message(response))
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                status_code=response.status_code, message="Google Calendar returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(status_code=response.status_code, message="Unexpected payload shape")
        return payload

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(self._settings.calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(native_id(event_id), safe='')}"
        return path

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def list_events(
        self,
        credential: SyncCredential,
        start: datetime,
        end: datetime,
    ) -> ProviderResult[List[CalendarEvent]]:
        params: Dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
            "maxResults": PAGE_SIZE,
            "timeMin": _rfc3339(start),
            "timeMax": _rfc3339(end),
        }
        events: List[CalendarEvent] = []
        while True:
            response, credential = self._request(credential, "GET", self._events_path(), params=params)
            payload = self._json(response)
            for item in payload.get("items") or []:
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                if not item.get("id") or not item.get("start"):
                    logger.debug("Skipping malformed Google event payload")
                    continue
                events.append(event_from_google(item))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}
        logger.debug("Fetched %d Google event(s)", len(events))
        return ProviderResult(events, credential)

    def create_event(self, credential: SyncCredential, event: CalendarEvent) -> ProviderResult[CalendarEvent]:
        response, credential = self._request(
            credential, "POST", self._events_path(), json_body=event_to_google(event)
        )
        created = event_from_google(self._json(response), event.user_id)
        return ProviderResult(created, credential)

    def update_event(
        self,
        credential: SyncCredential,
        event: CalendarEvent,
    ) -> ProviderResult[Optional[CalendarEvent]]:
        target = event.source_id or event.id
        response, credential = self._request(
            credential, "PUT", self._events_path(target), json_body=event_to_google(event)
        )
        if response.status_code in (404, 410):
            return ProviderResult(None, credential)
        updated = event_from_google(self._json(response), event.user_id)
        return ProviderResult(updated, credential)

    def delete_event(self, credential: SyncCredential, event_id: str) -> ProviderResult[bool]:
        response, credential = self._request(credential, "DELETE", self._events_path(event_id))
        if response.status_code in (404, 410):
            return ProviderResult(False, credential)
        self._json(response)
        return ProviderResult(True, credential)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()


__all__ = [
    "COLOR_MAP",
    "EXTERNAL_ID_PREFIX",
    "GoogleCalendarClient",
    "event_from_google",
    "event_to_google",
    "external_id",
    "native_id",
]
