"""Closed set of operations exposed to callers.

Every operation validates its payload with a pydantic request model, calls the
matching service and returns a JSON-compatible dict.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union, assert_never

from pydantic import ValidationError as PayloadError

from ..errors import ValidationError
from .models import (
    ConflictsRequest,
    CreateEventRequest,
    DeleteEventRequest,
    EventPayload,
    FreeSlotsRequest,
    MeetingPayload,
    MeetingRequest,
    SearchRequest,
    SlotPayload,
    SyncRequest,
    UpdateEventRequest,
    WindowRequest,
)
from .state import ApiState, default_state

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    GET_EVENTS = "get_events"
    CREATE_EVENT = "create_event"
    UPDATE_EVENT = "update_event"
    DELETE_EVENT = "delete_event"
    SEARCH_EVENTS = "search_events"
    FIND_FREE_SLOTS = "find_free_slots"
    FIND_CONFLICTS = "find_conflicts"
    FIND_MEETING_TIME = "find_meeting_time"
    SYNC_EXTERNAL = "sync_external"


def _parse_operation(name: Union[Operation, str]) -> Operation:
    try:
        return Operation(name)
    except ValueError as exc:
        raise ValidationError(f"Unknown operation: {name!r}") from exc


def dispatch(
    operation: Union[Operation, str],
    payload: Mapping[str, Any],
    *,
    state: Optional[ApiState] = None,
) -> Dict[str, Any]:
    op = _parse_operation(operation)
    state = state or default_state()
    logger.debug("Dispatching %s", op.value)
    try:
        return _run(op, dict(payload), state)
    except PayloadError as exc:
        raise ValidationError(f"Invalid payload for {op.value}: {exc.error_count()} error(s)") from exc


def _run(op: Operation, payload: Dict[str, Any], state: ApiState) -> Dict[str, Any]:
    calendar = state.calendar
    availability = state.availability

    if op is Operation.GET_EVENTS:
        request = WindowRequest.model_validate(payload)
        result = calendar.resolve_events(request.user_id, request.start, request.end, timeout=request.timeout)
        return {
            "events": [EventPayload.from_domain(event).model_dump() for event in result.events],
            "external_status": result.external_status,
            "auth_failed": result.auth_failed,
            "failed_masters": list(result.failed_masters),
        }
    elif op is Operation.CREATE_EVENT:
        request = CreateEventRequest.model_validate(payload)
        event = calendar.create_event(request.event.to_domain(request.user_id), local_only=request.local_only)
        return {"event": EventPayload.from_domain(event).model_dump()}
    elif op is Operation.UPDATE_EVENT:
        request = UpdateEventRequest.model_validate(payload)
        if not request.event.id:
            raise ValidationError("update_event requires an event id")
        updated = calendar.update_event(request.event.to_domain(request.user_id))
        return {"event": EventPayload.from_domain(updated).model_dump() if updated else None}
    elif op is Operation.DELETE_EVENT:
        request = DeleteEventRequest.model_validate(payload)
        deleted = calendar.delete_event(request.user_id, request.event_id, request.delete_all_instances)
        return {"deleted": deleted}
    elif op is Operation.SEARCH_EVENTS:
        request = SearchRequest.model_validate(payload)
        events = calendar.search_events(request.user_id, request.query)
        return {"events": [EventPayload.from_domain(event).model_dump() for event in events]}
    elif op is Operation.FIND_FREE_SLOTS:
        request = FreeSlotsRequest.model_validate(payload)
        slots = availability.find_free_slots(
            request.user_id,
            request.start,
            request.end,
            request.min_duration_minutes,
            work_start_hour=request.work_start_hour,
            work_end_hour=request.work_end_hour,
        )
        return {"slots": [SlotPayload.from_domain(slot).model_dump() for slot in slots]}
    elif op is Operation.FIND_CONFLICTS:
        request = ConflictsRequest.model_validate(payload)
        conflict = availability.find_conflicts(
            request.user_id,
            request.start,
            request.end,
            request.buffer_minutes,
            exclude_event_id=request.exclude_event_id,
        )
        return {"conflict": conflict}
    elif op is Operation.FIND_MEETING_TIME:
        request = MeetingRequest.model_validate(payload)
        suggestion = availability.find_meeting_time(
            request.user_ids,
            request.start,
            request.end,
            request.duration_minutes,
            work_start_hour=request.work_start_hour,
            work_end_hour=request.work_end_hour,
        )
        return MeetingPayload.from_domain(suggestion).model_dump()
    elif op is Operation.SYNC_EXTERNAL:
        request = SyncRequest.model_validate(payload)
        return calendar.sync_external(request.user_id).to_record()
    else:
        assert_never(op)


__all__ = ["Operation", "dispatch"]
