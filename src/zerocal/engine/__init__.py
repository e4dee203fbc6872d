"""Pure calendar math: recurrence expansion, timezone normalization, availability."""

from __future__ import annotations

from .availability import find_conflicts, find_free_slots, find_optimal_meeting_time
from .recurrence import expand, instance_id, is_occurrence, occurrence_on, parse_instance_id, validate_rule
from .timezones import normalize, normalize_to, resolve_zone, to_millis, to_storage

__all__ = [
    "expand",
    "find_conflicts",
    "find_free_slots",
    "find_optimal_meeting_time",
    "instance_id",
    "is_occurrence",
    "normalize",
    "normalize_to",
    "occurrence_on",
    "parse_instance_id",
    "resolve_zone",
    "to_millis",
    "to_storage",
    "validate_rule",
]
