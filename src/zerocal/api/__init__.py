"""Operation dispatch and payload models."""

from __future__ import annotations

from .operations import Operation, dispatch
from .state import ApiState, default_state

__all__ = ["ApiState", "Operation", "default_state", "dispatch"]
