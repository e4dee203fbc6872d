"""zerocal: recurring event resolution and multi-source calendar merging."""

from __future__ import annotations

from .cli import main as main

__all__ = ["main"]
