"""Collectors producing raw records, and the session that owns them."""

from __future__ import annotations

from .session import Collector, CollectorSession, Deadline

__all__ = [
    "Collector",
    "CollectorSession",
    "Deadline",
]
