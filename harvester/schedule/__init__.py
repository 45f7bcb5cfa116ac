"""Task selection and rate-driven rescheduling."""

from __future__ import annotations

from .rate import RateClassifier, ScheduleUpdate
from .selector import TaskSelector

__all__ = [
    "RateClassifier",
    "ScheduleUpdate",
    "TaskSelector",
]
