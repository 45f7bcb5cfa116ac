"""Exception hierarchy for scheduling, collection and ingestion failures."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class HarvestError(Exception):
    """Base class carrying a message, a stable error code and optional details."""

    def __init__(
        self,
        message: str,
        error_code: str = "HARVEST_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class StoreUnavailable(HarvestError):
    """Raised when the entity store cannot be reached or a query fails."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            f"Store unavailable during {operation}: {reason}",
            "STORE_UNAVAILABLE",
            {"operation": operation},
        )
        self.operation = operation


class CollectorFailure(HarvestError):
    """Raised when the collector could not produce records for a task."""

    def __init__(self, handle: str, data_type: str, reason: str) -> None:
        super().__init__(
            f"Collector failed for @{handle} ({data_type}): {reason}",
            "COLLECTOR_FAILURE",
            {"handle": handle, "data_type": data_type},
        )
        self.handle = handle
        self.data_type = data_type


class MergeFailed(HarvestError):
    """Raised when a store write aborts a merge; chunks already written remain."""

    def __init__(self, handle: str, data_type: str, reason: str) -> None:
        super().__init__(
            f"Merge failed for @{handle} ({data_type}): {reason}",
            "MERGE_FAILED",
            {"handle": handle, "data_type": data_type},
        )
        self.handle = handle
        self.data_type = data_type


class InvalidRecord(HarvestError):
    """Raised by normalization for a record lacking a usable unique identifier."""

    def __init__(self, reason: str, record: Optional[Mapping[str, Any]] = None) -> None:
        preview = str(dict(record))[:100] if record is not None else "-"
        super().__init__(f"Invalid record ({reason}): {preview}", "INVALID_RECORD", {"reason": reason})
        self.reason = reason


class StaleRunningTask(HarvestError):
    """Describes a task stuck in ``running`` longer than any plausible run."""

    def __init__(self, task_id: int, handle: str, data_type: str, running_since: Any) -> None:
        super().__init__(
            f"Task {task_id} (@{handle} {data_type}) has been running since {running_since}",
            "STALE_RUNNING_TASK",
            {"task_id": task_id, "handle": handle, "data_type": data_type},
        )
        self.task_id = task_id
