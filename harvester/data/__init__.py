"""Entity store and raw record normalization."""

from __future__ import annotations

from .records import RawFollowRecord, RawPostRecord, normalize_records
from .store import HarvestStore, HarvestTask, create_store_engine, get_store

__all__ = [
    "HarvestStore",
    "HarvestTask",
    "RawFollowRecord",
    "RawPostRecord",
    "create_store_engine",
    "get_store",
    "normalize_records",
]
