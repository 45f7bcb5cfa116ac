"""Collector interface and scoped ownership of the shared collection resource."""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional

from ..data.records import RawMapping

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Deadline:
    """Hard wall-clock ceiling for one collection."""

    expires_at: float
    clock: Callable[[], float] = field(default=time.monotonic, compare=False, repr=False)

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(expires_at=clock() + seconds, clock=clock)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        return self.clock() >= self.expires_at


class Collector(ABC):
    """Produces raw records for one entity and data type."""

    @abstractmethod
    def collect(
        self,
        handle: str,
        data_type: str,
        max_count: Optional[int] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[RawMapping]:
        """Return whatever was collected; fewer than ``max_count`` is normal.

        When ``deadline`` passes, stop waiting and return the rows read so far.
        """


class CollectorSession:
    """Owns the collector resource shared by every task of a run.

    Tasks borrow the collector through :meth:`scoped`, which releases it even
    when the task fails. :meth:`close` tears the resource down.
    """

    def __init__(self, collector: Optional[Collector] = None) -> None:
        self._collector = collector

    def acquire(self) -> Collector:
        if self._collector is None:
            raise RuntimeError("CollectorSession has no collector to hand out")
        return self._collector

    def release(self, collector: Collector) -> None:
        """Hook for subclasses to reset per-task state."""

    def close(self) -> None:
        """Hook for subclasses owning external processes."""

    @contextmanager
    def scoped(self) -> Iterator[Collector]:
        collector = self.acquire()
        try:
            yield collector
        finally:
            try:
                self.release(collector)
            except Exception:
                LOGGER.exception("Failed to release collector; keeping task outcome")

    def __enter__(self) -> "CollectorSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
