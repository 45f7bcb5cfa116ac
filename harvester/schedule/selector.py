"""Entity-level random sampling of eligible collection tasks."""
from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import List, Optional, Sequence

from ..data.records import normalize_handle
from ..data.store import FREQUENCY_ALL, TASK_STATUS_COMPLETED, HarvestStore, HarvestTask, utcnow

LOGGER = logging.getLogger(__name__)


class TaskSelector:
    """Pick the next batch of tasks.

    Eligibility: enabled, not running, next run elapsed (or never set) and,
    unless the filter is ``"all"``, in the requested frequency tier. Sampling
    draws entities, not tasks, so an entity with many tasks cannot crowd out
    the rest; every eligible task of a sampled entity is returned.
    """

    def __init__(self, store: HarvestStore, rng: Optional[random.Random] = None) -> None:
        self._store = store
        self._rng = rng or random.Random()

    def select_pending_tasks(
        self,
        frequency_filter: str = FREQUENCY_ALL,
        sample_size: int = 50,
        *,
        handles: Optional[Sequence[str]] = None,
        skip_completed: bool = False,
        now: Optional[datetime] = None,
    ) -> List[HarvestTask]:
        if sample_size <= 0:
            return []
        now = now or utcnow()
        restrict = None
        if handles:
            restrict = [h for h in (normalize_handle(raw) for raw in handles) if h]

        eligible = self._store.eligible_handles(now, frequency_filter, restrict)
        if len(eligible) > sample_size:
            sampled = sorted(self._rng.sample(eligible, sample_size))
        else:
            sampled = eligible

        tasks = self._store.eligible_tasks(sampled, now, frequency_filter)
        if skip_completed:
            tasks = [task for task in tasks if task.status != TASK_STATUS_COMPLETED]

        LOGGER.debug(
            "Eligible entities=%s sampled=%s tasks=%s (filter=%s)",
            len(eligible),
            len(sampled),
            len(tasks),
            frequency_filter,
        )
        return tasks
