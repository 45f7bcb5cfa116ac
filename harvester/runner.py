"""Serial batch execution: select, collect, merge, reschedule."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .collect.session import CollectorSession, Deadline
from .config import BatchSettings, MergeSettings, ScheduleSettings
from .data.records import (
    DATA_TYPE_FOLLOWERS,
    DATA_TYPE_FOLLOWING,
    DATA_TYPE_REPLIES,
    DATA_TYPES,
    POST_TYPE_REPLY,
    RawMapping,
    normalize_handle,
)
from .data.store import (
    FREQUENCY_ALL,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
    HarvestStore,
    HarvestTask,
    utcnow,
)
from .errors import CollectorFailure, HarvestError, MergeFailed, StaleRunningTask, StoreUnavailable
from .ingest.merger import IncrementalMerger, MergeResult
from .schedule.rate import RateClassifier
from .schedule.selector import TaskSelector

LOGGER = logging.getLogger(__name__)

SEPARATOR = "━" * 60


@dataclass
class TaskOutcome:
    """Per-task line of a batch report."""

    task_id: Optional[int]
    handle: str
    data_type: str
    status: str
    total: int = 0
    new: int = 0
    updated: int = 0
    discarded: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    frequency_tier: Optional[str] = None
    next_run_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == TASK_STATUS_COMPLETED

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["success"] = self.success
        payload["next_run_at"] = self.next_run_at.isoformat() if self.next_run_at else None
        return payload


@dataclass
class BatchReport:
    start_time: datetime
    continue_on_error: bool = True
    end_time: Optional[datetime] = None
    results: List[TaskOutcome] = field(default_factory=list)
    global_error: Optional[str] = None

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.results if outcome.success)

    @property
    def error_count(self) -> int:
        return sum(1 for outcome in self.results if not outcome.success)

    @property
    def total_new(self) -> int:
        return sum(outcome.new for outcome in self.results)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def exit_code(self) -> int:
        """Non-zero when a task failed under stop-on-error, or the batch itself could not run."""
        if self.global_error:
            return 1
        if self.error_count and not self.continue_on_error:
            return 1
        return 0

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "success_count": self.success_count,
            "error_count": self.error_count,
            "total_new": self.total_new,
            "continue_on_error": self.continue_on_error,
            "global_error": self.global_error,
            "results": [outcome.to_dict() for outcome in self.results],
        }

    def write_json(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        return path


class BatchRunner:
    """Drives tasks one at a time through collection, merge and rescheduling.

    A task is marked ``running`` right before collection, so a crash leaves it
    visibly running. Failures are recorded on the task and never retried here;
    the next selection cycle picks the task up again.
    """

    def __init__(
        self,
        store: HarvestStore,
        session: CollectorSession,
        *,
        selector: Optional[TaskSelector] = None,
        merger: Optional[IncrementalMerger] = None,
        classifier: Optional[RateClassifier] = None,
        batch_settings: Optional[BatchSettings] = None,
        schedule_settings: Optional[ScheduleSettings] = None,
        merge_settings: Optional[MergeSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._session = session
        self._batch_settings = batch_settings or BatchSettings()
        self._schedule_settings = schedule_settings or ScheduleSettings()
        self._selector = selector or TaskSelector(store)
        self._merger = merger or IncrementalMerger(store, merge_settings)
        self._classifier = classifier or RateClassifier(store, self._schedule_settings)
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def run_batch(
        self,
        frequency_tier: str = FREQUENCY_ALL,
        sample_size: Optional[int] = None,
        *,
        only_entities: Optional[Sequence[str]] = None,
        skip_completed: bool = False,
        continue_on_error: Optional[bool] = None,
    ) -> BatchReport:
        if continue_on_error is None:
            continue_on_error = self._batch_settings.continue_on_error
        if sample_size is None:
            sample_size = self._batch_settings.sample_size

        report = BatchReport(start_time=utcnow(), continue_on_error=continue_on_error)
        LOGGER.info(SEPARATOR)
        LOGGER.info("BATCH start: tier=%s sample=%s", frequency_tier, sample_size)
        self._warn_stale_tasks()

        try:
            tasks = self._selector.select_pending_tasks(
                frequency_tier,
                sample_size,
                handles=only_entities,
                skip_completed=skip_completed,
            )
        except StoreUnavailable as exc:
            LOGGER.error("BATCH aborted: could not select tasks: %s", exc)
            report.global_error = str(exc)
            return self._finish(report)

        LOGGER.info("Loaded %s task(s) across %s entit(ies)", len(tasks), len({task.handle for task in tasks}))
        for index, task in enumerate(tasks, start=1):
            outcome = self.run_task(task, index=index, total=len(tasks))
            report.results.append(outcome)
            if not outcome.success and not continue_on_error:
                LOGGER.warning("Stopping batch after failure of @%s %s", task.handle, task.data_type)
                break
            if index < len(tasks) and self._batch_settings.task_pause_seconds > 0:
                self._sleep(self._batch_settings.task_pause_seconds)

        return self._finish(report)

    def _finish(self, report: BatchReport) -> BatchReport:
        report.end_time = utcnow()
        LOGGER.info(SEPARATOR)
        LOGGER.info(
            "BATCH done: success=%s errors=%s new=%s duration=%.1fs",
            report.success_count,
            report.error_count,
            report.total_new,
            report.duration_seconds,
        )
        return report

    def _warn_stale_tasks(self) -> None:
        older_than = timedelta(minutes=self._schedule_settings.stale_after_minutes)
        try:
            stale = self._store.find_stale_running_tasks(older_than)
        except StoreUnavailable as exc:
            LOGGER.error("Could not check for stale running tasks: %s", exc)
            return
        for task in stale:
            LOGGER.warning(
                "%s; left untouched (reset with --reset-stale)",
                StaleRunningTask(task.id, task.handle, task.data_type, task.last_run_at),
            )

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------
    def run_task(self, task: HarvestTask, *, index: int = 1, total: int = 1) -> TaskOutcome:
        """Run one selected task; ``task`` must be the snapshot taken before it runs."""
        LOGGER.info("TASK %s/%s @%s -> %s (max=%s)", index, total, task.handle, task.data_type, task.max_count)
        started = self._clock()
        outcome = TaskOutcome(task.id, task.handle, task.data_type, status=TASK_STATUS_FAILED)

        merging = False
        failure: Optional[HarvestError] = None
        try:
            self._store.mark_task_running(task.id)
            records = self._collect(task.handle, task.data_type, task.max_count)
            merging = True
            result = self._merger.merge(task.handle, task.data_type, records)
        except HarvestError as exc:
            failure = exc
        except Exception as exc:
            LOGGER.exception("Unexpected error for @%s %s", task.handle, task.data_type)
            reason = f"{type(exc).__name__}: {exc}"
            if merging:
                failure = MergeFailed(task.handle, task.data_type, reason)
            else:
                failure = StoreUnavailable("mark_task_running", reason)

        if failure is not None:
            outcome.error = failure.message
            outcome.error_code = failure.error_code
            outcome.duration_seconds = self._clock() - started
            self._record_failure(task, failure)
            LOGGER.error("FAILED @%s %s: %s", task.handle, task.data_type, failure.message)
            return outcome

        outcome.status = TASK_STATUS_COMPLETED
        outcome.total = result.total
        outcome.new = result.new
        outcome.updated = result.updated
        outcome.discarded = result.discarded
        try:
            update = self._classifier.update_schedule(task, result.total)
            outcome.frequency_tier = update.frequency_tier
            outcome.next_run_at = update.next_run_at
        except StoreUnavailable as exc:
            LOGGER.error("Could not persist schedule for @%s %s: %s", task.handle, task.data_type, exc)
            outcome.error = exc.message
            outcome.error_code = exc.error_code
        except Exception as exc:
            LOGGER.exception("Could not persist schedule for @%s %s", task.handle, task.data_type)
            failure = StoreUnavailable("update_schedule", f"{type(exc).__name__}: {exc}")
            outcome.error = failure.message
            outcome.error_code = failure.error_code
        outcome.duration_seconds = self._clock() - started

        LOGGER.info(
            "DONE @%s %s: total=%s new=%s updated=%s (%.1fs)",
            task.handle,
            task.data_type,
            outcome.total,
            outcome.new,
            outcome.updated,
            outcome.duration_seconds,
        )
        return outcome

    def _collect(self, handle: str, data_type: str, max_count: Optional[int]) -> List[RawMapping]:
        deadline = Deadline.after(self._batch_settings.task_timeout_seconds, self._clock)
        try:
            with self._session.scoped() as collector:
                records = collector.collect(handle, data_type, max_count, deadline=deadline)
        except HarvestError:
            raise
        except Exception as exc:
            raise CollectorFailure(handle, data_type, str(exc) or type(exc).__name__) from exc

        if deadline.expired():
            LOGGER.warning("Collection for @%s %s hit the time ceiling; merging %s record(s)", handle, data_type, len(records))
        return list(records or [])

    def _record_failure(self, task: HarvestTask, exc: HarvestError) -> None:
        next_run_at = None
        backoff = self._schedule_settings.failure_backoff_minutes
        now = utcnow()
        if backoff:
            next_run_at = now + timedelta(minutes=backoff)
        try:
            self._store.mark_task_failed(task.id, exc.message, next_run_at=next_run_at, now=now)
        except StoreUnavailable as store_exc:
            LOGGER.error("Could not record failure for @%s %s: %s", task.handle, task.data_type, store_exc)

    # ------------------------------------------------------------------
    # Operator entry points
    # ------------------------------------------------------------------
    def run_single(self, handle: str, data_type: str, max_count: Optional[int] = None) -> MergeResult:
        """Collect and merge one entity/data-type without touching task state."""
        owner = normalize_handle(handle)
        if not owner:
            raise ValueError("handle is required")
        if data_type not in DATA_TYPES:
            raise ValueError(f"Unknown data type: {data_type!r}")
        LOGGER.info("TASK 1/1 @%s -> %s (single run)", owner, data_type)
        records = self._collect(owner, data_type, max_count)
        return self._merger.merge(owner, data_type, records)

    def collection_stats(self, handle: str, data_type: str) -> int:
        """Stored row count for one entity and data type."""
        user_id = self._store.get_user_id(normalize_handle(handle) or "")
        if user_id is None:
            return 0
        if data_type == DATA_TYPE_FOLLOWING:
            return self._store.count_follows(source_user_id=user_id)
        if data_type == DATA_TYPE_FOLLOWERS:
            return self._store.count_follows(target_user_id=user_id)
        if data_type == DATA_TYPE_REPLIES:
            return self._store.count_posts(user_id, post_type=POST_TYPE_REPLY)
        return self._store.count_posts(user_id)
