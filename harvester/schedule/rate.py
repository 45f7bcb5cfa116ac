"""Adaptive polling cadence from observed post production rate."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..config import ScheduleSettings
from ..data.records import DATA_TYPE_POSTS
from ..data.store import TASK_STATUS_COMPLETED, HarvestStore, HarvestTask, utcnow

LOGGER = logging.getLogger(__name__)

# Ordered from least to most urgent.
FREQUENCY_TIERS = ("very_low", "low", "medium", "medium_high", "high", "very_high")

TIER_THRESHOLDS = (
    (7.0, "very_high"),
    (3.5, "high"),
    (1.6, "medium_high"),
    (0.8, "medium"),
    (0.3, "low"),
)

TIER_INTERVAL_HOURS = {
    "very_high": 7,
    "high": 8,
    "medium_high": 10,
    "medium": 12,
    "low": 18,
    "very_low": 24,
}
FALLBACK_INTERVAL_HOURS = 12

FIXED_TIER = "low"
FIXED_INTERVAL_HOURS = 18

MIN_RATE = 0.0
MAX_RATE = 100.0
SHORT_INTERVAL_DAYS = 0.04
HALF_DAY = 0.5


@dataclass(frozen=True)
class ScheduleUpdate:
    """Outcome of one classification, as persisted on the task."""

    frequency_tier: str
    next_run_at: datetime
    avg_posts_per_day: Optional[float]
    interval_hours: int
    observed_total: int
    delta: int


def smooth_rate(
    prior_rate: Optional[float],
    delta: int,
    days_since_last_run: Optional[float],
    default_rate: float = 2.0,
) -> float:
    """Blend the prior rate with the rate observed since the last run.

    ``days_since_last_run`` of ``None`` marks a first observation, which seeds
    the prior rate (or ``default_rate``). A zero prior counts as unknown.
    """

    if days_since_last_run is None or days_since_last_run < SHORT_INTERVAL_DAYS:
        rate = prior_rate or default_rate
    else:
        current = max(delta, 0) / days_since_last_run
        if days_since_last_run < HALF_DAY:
            rate = 0.7 * (prior_rate or default_rate) + 0.3 * current
        else:
            rate = 0.3 * (prior_rate or current) + 0.7 * current
    return min(max(rate, MIN_RATE), MAX_RATE)


def classify_rate(rate: float) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if rate >= threshold:
            return tier
    return "very_low"


def interval_for_tier(tier: str) -> int:
    return TIER_INTERVAL_HOURS.get(tier, FALLBACK_INTERVAL_HOURS)


def clamp_to_window(
    moment: datetime,
    window_start_hour: int,
    window_end_hour: int,
    utc_offset_hours: int = 0,
) -> datetime:
    """Move a naive-UTC ``moment`` into the local operational window.

    Before the window start it moves to the start of the same local day; at or
    after the window end it moves to the start of the next local day.
    """

    offset = timedelta(hours=utc_offset_hours)
    local = moment + offset
    if local.hour < window_start_hour:
        local = local.replace(hour=window_start_hour, minute=0, second=0, microsecond=0)
    elif local.hour >= window_end_hour:
        local = (local + timedelta(days=1)).replace(
            hour=window_start_hour, minute=0, second=0, microsecond=0
        )
    return local - offset


class RateClassifier:
    """Turns a completed run's observed total into a tier and next eligible run."""

    def __init__(self, store: HarvestStore, settings: Optional[ScheduleSettings] = None) -> None:
        self._store = store
        self._settings = settings or ScheduleSettings()

    def compute_schedule(
        self, task: HarvestTask, observed_total_count: int, *, now: Optional[datetime] = None
    ) -> ScheduleUpdate:
        """Pure part of :meth:`update_schedule`; ``task`` is the pre-run snapshot."""
        now = now or utcnow()
        previous_total = task.last_post_count or 0
        delta = max(0, observed_total_count - previous_total)

        if task.data_type != DATA_TYPE_POSTS:
            tier = FIXED_TIER
            interval = FIXED_INTERVAL_HOURS
            rate = task.avg_posts_per_day
        else:
            if task.last_run_at is None or not task.last_post_count:
                days = None
            else:
                days = (now - task.last_run_at).total_seconds() / 86400
            rate = smooth_rate(task.avg_posts_per_day, delta, days, self._settings.default_rate)
            tier = classify_rate(rate)
            interval = interval_for_tier(tier)

        next_run = clamp_to_window(
            now + timedelta(hours=interval),
            self._settings.window_start_hour,
            self._settings.window_end_hour,
            self._settings.utc_offset_hours,
        )
        return ScheduleUpdate(
            frequency_tier=tier,
            next_run_at=next_run,
            avg_posts_per_day=rate,
            interval_hours=interval,
            observed_total=observed_total_count,
            delta=delta,
        )

    def update_schedule(
        self,
        task: HarvestTask,
        observed_total_count: int,
        *,
        now: Optional[datetime] = None,
        status: str = TASK_STATUS_COMPLETED,
    ) -> ScheduleUpdate:
        """Classify and persist tier, rate, count and next run with ``status``."""
        now = now or utcnow()
        update = self.compute_schedule(task, observed_total_count, now=now)
        self._store.record_task_schedule(
            task.id,
            status=status,
            frequency_tier=update.frequency_tier,
            avg_posts_per_day=update.avg_posts_per_day,
            last_post_count=observed_total_count,
            next_run_at=update.next_run_at,
            now=now,
        )
        rate_text = f"{update.avg_posts_per_day:.2f}/day" if update.avg_posts_per_day is not None else "n/a"
        LOGGER.info(
            "Schedule @%s %s: tier=%s rate=%s (+%s) interval=%sh next=%s",
            task.handle,
            task.data_type,
            update.frequency_tier,
            rate_text,
            update.delta,
            update.interval_hours,
            update.next_run_at.isoformat(timespec="minutes"),
        )
        return update
