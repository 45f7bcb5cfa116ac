"""Tests for entity-level task sampling."""
from __future__ import annotations

import random
from datetime import timedelta

import pytest

from harvester.data.store import TASK_STATUS_COMPLETED, HarvestStore
from harvester.errors import StoreUnavailable
from harvester.schedule.selector import TaskSelector


@pytest.mark.integration
class TestSelectorAgainstSqlite:
    def _register(self, store: HarvestStore, now, *keys):
        for handle, data_type in keys:
            store.upsert_task(handle, data_type, now=now)

    def test_returns_every_task_of_sampled_entities(self, harvest_store, fixed_now):
        self._register(
            harvest_store,
            fixed_now,
            ("alice", "posts"),
            ("alice", "followers"),
            ("alice", "following"),
            ("bob", "posts"),
            ("carol", "posts"),
        )
        selector = TaskSelector(harvest_store, rng=random.Random(7))

        tasks = selector.select_pending_tasks(sample_size=2, now=fixed_now)

        handles = {task.handle for task in tasks}
        assert len(handles) == 2
        if "alice" in handles:
            assert {t.data_type for t in tasks if t.handle == "alice"} == {"posts", "followers", "following"}
        assert [task.handle for task in tasks] == sorted(task.handle for task in tasks)

    def test_fewer_eligible_than_sample_returns_all(self, harvest_store, fixed_now):
        self._register(harvest_store, fixed_now, ("alice", "posts"), ("bob", "posts"))
        tasks = TaskSelector(harvest_store).select_pending_tasks(sample_size=50, now=fixed_now)
        assert [(t.handle, t.data_type) for t in tasks] == [("alice", "posts"), ("bob", "posts")]

    def test_frequency_filter(self, harvest_store, fixed_now):
        self._register(harvest_store, fixed_now, ("alice", "posts"), ("bob", "posts"))
        bob = harvest_store.find_task("bob", "posts")
        harvest_store.record_task_schedule(
            bob.id,
            status=TASK_STATUS_COMPLETED,
            frequency_tier="high",
            avg_posts_per_day=4.0,
            last_post_count=10,
            next_run_at=fixed_now - timedelta(minutes=1),
            now=fixed_now,
        )

        tasks = TaskSelector(harvest_store).select_pending_tasks("high", 50, now=fixed_now)
        assert [t.handle for t in tasks] == ["bob"]

    def test_only_entities_is_applied_before_sampling(self, harvest_store, fixed_now):
        self._register(harvest_store, fixed_now, ("alice", "posts"), ("bob", "posts"), ("carol", "posts"))
        tasks = TaskSelector(harvest_store).select_pending_tasks(
            sample_size=1, handles=["@Carol"], now=fixed_now
        )
        assert [t.handle for t in tasks] == ["carol"]

    def test_skip_completed(self, harvest_store, fixed_now):
        self._register(harvest_store, fixed_now, ("alice", "posts"), ("alice", "replies"))
        done = harvest_store.find_task("alice", "posts")
        harvest_store.record_task_schedule(
            done.id,
            status=TASK_STATUS_COMPLETED,
            frequency_tier="medium",
            avg_posts_per_day=1.0,
            last_post_count=3,
            next_run_at=fixed_now,
            now=fixed_now - timedelta(hours=12),
        )

        tasks = TaskSelector(harvest_store).select_pending_tasks(skip_completed=True, now=fixed_now)
        assert [t.data_type for t in tasks] == ["replies"]


@pytest.mark.unit
class TestSelectorWithRecordingStore:
    def test_zero_sample_size_selects_nothing(self, recording_store, fixed_now):
        recording_store.add_task("alice")
        assert TaskSelector(recording_store).select_pending_tasks(sample_size=0, now=fixed_now) == []
        assert recording_store.calls == []

    def test_store_failure_propagates_without_partial_result(self, recording_store, fixed_now):
        recording_store.add_task("alice")
        recording_store.fail_on("eligible_tasks", StoreUnavailable("eligible_tasks", "connection refused"))

        with pytest.raises(StoreUnavailable):
            TaskSelector(recording_store).select_pending_tasks(now=fixed_now)

    def test_sampling_is_reproducible_with_seeded_rng(self, recording_store, fixed_now):
        for handle in "abcdefgh":
            recording_store.add_task(handle)

        first = TaskSelector(recording_store, rng=random.Random(3)).select_pending_tasks(sample_size=3, now=fixed_now)
        second = TaskSelector(recording_store, rng=random.Random(3)).select_pending_tasks(sample_size=3, now=fixed_now)

        assert [t.id for t in first] == [t.id for t in second]
        assert len(first) == 3
