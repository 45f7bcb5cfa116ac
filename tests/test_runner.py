"""Tests for serial batch execution and the batch report."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

import pytest

from harvester.collect.session import CollectorSession
from harvester.config import BatchSettings, ScheduleSettings
from harvester.errors import StoreUnavailable
from harvester.runner import BatchReport, BatchRunner, TaskOutcome

NO_PAUSE = BatchSettings(task_pause_seconds=0)


def _posts(*ids):
    return [{"ID": post_id, "Text": f"post {post_id}", "Type": "Tweet"} for post_id in ids]


@pytest.fixture
def make_runner(recording_store, collector_session):
    def _make(**overrides):
        overrides.setdefault("batch_settings", NO_PAUSE)
        return BatchRunner(recording_store, collector_session, **overrides)

    return _make


# ==============================================================================
# Batch execution
# ==============================================================================

@pytest.mark.unit
class TestRunBatch:
    def test_store_outage_on_one_task_keeps_batch_going(self, recording_store, scripted_collector, make_runner):
        for handle in ("alice", "bob", "carol"):
            recording_store.add_task(handle)
            scripted_collector.script[(handle, "posts")] = _posts(f"{handle}-1", f"{handle}-2")

        def fail_for_bob(context):
            if context["user_ids"] == {recording_store.users.get("bob")}:
                return StoreUnavailable("upsert_posts", "server has gone away")
            return None

        recording_store.fail_on("upsert_posts", fail_for_bob)

        report = make_runner().run_batch()

        assert report.success_count == 2
        assert report.error_count == 1
        assert report.exit_code == 0
        [failed] = [outcome for outcome in report.results if not outcome.success]
        assert failed.handle == "bob"
        assert failed.error_code == "MERGE_FAILED"
        statuses = {task.handle: task.status for task in recording_store.tasks.values()}
        assert statuses == {"alice": "completed", "bob": "failed", "carol": "completed"}

    def test_successful_task_is_rescheduled(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = _posts("1", "2", "3")

        report = make_runner().run_batch()

        [outcome] = report.results
        stored = recording_store.get_task(task.id)
        assert outcome.total == 3
        assert outcome.new == 3
        assert outcome.frequency_tier == stored.frequency_tier
        assert stored.status == "completed"
        assert stored.last_post_count == 3
        assert stored.next_run_at == outcome.next_run_at

    def test_stop_on_error_halts_and_exits_non_zero(self, recording_store, scripted_collector, make_runner):
        recording_store.add_task("alice")
        recording_store.add_task("bob")
        scripted_collector.script[("alice", "posts")] = RuntimeError("page crashed")

        report = make_runner().run_batch(continue_on_error=False)

        assert [outcome.handle for outcome in report.results] == ["alice"]
        assert report.exit_code == 1
        assert [call[0] for call in scripted_collector.calls] == ["alice"]

    def test_failures_with_continue_exit_zero(self, recording_store, scripted_collector, make_runner):
        recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = RuntimeError("page crashed")

        report = make_runner().run_batch()

        assert report.error_count == 1
        assert report.exit_code == 0

    def test_pause_between_tasks_only(self, recording_store, make_runner):
        for handle in ("alice", "bob", "carol"):
            recording_store.add_task(handle)
        pauses = []

        make_runner(batch_settings=BatchSettings(task_pause_seconds=5), sleep=pauses.append).run_batch()

        assert pauses == [5, 5]

    def test_selection_failure_sets_global_error(self, recording_store, scripted_collector, make_runner):
        recording_store.add_task("alice")
        recording_store.fail_on("eligible_handles", StoreUnavailable("eligible_handles", "connection refused"))

        report = make_runner().run_batch()

        assert report.results == []
        assert "connection refused" in report.global_error
        assert report.exit_code == 1
        assert scripted_collector.calls == []

    def test_only_entities_and_sample_size(self, recording_store, scripted_collector, make_runner):
        for handle in ("alice", "bob", "carol"):
            recording_store.add_task(handle)

        report = make_runner().run_batch(sample_size=5, only_entities=["@Bob"])

        assert [outcome.handle for outcome in report.results] == ["bob"]

    def test_stale_running_tasks_are_reported_not_reset(self, recording_store, make_runner, caplog):
        stale = recording_store.add_task(
            "alice", status="running", last_run_at=datetime(2020, 1, 1)
        )

        with caplog.at_level(logging.WARNING, logger="harvester.runner"):
            report = make_runner().run_batch()

        assert report.results == []
        assert recording_store.get_task(stale.id).status == "running"
        assert any("running since" in record.getMessage() for record in caplog.records)


# ==============================================================================
# Single task
# ==============================================================================

@pytest.mark.unit
class TestRunTask:
    def test_collector_exception_becomes_collector_failure(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = RuntimeError("boom")

        outcome = make_runner().run_task(task)

        assert outcome.status == "failed"
        assert outcome.error_code == "COLLECTOR_FAILURE"
        stored = recording_store.get_task(task.id)
        assert stored.status == "failed"
        assert "boom" in stored.error_message

    def test_task_is_marked_running_before_collection(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice", max_count=200)

        make_runner().run_task(task)

        assert recording_store.calls[0][0] == "mark_task_running"
        handle, data_type, max_count, deadline = scripted_collector.calls[0]
        assert (handle, data_type, max_count) == ("alice", "posts", 200)
        assert deadline is not None

    def test_failure_backoff_pushes_next_run(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = RuntimeError("boom")

        make_runner(schedule_settings=ScheduleSettings(failure_backoff_minutes=30)).run_task(task)

        [call] = recording_store.calls_to("mark_task_failed")
        assert call["next_run_at"] is not None
        assert recording_store.get_task(task.id).next_run_at == call["next_run_at"]

    def test_no_backoff_leaves_next_run_alone(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = RuntimeError("boom")

        make_runner().run_task(task)

        [call] = recording_store.calls_to("mark_task_failed")
        assert call["next_run_at"] is None

    def test_schedule_write_failure_keeps_completed_outcome(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = _posts("1")
        recording_store.fail_on("record_task_schedule", StoreUnavailable("record_task_schedule", "locked"))

        outcome = make_runner().run_task(task)

        assert outcome.success
        assert outcome.error_code == "STORE_UNAVAILABLE"
        assert outcome.next_run_at is None

    def test_unexpected_store_error_becomes_failed_outcome(self, recording_store, scripted_collector, make_runner):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = _posts("1")
        recording_store.fail_on("mark_task_running", RuntimeError("driver crashed"))

        outcome = make_runner().run_task(task)

        assert not outcome.success
        assert outcome.error_code == "STORE_UNAVAILABLE"
        assert "RuntimeError: driver crashed" in outcome.error
        assert scripted_collector.calls == []

    def test_expired_deadline_still_merges(self, recording_store, scripted_collector, make_runner, caplog):
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = _posts("1", "2")

        runner = make_runner(batch_settings=BatchSettings(task_pause_seconds=0, task_timeout_seconds=0))
        with caplog.at_level(logging.WARNING, logger="harvester.runner"):
            outcome = runner.run_task(task)

        assert outcome.total == 2
        assert any("time ceiling" in record.getMessage() for record in caplog.records)


# ==============================================================================
# Against a SQLite store
# ==============================================================================

@pytest.mark.integration
class TestRunnerWithSqliteStore:
    def test_oversized_counter_fails_one_task_and_batch_continues(self, harvest_store, scripted_collector, collector_session):
        alice_task = harvest_store.upsert_task("alice", "posts")
        bob_task = harvest_store.upsert_task("bob", "posts")
        scripted_collector.script[("alice", "posts")] = [
            {"ID": "a-1", "Text": "huge", "Type": "Tweet", "View Count": "99999999999999999999999"}
        ]
        scripted_collector.script[("bob", "posts")] = _posts("b-1", "b-2")

        report = BatchRunner(harvest_store, collector_session, batch_settings=NO_PAUSE).run_batch()

        assert report.success_count == 1
        assert report.error_count == 1
        assert report.exit_code == 0
        by_handle = {outcome.handle: outcome for outcome in report.results}
        assert by_handle["alice"].error_code == "MERGE_FAILED"
        assert by_handle["bob"].success
        assert harvest_store.get_task(alice_task).status == "failed"
        assert harvest_store.get_task(alice_task).error_message
        assert harvest_store.get_task(bob_task).status == "completed"
        assert harvest_store.count_posts(harvest_store.get_user_id("bob")) == 2

    def test_completed_task_is_not_selected_again_before_next_run(
        self, harvest_store, scripted_collector, collector_session
    ):
        task_id = harvest_store.upsert_task("alice", "posts")
        scripted_collector.script[("alice", "posts")] = _posts("1", "2", "3")
        runner = BatchRunner(harvest_store, collector_session, batch_settings=NO_PAUSE)

        first = runner.run_batch()

        [outcome] = first.results
        stored = harvest_store.get_task(task_id)
        assert outcome.success
        assert stored.status == "completed"
        assert stored.last_post_count == 3
        assert stored.next_run_at is not None
        assert stored.frequency_tier == outcome.frequency_tier

        second = runner.run_batch()

        assert second.results == []
        assert second.exit_code == 0
        assert [call[:2] for call in scripted_collector.calls] == [("alice", "posts")]


# ==============================================================================
# Collector ownership
# ==============================================================================

class _CountingSession(CollectorSession):
    def __init__(self, collector, fail_release=False):
        super().__init__(collector)
        self.releases = 0
        self.fail_release = fail_release

    def release(self, collector):
        self.releases += 1
        if self.fail_release:
            raise RuntimeError("tab would not close")


@pytest.mark.unit
class TestSessionScoping:
    def test_release_runs_after_success_and_failure(self, recording_store, scripted_collector):
        session = _CountingSession(scripted_collector)
        recording_store.add_task("alice")
        recording_store.add_task("bob")
        scripted_collector.script[("bob", "posts")] = RuntimeError("boom")

        BatchRunner(recording_store, session, batch_settings=NO_PAUSE).run_batch()

        assert session.releases == 2

    def test_release_error_does_not_change_outcome(self, recording_store, scripted_collector):
        session = _CountingSession(scripted_collector, fail_release=True)
        task = recording_store.add_task("alice")
        scripted_collector.script[("alice", "posts")] = _posts("1")

        outcome = BatchRunner(recording_store, session, batch_settings=NO_PAUSE).run_task(task)

        assert outcome.success


# ==============================================================================
# Operator entry points
# ==============================================================================

@pytest.mark.unit
class TestOperatorEntryPoints:
    def test_run_single_does_not_touch_tasks(self, recording_store, scripted_collector, make_runner):
        scripted_collector.script[("alice", "posts")] = _posts("1", "2")

        result = make_runner().run_single("@Alice", "posts", 10)

        assert result.total == 2
        assert scripted_collector.calls[0][:3] == ("alice", "posts", 10)
        assert recording_store.calls_to("mark_task_running") == []

    @pytest.mark.parametrize("handle,data_type", [("", "posts"), ("alice", "likes")])
    def test_run_single_rejects_bad_input(self, make_runner, handle, data_type):
        with pytest.raises(ValueError):
            make_runner().run_single(handle, data_type)

    def test_collection_stats(self, recording_store, scripted_collector, make_runner):
        scripted_collector.script[("alice", "following")] = [{"Username": "bob"}, {"Username": "carol"}]
        scripted_collector.script[("alice", "posts")] = _posts("1")
        runner = make_runner()
        runner.run_single("alice", "following")
        runner.run_single("alice", "posts")

        assert runner.collection_stats("alice", "following") == 2
        assert runner.collection_stats("alice", "followers") == 0
        assert runner.collection_stats("alice", "posts") == 1
        assert runner.collection_stats("nobody", "posts") == 0


# ==============================================================================
# Report
# ==============================================================================

@pytest.mark.unit
class TestBatchReport:
    def _report(self, continue_on_error=True):
        start = datetime(2025, 1, 15, 4, 0)
        report = BatchReport(start_time=start, continue_on_error=continue_on_error)
        report.results = [
            TaskOutcome(1, "alice", "posts", status="completed", total=5, new=3, updated=2,
                        next_run_at=start + timedelta(hours=10)),
            TaskOutcome(2, "bob", "posts", status="failed", error="boom", error_code="COLLECTOR_FAILURE"),
        ]
        report.end_time = start + timedelta(seconds=90)
        return report

    def test_counts_and_exit_codes(self):
        assert self._report().exit_code == 0
        assert self._report(continue_on_error=False).exit_code == 1
        report = self._report()
        assert (report.success_count, report.error_count, report.total_new) == (1, 1, 3)
        assert report.duration_seconds == 90

    @pytest.mark.integration
    def test_write_json(self, tmp_path):
        path = self._report().write_json(tmp_path / "nested" / "report.json")

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["success_count"] == 1
        assert payload["results"][0]["next_run_at"] == "2025-01-15T14:00:00"
        assert payload["results"][1]["success"] is False
