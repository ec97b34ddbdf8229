"""
Duration aggregator tests: history averages, progress and the history tree.
"""

import pytest

from controlpanel.core.aggregator import (
    build_history_tree,
    build_task_history_map,
    calculate_progress,
    format_duration,
    format_runtime,
    progress_info,
    resolve_avg_duration,
)
from controlpanel.core.store import ExecutionRecord, TaskRuntimeState


def record(key, duration, failed=False, **kwargs):
    kwargs.setdefault("id", f"{key}-{duration}-{failed}")
    return ExecutionRecord(task_key=key, duration=duration, failed=failed, **kwargs)


class TestTaskHistoryMap:
    def test_averages_successful_runs(self):
        history = [record("T", 10000), record("T", 20000), record("T", 30000)]
        assert build_task_history_map(history)["T"] == 20000

    def test_failed_runs_excluded(self):
        history = [record("T", 10000), record("T", 5000, failed=True), record("T", 20000)]
        assert build_task_history_map(history)["T"] == 15000

    def test_missing_duration_skipped_not_zero(self):
        history = [record("T", None), record("T", 4000)]
        assert build_task_history_map(history)["T"] == 4000

    def test_only_first_ten_runs_count(self):
        history = [record("T", 100, id=f"new-{i}") for i in range(10)]
        history += [record("T", 100000, id=f"old-{i}") for i in range(5)]
        assert build_task_history_map(history)["T"] == 100

    def test_window_is_configurable(self):
        history = [record("T", 10, id="a"), record("T", 30, id="b"), record("T", 1000, id="c")]
        assert build_task_history_map(history, window=2)["T"] == 20

    def test_tasks_without_success_are_absent(self):
        history = [record("T", 5000, failed=True)]
        assert "T" not in build_task_history_map(history)

    def test_records_from_dicts(self):
        history = [
            ExecutionRecord.from_dict({"taskLabel": "T", "duration": "3000"}, 0),
            ExecutionRecord.from_dict({"taskLabel": "T", "duration": "not-a-number"}, 1),
        ]
        assert history[1].duration is None
        assert build_task_history_map(history) == {"T": 3000}


class TestAverageResolution:
    def test_live_estimate_wins(self):
        state = TaskRuntimeState(running=True, avg_duration=7000.0)
        assert resolve_avg_duration("T", state, {"T": 20000.0}) == 7000.0

    def test_falls_back_to_history(self):
        state = TaskRuntimeState(running=True)
        assert resolve_avg_duration("T", state, {"T": 20000.0}) == 20000.0
        assert resolve_avg_duration("T", None, {}) is None


class TestProgress:
    def test_progress_is_capped_below_100(self):
        assert calculate_progress(12000, 10000) == 99

    def test_progress_scales_with_elapsed(self):
        assert calculate_progress(2500, 10000) == pytest.approx(25.0)

    def test_no_estimate_means_zero(self):
        assert calculate_progress(5000, None) == 0
        assert calculate_progress(5000, 0) == 0

    def test_running_progress_never_reaches_100(self):
        state = TaskRuntimeState(running=True, start_time=0.0, avg_duration=10000.0)
        info = progress_info(state, now=12000.0)
        assert info.progress == 99
        assert not info.indeterminate

    def test_running_without_estimate_is_indeterminate(self):
        state = TaskRuntimeState(running=True, start_time=0.0)
        info = progress_info(state, now=5000.0)
        assert info.indeterminate

    def test_terminal_states(self):
        done = TaskRuntimeState(completed=True, state="completed")
        failed = TaskRuntimeState(completed=True, failed=True, state="failed")
        stopped = TaskRuntimeState(completed=True, state="stopped")

        assert progress_info(done, now=0).progress == 100
        assert progress_info(failed, now=0).progress == 100
        assert progress_info(stopped, now=0).progress == 0
        assert progress_info(None, now=0).progress == 0


class TestFormatting:
    @pytest.mark.parametrize(
        "ms,expected",
        [(5400, "5s"), (125000, "2m 5s"), (3_720_000, "1h 2m")],
    )
    def test_format_runtime(self, ms, expected):
        assert format_runtime(ms) == expected

    @pytest.mark.parametrize(
        "ms,expected",
        [(950, "950ms"), (1500, "1.5s"), (123000, "2m 3s")],
    )
    def test_format_duration(self, ms, expected):
        assert format_duration(ms) == expected


class TestHistoryTree:
    def test_children_nest_under_parent_run(self):
        history = [
            record("build-all", 9000, id="p", start_time=0, end_time=9000,
                   child_labels=("compile", "lint")),
            record("compile", 5000, id="c1", start_time=100, end_time=5100,
                   parent_label="build-all"),
            record("lint", 3000, id="c2", start_time=5200, end_time=8200,
                   parent_label="build-all"),
        ]
        roots = build_history_tree(history)

        assert [node.record.id for node in roots] == ["p"]
        assert sorted(child.record.id for child in roots[0].children) == ["c1", "c2"]

    def test_child_without_parent_run_is_root(self):
        history = [
            record("compile", 5000, id="c1", start_time=100, end_time=5100,
                   parent_label="build-all"),
        ]
        assert [node.record.id for node in build_history_tree(history)] == ["c1"]

    def test_runs_outside_parent_window_are_not_children(self):
        history = [
            record("build-all", 1000, id="p", start_time=0, end_time=1000,
                   child_labels=("compile",)),
            record("compile", 500, id="late", start_time=50000, end_time=50500),
        ]
        roots = build_history_tree(history)
        by_id = {node.record.id: node for node in roots}

        assert set(by_id) == {"p", "late"}
        assert by_id["p"].children == []

    def test_unlisted_child_of_parent_run_is_root(self):
        history = [
            record("build-all", 9000, id="p", start_time=0, end_time=9000,
                   child_labels=("compile",)),
            record("docs", 2000, id="d", start_time=100, end_time=2100,
                   parent_label="build-all"),
        ]
        roots = build_history_tree(history)

        assert [node.record.id for node in roots] == ["p", "d"]
        assert roots[0].children == []

    def test_cyclic_child_labels_keep_every_run(self):
        history = [
            record("a", 1000, id="a1", start_time=0, end_time=1000, child_labels=("b",)),
            record("b", 1000, id="b1", start_time=10, end_time=1000, child_labels=("a",)),
        ]
        roots = build_history_tree(history)

        assert [node.record.id for node in roots] == ["a1"]
        assert [child.record.id for child in roots[0].children] == ["b1"]
        assert roots[0].children[0].children == []

    def test_to_dict_includes_duration_text(self):
        roots = build_history_tree([record("T", 1500, start_time=0, end_time=1500)])
        data = roots[0].to_dict()
        assert data["duration_text"] == "1.5s"
        assert data["children"] == []
