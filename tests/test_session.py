"""
Task session tests: wire messages, key normalization, commands and timers.
"""

import threading

import pytest

from controlpanel.core.events import KeyResolver, TaskCompleted, TaskStarted, parse_event
from controlpanel.core.store import TaskDefinition


class TestParseEvent:
    """Host messages are normalized once at the boundary."""

    def test_label_resolves_to_catalog_id(self, catalog):
        resolver = KeyResolver(TaskDefinition.from_dict(raw) for raw in catalog)

        event = parse_event({"type": "taskStarted", "taskLabel": "compile"}, resolver)
        assert event == TaskStarted(key="shell: compile")

    def test_unknown_labels_pass_through(self):
        event = parse_event({"type": "taskEnded", "taskLabel": "adhoc"})
        assert event.key == "adhoc"

    def test_legacy_task_failed_becomes_completed(self):
        event = parse_event(
            {"type": "taskFailed", "taskLabel": "build", "exitCode": 2, "reason": "boom"}
        )
        assert event == TaskCompleted(key="build", failed=True, exit_code=2, reason="boom")

    def test_malformed_numbers_are_absent(self):
        event = parse_event(
            {"type": "taskCompleted", "taskLabel": "build", "duration": "soon", "exitCode": None}
        )
        assert event.duration is None
        assert event.exit_code is None

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "somethingNew", "taskLabel": "build"},
            {"type": "taskStarted"},
            {"type": "subtaskStarted", "parentLabel": "P"},
            {"type": "taskStateChanged", "taskLabel": "build", "state": "exploding"},
        ],
    )
    def test_unparseable_messages_are_dropped(self, message):
        assert parse_event(message) is None

    def test_state_changed_flags_default_true(self):
        event = parse_event({"type": "taskStateChanged", "taskLabel": "b", "state": "stopping"})
        assert event.can_stop is True and event.can_focus is True

        event = parse_event(
            {"type": "taskStateChanged", "taskLabel": "b", "state": "stopping", "canStop": False}
        )
        assert event.can_stop is False


class TestInboundMessages:
    def test_lifecycle_messages_update_store(self, session, clock):
        session.handle_message({"type": "taskStarted", "taskLabel": "build"})
        clock.advance(1500)
        session.handle_message(
            {"type": "taskCompleted", "taskLabel": "build", "duration": 1500}
        )

        state = session.store.get("build")
        assert state.completed and not state.running
        assert state.start_time == clock.now - 1500

    def test_unknown_message_is_ignored(self, session):
        before = session.store
        assert session.handle_message({"type": "totallyNew"}) is False
        assert session.handle_message({}) is False
        assert session.store is before

    def test_catalog_normalizes_later_events(self, session, catalog):
        session.handle_message({"type": "updateTasks", "tasks": catalog})
        session.handle_message(
            {"type": "subtaskStarted", "parentLabel": "build-all", "childLabel": "compile"}
        )

        assert session.store.keys() == ["shell: build-all", "shell: compile"]
        assert session.store.get("shell: compile").parent_task == "shell: build-all"

    def test_catalog_after_start_keeps_one_entry_per_task(self, session):
        session.handle_message({"type": "taskStarted", "taskLabel": "build"})
        session.handle_message(
            {"type": "updateTasks", "tasks": [{"id": "shell: build", "label": "build"}]}
        )
        session.handle_message({"type": "taskCompleted", "taskLabel": "build"})

        assert session.store.keys() == ["shell: build"]
        state = session.store.get("shell: build")
        assert state.completed and not state.running

    def test_catalog_after_attach_rewrites_links(self, session):
        session.handle_messages(
            [
                {"type": "subtaskStarted", "parentLabel": "build-all", "childLabel": "compile"},
                {"type": "subtaskStarted", "parentLabel": "build-all", "childLabel": "lint"},
                {"type": "subtaskEnded", "parentLabel": "build-all", "childLabel": "lint",
                 "failed": True, "exitCode": 2},
                {"type": "updateTasks", "tasks": [
                    {"id": "shell: build-all", "label": "build-all"},
                    {"id": "shell: compile", "label": "compile"},
                ]},
            ]
        )
        parent = session.store.get("shell: build-all")

        assert session.store.keys() == ["shell: build-all", "shell: compile", "lint"]
        assert parent.subtasks == ("shell: compile", "lint")
        assert parent.failed_subtasks[0].key == "lint"
        assert session.store.get("shell: compile").parent_task == "shell: build-all"
        assert session.store.get("lint").parent_task == "shell: build-all"

    def test_catalog_rekeys_history_and_mirrors(self, session):
        session.handle_messages(
            [
                {"type": "executionHistory", "history": [{"taskLabel": "build", "duration": 800}]},
                {"type": "updateStarred", "tasks": ["build"]},
                {"type": "updateTasks", "tasks": [{"id": "shell: build", "label": "build"}]},
            ]
        )
        assert session.history_map == {"shell: build": 800}
        assert session.starred == ["shell: build"]

    def test_execution_history_replaces_wholesale(self, session):
        session.handle_message(
            {
                "type": "executionHistory",
                "history": [
                    {"id": "1", "taskLabel": "T", "duration": 10000, "failed": False},
                    {"id": "2", "taskLabel": "T", "duration": 5000, "failed": True},
                    {"id": "3", "taskLabel": "T", "duration": 20000, "failed": False},
                ],
            }
        )
        assert session.history_map == {"T": 15000}

        session.handle_message({"type": "executionHistory", "history": []})
        assert session.history_map == {}
        assert session.history == []

    def test_mirrors_and_panel_state(self, session, catalog):
        session.handle_message({"type": "updateTasks", "tasks": catalog})
        session.handle_message({"type": "updateStarred", "tasks": ["lint", "serve", "lint"]})
        session.handle_message({"type": "updateRecentlyUsed", "tasks": ["build-all"]})
        session.handle_message({"type": "panelState", "state": {"runningTasksCollapsed": 1}})

        assert session.starred == ["npm: lint", "serve"]
        assert session.recently_used == ["shell: build-all"]
        assert session.panel_state == {
            "runningTasksCollapsed": True,
            "starredTasksCollapsed": False,
        }

    def test_log_buffer_mirror(self, session):
        session.handle_message({"type": "logBuffer", "logs": [{"level": "INFO", "message": "hi"}]})
        assert session.host_logs == [{"level": "INFO", "message": "hi"}]


class TestReadViews:
    def test_progress_uses_history_when_no_live_estimate(self, session, clock):
        session.handle_message(
            {"type": "executionHistory", "history": [{"taskLabel": "T", "duration": 10000}]}
        )
        session.handle_message({"type": "taskStarted", "taskLabel": "T"})
        clock.advance(12000)

        info = session.progress("T")
        assert info.progress == 99
        assert session.avg_duration("T") == 10000

    def test_live_estimate_overrides_history(self, session):
        session.handle_message(
            {"type": "executionHistory", "history": [{"taskLabel": "T", "duration": 10000}]}
        )
        session.handle_message({"type": "taskStarted", "taskLabel": "T", "avgDuration": 4000})
        assert session.avg_duration("T") == 4000

    def test_aggregate_states_for_composite(self, session, catalog):
        session.handle_messages(
            [
                {"type": "updateTasks", "tasks": catalog},
                {"type": "taskStarted", "taskLabel": "build-all"},
                {"type": "taskCompleted", "taskLabel": "codegen"},
                {"type": "taskStarted", "taskLabel": "compile"},
            ]
        )
        states = session.aggregate_states("build-all")

        assert states["shell: codegen"] == "success"
        assert states["shell: compile"] == "descendant-running"
        assert states["shell: build-all"] == "descendant-running"
        assert session.dependency_keys("build-all") == [
            "shell: compile",
            "shell: codegen",
            "npm: lint",
        ]

    def test_aggregate_states_unknown_task_is_leaf(self, session):
        session.handle_message({"type": "taskStarted", "taskLabel": "adhoc"})
        assert session.aggregate_states("adhoc") == {"adhoc": "running"}

    def test_running_tasks_and_snapshot(self, session):
        session.handle_messages(
            [
                {"type": "taskStarted", "taskLabel": "a"},
                {"type": "taskStarted", "taskLabel": "b"},
                {"type": "taskEnded", "taskLabel": "b"},
            ]
        )
        assert list(session.running_tasks()) == ["a"]

        snapshot = session.snapshot()
        assert set(snapshot["store"]["tasks"]) == {"a", "b"}
        assert snapshot["store"]["tasks"]["b"]["state"] == "stopped"


class TestOutboundCommands:
    def test_task_commands_are_fire_and_forget(self, session, sent):
        session.run_task("build")
        session.stop_task("build")
        session.focus_terminal("build")
        session.open_task_definition("build")
        session.toggle_star("build")

        assert [c["type"] for c in sent] == [
            "runTask",
            "stopTask",
            "focusTerminal",
            "openTaskDefinition",
            "toggleStar",
        ]
        assert all(c["taskKey"] == "build" for c in sent)
        assert session.store.keys() == [], "Commands never change the store directly"

    def test_commands_use_canonical_keys(self, session, sent, catalog):
        session.handle_message({"type": "updateTasks", "tasks": catalog})
        session.run_task("lint")
        assert sent[-1] == {"type": "runTask", "taskKey": "npm: lint"}

    def test_dismiss_removes_group_and_notifies_host(self, session, sent):
        session.handle_messages(
            [
                {"type": "subtaskStarted", "parentLabel": "P", "childLabel": "C"},
                {"type": "taskStarted", "taskLabel": "other"},
            ]
        )
        session.dismiss_task("P")
        session.dismiss_task("P")

        assert session.store.keys() == ["other"]
        assert [c["type"] for c in sent] == ["dismissTask", "dismissTask"]

    def test_bootstrap_sends_once(self, session, sent):
        first = session.bootstrap()
        second = session.bootstrap()

        assert [c["type"] for c in first] == [
            "getTaskLists",
            "getPanelState",
            "getExecutionHistory",
        ]
        assert second == []
        assert len(sent) == 3

    def test_panel_state_toggle(self, session, sent):
        session.toggle_panel_section("starredTasksCollapsed")

        assert session.panel_state["starredTasksCollapsed"] is True
        assert sent[-1] == {"type": "setPanelState", "state": {"starredTasksCollapsed": True}}
        with pytest.raises(KeyError):
            session.toggle_panel_section("bogus")

    def test_outbox_drains_once(self, session):
        session.run_task("build")
        assert session.drain_commands() == [{"type": "runTask", "taskKey": "build"}]
        assert session.drain_commands() == []

    def test_sender_failure_does_not_propagate(self, session, caplog):
        def broken(command):
            raise ConnectionError("host gone")

        session.sender = broken
        session.run_task("build")

        assert "Failed to send runTask" in caplog.text
        assert session.drain_commands() == [{"type": "runTask", "taskKey": "build"}]


class TestScheduledActivities:
    def test_tick_reports_runtime_and_progress(self, session, clock):
        session.handle_message({"type": "taskStarted", "taskLabel": "T", "avgDuration": 10000})
        clock.advance(2500)

        tick = session.tick("T")
        assert tick.runtime_ms == 2500
        assert tick.runtime_text == "2s"
        assert tick.progress.progress == pytest.approx(25.0)

    def test_watch_and_unwatch(self, session):
        session.handle_message({"type": "taskStarted", "taskLabel": "T"})
        ticked = threading.Event()

        session.watch_task("T", lambda tick: ticked.set())
        assert ticked.wait(2.0), "Ticker never fired"

        assert session.unwatch_task("T") is True
        assert session.unwatch_task("T") is False

    def test_debug_view_polls_host_logs(self, session, sent):
        session.open_debug_view()
        assert session.debug_view_open
        assert sent[0] == {"type": "getLogs"}

        session.close_debug_view()
        assert not session.debug_view_open

    def test_close_cancels_everything(self, session):
        session.handle_message({"type": "taskStarted", "taskLabel": "T"})
        session.watch_task("T", lambda tick: None)
        session.open_debug_view()

        session.close()
        assert not session.debug_view_open
        assert session.unwatch_task("T") is False
