"""
Task session: the engine's single entry point for a host connection.

A ``TaskSession`` owns the current ``TaskStore`` snapshot and everything the
views read next to it (task catalog, execution history, starred and
recently-used mirrors, panel state, host log buffer). Host messages come in
through ``handle_message``; commands go out through a fire-and-forget
sender and an outbox the host can drain.

Only ``handle_message`` and ``dismiss_task`` replace the store, and they do
it under one lock, so events are applied strictly one at a time even when
messages arrive on several HTTP worker threads.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from controlpanel.config import Settings
from controlpanel.core import hierarchy
from controlpanel.core.aggregator import (
    HistoryNode,
    ProgressInfo,
    build_history_tree,
    build_task_history_map,
    format_runtime,
    progress_info,
    resolve_avg_duration,
)
from controlpanel.core.events import DismissTaskGroup, KeyResolver, parse_event
from controlpanel.core.reducer import now_ms, reduce
from controlpanel.core.segments import (
    derive_tree_states,
    find_definition,
    flatten_dependencies,
    store_lookup,
)
from controlpanel.core.store import (
    ExecutionRecord,
    TaskDefinition,
    TaskKey,
    TaskRuntimeState,
    TaskStore,
)
from controlpanel.core.timers import TimerRegistry

logger = logging.getLogger(__name__)

Command = Dict[str, Any]
CommandSender = Callable[[Command], None]

# Commands that act on one task, by public name
TASK_COMMANDS = {
    "run": "runTask",
    "stop": "stopTask",
    "focus": "focusTerminal",
    "open": "openTaskDefinition",
    "star": "toggleStar",
    "dismiss": "dismissTask",
}

BOOTSTRAP_COMMANDS = ("getTaskLists", "getPanelState", "getExecutionHistory")

PANEL_STATE_FIELDS = ("runningTasksCollapsed", "starredTasksCollapsed")

DEBUG_POLL_TIMER = "debug-log-poll"


@dataclass(frozen=True)
class TaskTick:
    """Periodic runtime/progress reading for a displayed task."""

    key: TaskKey
    runtime_ms: float
    runtime_text: str
    progress: ProgressInfo


class TaskSession:
    """
    Reconciled task state for one host connection.

    Parameters
    ----------
    settings : Optional[Settings]
        Engine settings (defaults when None)
    sender : Optional[Callable[[dict], None]]
        Fire-and-forget transport for outbound commands
    clock : Optional[Callable[[], float]]
        Current time in epoch milliseconds (wall clock when None)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sender: Optional[CommandSender] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or Settings()
        self.sender = sender
        self.clock = clock or now_ms

        self._store = TaskStore()
        self._lock = threading.RLock()
        self._outbox: Deque[Command] = deque()
        self._outbox_lock = threading.Lock()
        self._timers = TimerRegistry()
        self._bootstrapped = False

        self.resolver = KeyResolver()
        self.catalog: List[TaskDefinition] = []
        self.history: List[ExecutionRecord] = []
        self.history_map: Dict[TaskKey, float] = {}
        self.starred: List[TaskKey] = []
        self.recently_used: List[TaskKey] = []
        self.panel_state: Dict[str, bool] = {
            "runningTasksCollapsed": False,
            "starredTasksCollapsed": False,
        }
        self.host_logs: List[Any] = []

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @property
    def store(self) -> TaskStore:
        """Current snapshot; safe to hold, it never changes."""
        return self._store

    def handle_message(self, message: Mapping[str, Any]) -> bool:
        """
        Apply one host message.

        Parameters
        ----------
        message : Mapping[str, Any]
            Host message with a ``type`` field

        Returns
        -------
        bool
            True if the message type is known, False if it was ignored
        """
        kind = message.get("type") if isinstance(message, Mapping) else None
        handler = self._handlers.get(kind)
        if handler is not None:
            with self._lock:
                handler(self, message)
            return True

        with self._lock:
            event = parse_event(message, self.resolver) if kind else None
            if event is None:
                logger.debug(f"Ignoring host message of type {kind!r}")
                return False
            self._store = reduce(self._store, event, self.clock())
        logger.debug(f"Applied {kind} -> store v{self._store.version}")
        return True

    def handle_messages(self, messages: Iterable[Mapping[str, Any]]) -> int:
        """Apply messages in order; returns how many were recognised."""
        return sum(1 for message in messages if self.handle_message(message))

    def _on_update_tasks(self, message: Mapping[str, Any]) -> None:
        catalog = []
        for raw in message.get("tasks") or []:
            if isinstance(raw, Mapping) and (raw.get("id") or raw.get("label")):
                catalog.append(TaskDefinition.from_dict(raw))
        self.catalog = catalog
        self.resolver.update(catalog)
        logger.info(f"Task catalog replaced: {len(catalog)} tasks")

        # Entries, history and mirrors recorded under a label move to its id
        aliases = {}
        for key in self._store:
            canonical = self.resolver.resolve(key)
            if canonical != key:
                aliases[key] = canonical
        if aliases:
            self._store = hierarchy.rekey(self._store, aliases)
            logger.info(f"Re-keyed {len(aliases)} entries to catalog ids")
        self._set_history(self.history)
        self.starred = self._resolve_list(self.starred)
        self.recently_used = self._resolve_list(self.recently_used)

    def _on_update_starred(self, message: Mapping[str, Any]) -> None:
        self.starred = self._resolve_list(message.get("tasks"))

    def _on_update_recently_used(self, message: Mapping[str, Any]) -> None:
        self.recently_used = self._resolve_list(message.get("tasks"))

    def _on_execution_history(self, message: Mapping[str, Any]) -> None:
        records = []
        for index, raw in enumerate(message.get("history") or []):
            if not isinstance(raw, Mapping):
                continue
            record = ExecutionRecord.from_dict(raw, index)
            if not record.task_key:
                continue
            records.append(record)
        self._set_history(records)

    def _set_history(self, records: List[ExecutionRecord]) -> None:
        resolve = self.resolver.resolve
        records = [
            replace(
                record,
                task_key=resolve(record.task_key) or record.task_key,
                parent_label=resolve(record.parent_label),
                child_labels=tuple(resolve(c) for c in record.child_labels if c),
            )
            for record in records
        ]
        self.history = records
        self.history_map = build_task_history_map(records, self.settings.history_window)
        logger.info(
            f"Execution history replaced: {len(records)} records, "
            f"{len(self.history_map)} tasks with estimates"
        )

    def _on_panel_state(self, message: Mapping[str, Any]) -> None:
        state = message.get("state") or {}
        for name in PANEL_STATE_FIELDS:
            if state.get(name) is not None:
                self.panel_state[name] = bool(state[name])

    def _on_log_buffer(self, message: Mapping[str, Any]) -> None:
        self.host_logs = list(message.get("logs") or message.get("entries") or [])

    _handlers: Dict[Any, Callable[["TaskSession", Mapping[str, Any]], None]] = {
        "updateTasks": _on_update_tasks,
        "updateStarred": _on_update_starred,
        "updateRecentlyUsed": _on_update_recently_used,
        "executionHistory": _on_execution_history,
        "panelState": _on_panel_state,
        "logBuffer": _on_log_buffer,
    }

    def _resolve_list(self, refs: Any) -> List[TaskKey]:
        keys: List[TaskKey] = []
        for ref in refs or []:
            key = self.resolver.resolve(ref)
            if key and key not in keys:
                keys.append(key)
        return keys

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _send(self, command: Command) -> None:
        with self._outbox_lock:
            self._outbox.append(command)
        if self.sender is None:
            return
        try:
            self.sender(command)
        except Exception as e:
            # Fire-and-forget: the host reconciles through later events
            logger.warning(f"Failed to send {command.get('type')}: {e}")

    def send_task_command(self, command: str, key: TaskKey) -> Command:
        """
        Send a per-task command ('run', 'stop', 'focus', 'open', 'star', 'dismiss').

        Raises
        ------
        KeyError
            If ``command`` is not a known task command
        """
        message_type = TASK_COMMANDS[command]
        key = self.resolver.resolve(key) or key
        if command == "dismiss":
            self._dismiss_locally(key)
        message = {"type": message_type, "taskKey": key}
        self._send(message)
        return message

    def run_task(self, key: TaskKey) -> Command:
        return self.send_task_command("run", key)

    def stop_task(self, key: TaskKey) -> Command:
        return self.send_task_command("stop", key)

    def focus_terminal(self, key: TaskKey) -> Command:
        return self.send_task_command("focus", key)

    def open_task_definition(self, key: TaskKey) -> Command:
        return self.send_task_command("open", key)

    def toggle_star(self, key: TaskKey) -> Command:
        return self.send_task_command("star", key)

    def dismiss_task(self, key: TaskKey) -> Command:
        """Remove the task group locally and tell the host to forget it."""
        return self.send_task_command("dismiss", key)

    def _dismiss_locally(self, key: TaskKey) -> None:
        with self._lock:
            self._store = reduce(self._store, DismissTaskGroup(key=key), self.clock())

    def set_panel_state(self, **state: bool) -> Command:
        """Update panel preferences locally and mirror them to the host."""
        changes = {name: bool(value) for name, value in state.items() if name in PANEL_STATE_FIELDS}
        with self._lock:
            self.panel_state.update(changes)
        message = {"type": "setPanelState", "state": changes}
        self._send(message)
        return message

    def toggle_panel_section(self, name: str) -> Command:
        """Flip one collapsible section ('runningTasksCollapsed' / 'starredTasksCollapsed')."""
        if name not in PANEL_STATE_FIELDS:
            raise KeyError(name)
        return self.set_panel_state(**{name: not self.panel_state.get(name, False)})

    def bootstrap(self) -> List[Command]:
        """Send the initial list/panel/history requests; only the first call sends."""
        with self._lock:
            if self._bootstrapped:
                return []
            self._bootstrapped = True
        commands = [{"type": command_type} for command_type in BOOTSTRAP_COMMANDS]
        for command in commands:
            self._send(command)
        return commands

    def drain_commands(self) -> List[Command]:
        """Return and clear queued outbound commands, oldest first."""
        with self._outbox_lock:
            commands = list(self._outbox)
            self._outbox.clear()
        return commands

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    def running_tasks(self) -> Dict[TaskKey, TaskRuntimeState]:
        return {key: state for key, state in self._store.entries() if state.running}

    def avg_duration(self, key: TaskKey) -> Optional[float]:
        key = self.resolver.resolve(key) or key
        return resolve_avg_duration(key, self._store.get(key), self.history_map)

    def progress(self, key: TaskKey, now: Optional[float] = None) -> ProgressInfo:
        key = self.resolver.resolve(key) or key
        store = self._store
        return progress_info(
            store.get(key),
            self.clock() if now is None else now,
            resolve_avg_duration(key, store.get(key), self.history_map),
        )

    def aggregate_states(self, key: TaskKey) -> Dict[TaskKey, str]:
        """
        Derived segment state of every node in ``key``'s dependency tree.

        A task missing from the catalog is treated as a leaf.
        """
        key = self.resolver.resolve(key) or key
        definition = find_definition(self.catalog, key) or TaskDefinition(key=key, label=key)
        return derive_tree_states(definition, store_lookup(self._store))

    def dependency_keys(self, key: TaskKey) -> List[TaskKey]:
        key = self.resolver.resolve(key) or key
        definition = find_definition(self.catalog, key)
        return flatten_dependencies(definition) if definition else []

    def history_tree(self) -> List[HistoryNode]:
        return build_history_tree(self.history)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-serializable view of everything the session tracks."""
        store = self._store
        return {
            "store": store.to_dict(),
            "taskHistoryMap": dict(self.history_map),
            "tasks": [definition.to_dict() for definition in self.catalog],
            "starredTasks": list(self.starred),
            "recentlyUsedTasks": list(self.recently_used),
            "panelState": dict(self.panel_state),
        }

    # ------------------------------------------------------------------
    # Scheduled activities
    # ------------------------------------------------------------------

    def tick(self, key: TaskKey) -> TaskTick:
        """Current runtime and progress of a displayed task."""
        key = self.resolver.resolve(key) or key
        now = self.clock()
        state = self._store.get(key)
        runtime = now - state.start_time if state and state.start_time is not None else 0.0
        return TaskTick(
            key=key,
            runtime_ms=max(runtime, 0.0),
            runtime_text=format_runtime(max(runtime, 0.0)),
            progress=self.progress(key, now),
        )

    def watch_task(self, key: TaskKey, callback: Callable[[TaskTick], None]) -> None:
        """Deliver a ``TaskTick`` for ``key`` every tick interval until unwatched."""
        key = self.resolver.resolve(key) or key
        self._timers.start(
            ("tick", key),
            self.settings.tick_interval_seconds,
            lambda: callback(self.tick(key)),
        )

    def unwatch_task(self, key: TaskKey) -> bool:
        key = self.resolver.resolve(key) or key
        return self._timers.cancel(("tick", key))

    def open_debug_view(self) -> None:
        """Request the host log buffer now and on every poll interval."""
        self._send({"type": "getLogs"})
        self._timers.start(
            DEBUG_POLL_TIMER,
            self.settings.log_poll_interval_seconds,
            lambda: self._send({"type": "getLogs"}),
        )

    def close_debug_view(self) -> bool:
        return self._timers.cancel(DEBUG_POLL_TIMER)

    @property
    def debug_view_open(self) -> bool:
        return DEBUG_POLL_TIMER in self._timers

    def close(self) -> None:
        """Cancel every timer owned by the session."""
        self._timers.cancel_all()
