"""
Event reducer: ``(store, event) -> store'``.

Events are applied one at a time in arrival order. ``reduce`` never edits
the incoming store; every handler returns a new snapshot (or the same one
when the event is a no-op). Placeholder entries are created whenever an
event references a task whose own start event has not arrived yet, so no
event is lost to missing intermediate state.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Optional

from controlpanel.core import hierarchy
from controlpanel.core.dismissal import dismiss
from controlpanel.core.events import (
    DismissTaskGroup,
    SubtaskEnded,
    SubtaskStarted,
    TaskCompleted,
    TaskEnded,
    TaskEvent,
    TaskStarted,
    TaskStateChanged,
)
from controlpanel.core.store import FailedSubtask, TaskRuntimeState, TaskStore

logger = logging.getLogger(__name__)


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


def _task_started(store: TaskStore, event: TaskStarted, now: float) -> TaskStore:
    existing = store.get(event.key)
    parent = hierarchy.resolve_parent(store, event.key, event.parent_task, existing)

    subtasks = event.subtasks
    if existing is not None and existing.running:
        # Placeholder or in-flight run: keep children attached before this start
        subtasks = hierarchy.merge_keys(event.subtasks, existing.subtasks)

    # A restart never inherits the previous run's terminal fields
    state = TaskRuntimeState(
        running=True,
        completed=False,
        failed=False,
        state=event.state or "running",
        start_time=event.start_time if event.start_time is not None else now,
        duration=None,
        avg_duration=event.avg_duration,
        is_first_run=event.is_first_run,
        subtasks=tuple(k for k in subtasks if k != event.key),
        parent_task=parent,
        failed_subtasks=(),
        exit_code=None,
        failure_reason=None,
        failed_dependency=None,
        execution=event.execution,
    )
    store = store.set(event.key, state)
    return hierarchy.link(store, event.key)


def _task_ended(store: TaskStore, event: TaskEnded, now: float) -> TaskStore:
    existing = store.get(event.key)
    if existing is None:
        return store
    return store.set(
        event.key,
        existing.with_changes(running=False, completed=True, state="stopped"),
    )


def _task_completed(store: TaskStore, event: TaskCompleted, now: float) -> TaskStore:
    existing = store.get(event.key)
    if existing is None:
        # Terminal event with no start (e.g. replayed after a host restart)
        existing = TaskRuntimeState(
            running=False,
            start_time=now - event.duration if event.duration is not None else now,
            subtasks=event.subtasks,
        )

    state = existing.with_changes(
        running=False,
        completed=True,
        failed=event.failed,
        state="failed" if event.failed else "completed",
        exit_code=event.exit_code,
        failure_reason=event.reason,
        failed_dependency=event.failed_dependency,
        duration=event.duration if event.duration is not None else existing.duration,
        parent_task=event.parent_task or existing.parent_task,
        subtasks=hierarchy.merge_keys(existing.subtasks, event.subtasks),
    )
    store = store.set(event.key, state)
    return hierarchy.link(store, event.key)


def _task_state_changed(store: TaskStore, event: TaskStateChanged, now: float) -> TaskStore:
    existing = store.get(event.key)
    if existing is None:
        return store
    return store.set(
        event.key,
        existing.with_changes(
            # A failed entry keeps state 'failed' until it restarts
            state="failed" if existing.failed else event.state,
            can_stop=event.can_stop,
            can_focus=event.can_focus,
        ),
    )


def _subtask_started(store: TaskStore, event: SubtaskStarted, now: float) -> TaskStore:
    if event.parent_key == event.child_key:
        return store

    if event.parent_key not in store:
        store = store.set(
            event.parent_key,
            TaskRuntimeState(
                running=True,
                state="running",
                start_time=(
                    event.parent_start_time if event.parent_start_time is not None else now
                ),
                can_focus=False,
            ),
        )
    store = hierarchy.attach_child(store, event.parent_key, event.child_key)

    child = store.get(event.child_key)
    if child is None:
        child = TaskRuntimeState(running=False, state="waiting", parent_task=event.parent_key)
    elif child.parent_task == event.parent_key:
        return store
    else:
        child = child.with_changes(parent_task=event.parent_key)
    return store.set(event.child_key, child)


def _subtask_ended(store: TaskStore, event: SubtaskEnded, now: float) -> TaskStore:
    if event.parent_key not in store or event.parent_key == event.child_key:
        return store

    # Children stay listed until the whole group is dismissed
    store = hierarchy.attach_child(store, event.parent_key, event.child_key)
    if not event.failed:
        return store

    parent = store.get(event.parent_key)
    failures = tuple(f for f in parent.failed_subtasks if f.key != event.child_key)
    failures += (FailedSubtask(key=event.child_key, exit_code=event.exit_code),)
    return store.set(event.parent_key, parent.with_changes(failed_subtasks=failures))


def _dismiss(store: TaskStore, event: DismissTaskGroup, now: float) -> TaskStore:
    return dismiss(store, event.key)


_HANDLERS: Dict[type, Callable[[TaskStore, TaskEvent, float], TaskStore]] = {
    TaskStarted: _task_started,
    TaskEnded: _task_ended,
    TaskCompleted: _task_completed,
    TaskStateChanged: _task_state_changed,
    SubtaskStarted: _subtask_started,
    SubtaskEnded: _subtask_ended,
    DismissTaskGroup: _dismiss,
}


def reduce(store: TaskStore, event: object, now: Optional[float] = None) -> TaskStore:
    """
    Apply one event to a store snapshot.

    Parameters
    ----------
    store : TaskStore
        Current snapshot (left untouched)
    event : object
        Lifecycle event; unknown objects are ignored
    now : Optional[float]
        Epoch milliseconds used for default start times (wall clock if None)

    Returns
    -------
    TaskStore
        The next snapshot
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        logger.debug(f"Ignoring unknown event {event!r}")
        return store
    return handler(store, event, now_ms() if now is None else now)


def replay(events: Iterable[object], store: Optional[TaskStore] = None, now: Optional[float] = None) -> TaskStore:
    """Fold ``events`` into ``store`` (empty by default) in order."""
    result = store if store is not None else TaskStore()
    for event in events:
        result = reduce(result, event, now)
    return result
